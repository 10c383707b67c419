"""Unit tests for auth/flow.py and auth/dependencies.py -- OAuth state machine and request gate.

The controller is wired to real stores on a shared in-memory database and a
fake user directory, so these tests exercise the same code paths as the HTTP
routes without going through FastAPI.

Covers:
- authorize: client/redirect pairing, scope subset rules, unknown subjects
- token: happy path, RedirectMismatch, replay, expired and denied attempts
- refresh: new access token under the same refresh token, client binding
- revoke: cascade from refresh, single access token, idempotence, junk input
- AuthGate: missing / malformed / revoked / refresh-kind tokens, scope checks,
  and revocation of a signed token the ledger never recorded
- the end-to-end u1 / c1 / https://a/cb scenario
"""

import pytest

from auth.clients import ClientRegistry
from auth.dependencies import AuthGate, extract_bearer
from auth.errors import (
    CodeAlreadyUsed,
    CodeExpired,
    Forbidden,
    InvalidClient,
    InvalidScope,
    RedirectMismatch,
    TokenNotFound,
    TokenRevoked,
    Unauthenticated,
)
from auth.flow import ACCESS_TOKEN_HINT, REFRESH_TOKEN_HINT, OAuthFlowController, oauth_error
from auth.models import AuthorizationState, Identity, OAuthClient, TokenKind, User
from auth.tokens import hash_opaque_token

REDIRECT = "https://a/cb"


class FakeUsers:
    """Directory where u1 may grant read/write and u2 is inactive."""

    def granted_scopes(self, subject):
        return {"u1": frozenset({"read", "write"})}.get(subject)


@pytest.fixture
def clients():
    return ClientRegistry(
        [
            OAuthClient(client_id="c1", redirect_uris=[REDIRECT], allowed_scopes=frozenset({"read", "write"})),
            OAuthClient(client_id="c2", redirect_uris=["https://b/cb"], allowed_scopes=frozenset({"read"})),
        ]
    )


@pytest.fixture
def flow(codec, codes, tokens, clients):
    return OAuthFlowController(codec, codes, tokens, clients, FakeUsers(), access_ttl=3600, refresh_ttl=86400)


@pytest.fixture
def gate(codec, tokens):
    return AuthGate(codec, tokens)


def _bearer(token: str) -> str:
    return f"Bearer {token}"


class TestScenario:
    def test_authorize_token_refresh_revoke(self, flow, gate):
        code = flow.authorize("u1", "c1", REDIRECT, ["read"])
        grant = flow.token(code, "c1", REDIRECT)
        assert grant.expires_in == 3600
        assert grant.refresh_token
        a1 = grant.access_token

        refreshed = flow.refresh(grant.refresh_token)
        a2 = refreshed.access_token
        assert a2 != a1
        for token in (a1, a2):
            identity = gate.authenticate(_bearer(token))
            assert identity == Identity(subject="u1", scopes=frozenset({"read"}))

        flow.revoke(grant.refresh_token)
        for token in (a1, a2):
            with pytest.raises(Unauthenticated):
                gate.authenticate(_bearer(token))

    def test_wrong_redirect_is_redirect_mismatch(self, flow, codes):
        code = flow.authorize("u1", "c1", REDIRECT, ["read"])
        with pytest.raises(RedirectMismatch) as excinfo:
            flow.token(code, "c1", "https://wrong/cb")
        assert oauth_error(excinfo.value) == "invalid_grant"
        assert codes.get_state(code) == AuthorizationState.denied

    def test_revoke_twice_succeeds(self, flow):
        grant = flow.token(flow.authorize("u1", "c1", REDIRECT, ["read"]), "c1", REDIRECT)
        flow.revoke(grant.refresh_token)
        flow.revoke(grant.refresh_token)


class TestAuthorize:
    def test_unregistered_redirect(self, flow):
        with pytest.raises(InvalidClient):
            flow.authorize("u1", "c1", "https://evil/cb", ["read"])

    def test_unknown_client(self, flow):
        with pytest.raises(InvalidClient):
            flow.authorize("u1", "nope", REDIRECT, ["read"])

    def test_scope_outside_client_allowance(self, flow):
        with pytest.raises(InvalidScope):
            flow.authorize("u1", "c2", "https://b/cb", ["write"])

    def test_scope_outside_subject_grant(self, flow):
        with pytest.raises(InvalidScope):
            flow.authorize("u2", "c1", REDIRECT, ["read"])

    def test_empty_scope(self, flow):
        with pytest.raises(InvalidScope):
            flow.authorize("u1", "c1", REDIRECT, [])

    def test_missing_collaborator(self, codec, codes, tokens, clients):
        with pytest.raises(ValueError):
            OAuthFlowController(codec, codes, tokens, clients, None)


class TestToken:
    def test_ledger_links_access_to_refresh(self, flow, tokens, codec):
        grant = flow.token(flow.authorize("u1", "c1", REDIRECT, ["read", "write"]), "c1", REDIRECT)
        refresh_id = hash_opaque_token(grant.refresh_token)
        access_id = codec.verify(grant.access_token).token_id
        assert tokens.get(refresh_id).kind == TokenKind.refresh
        assert tokens.get(access_id).parent_id == refresh_id
        assert grant.scopes == frozenset({"read", "write"})

    def test_replay_is_already_used(self, flow):
        code = flow.authorize("u1", "c1", REDIRECT, ["read"])
        flow.token(code, "c1", REDIRECT)
        with pytest.raises(CodeAlreadyUsed):
            flow.token(code, "c1", REDIRECT)

    def test_expired_code_records_expired_state(self, flow, codes, clock):
        code = flow.authorize("u1", "c1", REDIRECT, ["read"])
        clock.advance(120)
        with pytest.raises(CodeExpired):
            flow.token(code, "c1", REDIRECT)
        assert codes.get_state(code) == AuthorizationState.expired

    def test_wrong_client_denies_attempt(self, flow, codes):
        code = flow.authorize("u1", "c1", REDIRECT, ["read"])
        with pytest.raises(InvalidClient):
            flow.token(code, "c2", REDIRECT)
        assert codes.get_state(code) == AuthorizationState.denied
        with pytest.raises(CodeAlreadyUsed):
            flow.token(code, "c1", REDIRECT)


class TestRefreshAndRevoke:
    @pytest.fixture
    def grant(self, flow):
        return flow.token(flow.authorize("u1", "c1", REDIRECT, ["read"]), "c1", REDIRECT)

    def test_refresh_keeps_refresh_token(self, flow, grant):
        assert flow.refresh(grant.refresh_token).refresh_token == grant.refresh_token

    def test_refresh_bound_to_client(self, flow, grant):
        with pytest.raises(InvalidClient):
            flow.refresh(grant.refresh_token, client_id="c2")

    def test_refresh_unknown(self, flow):
        with pytest.raises(TokenNotFound):
            flow.refresh("not-a-refresh-token")

    def test_refresh_after_revoke(self, flow, grant):
        flow.revoke(grant.refresh_token, hint=REFRESH_TOKEN_HINT)
        with pytest.raises(TokenRevoked):
            flow.refresh(grant.refresh_token)

    def test_revoke_access_token_only(self, flow, gate, grant):
        flow.revoke(grant.access_token, hint=ACCESS_TOKEN_HINT)
        with pytest.raises(Unauthenticated):
            gate.authenticate(_bearer(grant.access_token))
        fresh = flow.refresh(grant.refresh_token)
        assert gate.authenticate(_bearer(fresh.access_token)).subject == "u1"

    def test_access_token_without_hint_is_recognised(self, flow, gate, grant):
        flow.revoke(grant.access_token)
        with pytest.raises(Unauthenticated):
            gate.authenticate(_bearer(grant.access_token))

    @pytest.mark.parametrize("junk", ["", "garbage", "a.b.c"])
    def test_revoke_junk_is_silent(self, flow, junk):
        flow.revoke(junk)
        flow.revoke(junk, hint="something_else")


class TestLoginToken:
    def test_login_token_has_no_refresh(self, flow, gate):
        grant = flow.issue_login_token(User(email="a@example.com", scopes=frozenset({"profile"}), id=7))
        assert grant.refresh_token is None
        assert gate.authenticate(_bearer(grant.access_token)) == Identity("7", frozenset({"profile"}))

    def test_unsaved_user_rejected(self, flow):
        with pytest.raises(ValueError):
            flow.issue_login_token(User(email="a@example.com"))


class TestAuthGate:
    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("BEARER  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected

    def test_missing_header(self, gate):
        with pytest.raises(Unauthenticated) as excinfo:
            gate.authenticate(None)
        assert excinfo.value.reason == "missing_bearer_token"

    def test_reason_is_kept_but_message_is_generic(self, gate):
        with pytest.raises(Unauthenticated) as excinfo:
            gate.authenticate("Bearer not.a.token")
        assert excinfo.value.reason == "malformed_token"
        assert str(excinfo.value) == "Authentication required."

    def test_expired_token(self, gate, codec, clock):
        token = codec.issue("u1", {"read"}, TokenKind.access, ttl=60)
        clock.advance(60)
        with pytest.raises(Unauthenticated) as excinfo:
            gate.authenticate(_bearer(token))
        assert excinfo.value.reason == "expired"

    def test_refresh_kind_rejected(self, gate, codec):
        token = codec.issue("u1", {"read"}, TokenKind.refresh, ttl=60)
        with pytest.raises(Unauthenticated):
            gate.authenticate(_bearer(token))

    def test_revoking_unrecorded_token_rejects_it(self, flow, gate, codec, tokens):
        token = codec.issue("u1", {"read"}, TokenKind.access, ttl=60)
        assert gate.authenticate(_bearer(token)).subject == "u1"

        flow.revoke(token, hint=ACCESS_TOKEN_HINT)
        with pytest.raises(Unauthenticated) as excinfo:
            gate.authenticate(_bearer(token))
        assert excinfo.value.reason == "token_revoked"
        assert tokens.is_revoked(codec.verify(token).token_id)

        flow.revoke(token)

    def test_authorize_scopes(self, gate):
        identity = Identity("u1", frozenset({"read"}))
        assert gate.authorize(identity, {"read"}) is identity
        with pytest.raises(Forbidden) as excinfo:
            gate.authorize(identity, {"read", "write"})
        assert excinfo.value.required == frozenset({"read", "write"})
