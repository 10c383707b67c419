"""
auth/flow.py -- OAuth2 authorization-code grant state machine.

One authorization attempt moves through:

    requested --authorize()--> code_issued --token()--> exchanged
                                    |
                                    +--> expired   (code used after its TTL)
                                    +--> denied    (wrong client or redirect_uri)

A request that fails validation in authorize() never leaves "requested"; no
code exists for it. The terminal states are recorded on the code row by
AuthorizationCodeStore, so a denied code cannot be retried.

Tokens minted by token():
  refresh token -- opaque 256-bit string, ledger id = SHA-256 digest.
  access token  -- JWT from TokenCodec, ledger id = jti, parent_id = refresh id.

refresh() mints another access token under the same refresh id and returns
the refresh token unchanged (no rotation). Every access token therefore hangs
directly off its refresh token, and revoking the refresh token cascades to
all of them in TokenStore.revoke().

Revoking a validly signed access token the ledger has never seen records it
as revoked, so it is rejected from then on.

revoke() never raises for bad input: a revocation endpoint that answers
differently for valid and invalid tokens is a token-validity oracle.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.clients import ClientRegistry
from auth.codes import AuthorizationCodeStore
from auth.errors import (
    AuthError,
    CodeExpired,
    InvalidClient,
    InvalidScope,
    RedirectMismatch,
    VerificationError,
)
from auth.models import AuthorizationState, TokenGrant, TokenKind, User
from auth.token_store import TokenStore
from auth.tokens import TokenCodec, generate_opaque_token, hash_opaque_token

logger = logging.getLogger("hitime.auth.flow")

ACCESS_TOKEN_HINT = "access_token"  # noqa: S105 -- RFC 7009 hint name, not a password
REFRESH_TOKEN_HINT = "refresh_token"  # noqa: S105


def oauth_error(exc: AuthError) -> str:
    """RFC 6749 error string for an auth failure."""
    return exc.oauth_error


class OAuthFlowController:
    """Orchestrates authorize -> token -> refresh -> revoke.

    All collaborators are required. users must provide granted_scopes(subject)
    returning the scopes the subject may grant, or None if the subject is
    unknown or inactive (auth.store.UserStore does).
    """

    def __init__(
        self,
        codec: TokenCodec,
        codes: AuthorizationCodeStore,
        tokens: TokenStore,
        clients: ClientRegistry,
        users,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("codec", codec),
                ("codes", codes),
                ("tokens", tokens),
                ("clients", clients),
                ("users", users),
            )
            if value is None
        ]
        if missing:
            raise ValueError(f"OAuthFlowController is missing collaborators: {', '.join(missing)}")
        if access_ttl <= 0 or refresh_ttl <= 0:
            raise ValueError("Token lifetimes must be positive.")
        self.codec = codec
        self.codes = codes
        self.tokens = tokens
        self.clients = clients
        self.users = users
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # requested -> code_issued
    # ------------------------------------------------------------------

    def authorize(self, subject: str, client_id: str, redirect_uri: str, scopes: Iterable[str]) -> str:
        """Issue an authorization code for subject on behalf of client_id.

        Raises InvalidClient if client_id and redirect_uri are not registered
        together, InvalidScope if the request is empty or asks for more than
        both the client and the subject allow.
        """
        client = self.clients.validate(client_id, redirect_uri)
        requested = frozenset(scopes)
        if not requested:
            raise InvalidScope("no scope requested")
        if not requested <= client.allowed_scopes:
            raise InvalidScope("scope not allowed for client")
        granted = self.users.granted_scopes(subject)
        if granted is None:
            raise InvalidScope("subject cannot grant scopes")
        if not requested <= granted:
            raise InvalidScope("scope not granted to subject")
        code = self.codes.issue(subject, requested, client_id, redirect_uri)
        logger.info("Authorization code issued (client=%s, subject=%s)", client_id, subject)
        return code

    # ------------------------------------------------------------------
    # code_issued -> exchanged | expired | denied
    # ------------------------------------------------------------------

    def token(self, code: str, client_id: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for an access + refresh token pair."""
        try:
            subject, scopes = self.codes.consume(code, client_id, redirect_uri)
        except CodeExpired:
            self.codes.close_attempt(code, AuthorizationState.expired)
            logger.info("Code exchange failed: expired (client=%s)", client_id)
            raise
        except (RedirectMismatch, InvalidClient) as exc:
            self.codes.close_attempt(code, AuthorizationState.denied)
            logger.warning("Code exchange denied: %s (client=%s)", exc.code, client_id)
            raise
        except AuthError as exc:
            logger.info("Code exchange failed: %s (client=%s)", exc.code, client_id)
            raise

        refresh_token = generate_opaque_token()
        refresh_id = hash_opaque_token(refresh_token)
        access_token, claims = self.codec.issue_with_claims(subject, scopes, TokenKind.access, self.access_ttl)
        self.tokens.register(
            refresh_id,
            subject,
            TokenKind.refresh,
            expires_at=claims.issued_at + self.refresh_ttl,
            scopes=scopes,
            client_id=client_id,
            issued_at=claims.issued_at,
        )
        self._register_access(claims, client_id, parent_id=refresh_id)
        logger.info("Authorization code exchanged (client=%s, subject=%s)", client_id, subject)
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            scopes=scopes,
        )

    # ------------------------------------------------------------------
    # Refresh and revoke
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, client_id: str | None = None) -> TokenGrant:
        """Mint a new access token from a live refresh token.

        Raises TokenNotFound, TokenRevoked or TokenExpired from the ledger,
        and InvalidClient if client_id is given and does not match the client
        the refresh token was issued to.
        """
        record = self.tokens.resolve_refresh(hash_opaque_token(refresh_token))
        if client_id is not None and record.client_id != client_id:
            raise InvalidClient("refresh token issued to another client")
        access_token = self._mint_access(record.subject, record.scopes, record.client_id, parent_id=record.token_id)
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            scopes=record.scopes,
        )

    def revoke(self, token: str, hint: str | None = None) -> None:
        """Revoke an access or refresh token. Always succeeds.

        The hint only decides which interpretation is tried first; an
        unrecognised hint is ignored (RFC 7009 section 2.1).
        """
        if not token:
            return
        if hint == ACCESS_TOKEN_HINT:
            order = (self._revoke_access, self._revoke_refresh)
        else:
            order = (self._revoke_refresh, self._revoke_access)
        for attempt in order:
            if attempt(token):
                return
        logger.debug("Revocation request for an unrecognised token ignored")

    def _revoke_refresh(self, token: str) -> bool:
        token_id = hash_opaque_token(token)
        record = self.tokens.get(token_id)
        if record is None or record.kind != TokenKind.refresh:
            return False
        count = self.tokens.revoke(token_id)
        logger.info("Refresh token revoked (subject=%s, cascade=%d)", record.subject, count)
        return True

    def _revoke_access(self, token: str) -> bool:
        try:
            claims = self.codec.verify(token)
        except VerificationError:
            return False
        self.tokens.deny(
            claims.token_id,
            claims.subject,
            claims.kind,
            expires_at=claims.expires_at,
            issued_at=claims.issued_at,
        )
        logger.info("Access token revoked (subject=%s)", claims.subject)
        return True

    # ------------------------------------------------------------------
    # First-party login
    # ------------------------------------------------------------------

    def issue_login_token(self, user: User) -> TokenGrant:
        """Access token for a user who logged in with a password.

        Carries all of the user's scopes, has no refresh token and no parent.
        """
        if user.id is None:
            raise ValueError("user has not been stored yet")
        access_token = self._mint_access(user.subject, user.scopes, client_id=None, parent_id=None)
        return TokenGrant(access_token=access_token, expires_in=self.access_ttl, scopes=user.scopes)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mint_access(self, subject: str, scopes, client_id: str | None, parent_id: str | None) -> str:
        token, claims = self.codec.issue_with_claims(subject, scopes, TokenKind.access, self.access_ttl)
        self._register_access(claims, client_id, parent_id)
        return token

    def _register_access(self, claims, client_id: str | None, parent_id: str | None) -> None:
        self.tokens.register(
            claims.token_id,
            claims.subject,
            TokenKind.access,
            expires_at=claims.expires_at,
            scopes=claims.scopes,
            client_id=client_id,
            parent_id=parent_id,
            issued_at=claims.issued_at,
        )
