"""
auth/dependencies.py -- Request-path enforcement (AuthGate) and FastAPI Depends() helpers.

AuthGate.authenticate() runs on every protected request:
  1. Take the bearer token from the Authorization header. Missing or not a
     Bearer credential -> Unauthenticated.
  2. TokenCodec.verify(). Malformed, bad signature or expired -> Unauthenticated.
  3. Refresh-kind tokens are not accepted as credentials -> Unauthenticated.
  4. TokenStore.is_revoked(jti) -> Unauthenticated.
  5. Otherwise return Identity(subject, scopes).

The specific reason for a rejection is logged and kept on the exception's
reason attribute; the HTTP response is always the same generic 401 so a
caller cannot tell an expired token from a forged one.

Scope checks are a separate step (AuthGate.authorize) and produce 403, never
401: the caller is known, just not allowed.

FastAPI wiring:
  get_current_identity() -- dependency; 401 or the Identity, which is also
      stored on request.state.identity for downstream reads.
  require_scope(*scopes) -- dependency factory; 401, 403, or the Identity.

Layer rule: no imports from api/ or events/. auth/dependencies.py may import
from fastapi because this module is part of the FastAPI dependency injection
system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import Forbidden, Unauthenticated, VerificationError
from auth.models import Identity, TokenKind
from auth.token_store import TokenStore
from auth.tokens import TokenCodec

logger = logging.getLogger("hitime.auth.gate")


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" value, else None.

    The scheme is case-insensitive (RFC 7235); the token itself is not.
    """
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class AuthGate:
    """Validates bearer credentials against the codec and the revocation ledger."""

    def __init__(self, codec: TokenCodec, tokens: TokenStore) -> None:
        if codec is None or tokens is None:
            raise ValueError("AuthGate requires a TokenCodec and a TokenStore.")
        self._codec = codec
        self._tokens = tokens

    def authenticate(self, authorization: str | None) -> Identity:
        token = extract_bearer(authorization)
        if token is None:
            raise self._reject("missing_bearer_token")
        try:
            claims = self._codec.verify(token)
        except VerificationError as exc:
            raise self._reject(exc.code) from exc
        if claims.kind != TokenKind.access:
            raise self._reject("not_an_access_token")
        if self._tokens.is_revoked(claims.token_id):
            raise self._reject("token_revoked", claims.token_id)
        return Identity(subject=claims.subject, scopes=claims.scopes)

    def authorize(self, identity: Identity, required) -> Identity:
        """Raise Forbidden unless identity carries every required scope."""
        required = frozenset(required)
        if not identity.has_scopes(required):
            logger.info(
                "Forbidden: subject=%s missing scope(s) %s",
                identity.subject,
                " ".join(sorted(required - identity.scopes)),
            )
            raise Forbidden(required)
        return identity

    @staticmethod
    def _reject(reason: str, token_id: str | None = None) -> Unauthenticated:
        if token_id:
            logger.info("Rejected bearer token: %s (jti=%s)", reason, token_id)
        else:
            logger.info("Rejected bearer token: %s", reason)
        return Unauthenticated(reason)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_identity(request: Request) -> Identity:
    """Require a valid bearer token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    gate: AuthGate = request.app.state.gate
    try:
        identity = gate.authenticate(request.headers.get("Authorization"))
    except Unauthenticated:
        raise _unauthorized() from None
    request.state.identity = identity
    return identity


def require_scope(*scopes: str):
    """Dependency factory: require authentication plus every scope listed.

    Raises HTTP 401 if unauthenticated, HTTP 403 if a scope is missing.
        @router.get("/events", dependencies=[Depends(require_scope("events:read"))])
    """
    required = frozenset(scopes)

    def dependency(request: Request) -> Identity:
        identity = get_current_identity(request)
        gate: AuthGate = request.app.state.gate
        try:
            return gate.authorize(identity, required)
        except Forbidden:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient scope."},
                headers={
                    "WWW-Authenticate": f'Bearer error="insufficient_scope", scope="{" ".join(sorted(required))}"'
                },
            ) from None

    return dependency
