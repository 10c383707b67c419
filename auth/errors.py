"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure in auth/ is one of these exception classes. They are terminal
for the current call: nothing in auth/ retries them. Each class carries two
stable identifiers:

  code        -- the internal name, used in logs. Verification failures stay
                 distinguishable here so operators can tell "expired" from
                 "bad signature".
  oauth_error -- the RFC 6749 error string surfaced by the OAuth endpoints.
                 Several internal codes collapse onto one public value so the
                 endpoints cannot be used as an oracle.

Layer rule: no imports from api/, events/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every auth failure."""

    code = "auth_error"
    oauth_error = "invalid_request"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


class VerificationError(AuthError):
    """A bearer token failed TokenCodec.verify()."""

    oauth_error = "invalid_token"


class MalformedToken(VerificationError):
    code = "malformed_token"


class BadSignature(VerificationError):
    code = "bad_signature"


class Expired(VerificationError):
    code = "expired"


# ---------------------------------------------------------------------------
# Token ledger
# ---------------------------------------------------------------------------


class TokenRevoked(AuthError):
    code = "token_revoked"
    oauth_error = "invalid_grant"


class TokenNotFound(AuthError):
    code = "token_not_found"
    oauth_error = "invalid_grant"


class TokenExpired(AuthError):
    """A ledger record (refresh token) is past its expires_at."""

    code = "token_expired"
    oauth_error = "invalid_grant"


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------


class CodeNotFound(AuthError):
    code = "code_not_found"
    oauth_error = "invalid_grant"


class CodeExpired(AuthError):
    code = "code_expired"
    oauth_error = "invalid_grant"


class CodeAlreadyUsed(AuthError):
    code = "code_already_used"
    oauth_error = "invalid_grant"


class RedirectMismatch(AuthError):
    code = "redirect_mismatch"
    oauth_error = "invalid_grant"


# ---------------------------------------------------------------------------
# Authorization requests
# ---------------------------------------------------------------------------


class InvalidClient(AuthError):
    code = "invalid_client"
    oauth_error = "invalid_client"


class InvalidScope(AuthError):
    code = "invalid_scope"
    oauth_error = "invalid_scope"


# ---------------------------------------------------------------------------
# Request gate
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    """No usable bearer token. The public message never says why."""

    code = "unauthenticated"
    oauth_error = "invalid_token"

    def __init__(self, reason: str = "") -> None:
        super().__init__("Authentication required.")
        # Internal only -- logged by the gate, never rendered to the caller.
        self.reason = reason or self.code


class Forbidden(AuthError):
    code = "forbidden"
    oauth_error = "insufficient_scope"

    def __init__(self, required: frozenset[str] | set[str] = frozenset()) -> None:
        super().__init__("Insufficient scope.")
        self.required = frozenset(required)
