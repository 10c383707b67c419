"""
auth/tokens.py -- Bearer token codec, password hashing, and opaque token helpers.

Security design decisions:
  JWT: python-jose, HMAC (HS256 by default, JWT_ALGORITHM selects the
       variant). Tokens carry sub, scope, kind, iat, exp, jti and a "kid"
       header naming the signing key. Verification tries every key in the
       ring's active snapshot, so tokens signed before a rotation keep working
       through the grace period.

       verify() raises one of three distinct errors (MalformedToken,
       BadSignature, Expired). They stay distinct for logs; the request gate
       collapses them into a single 401.

       Segments must be canonical base64url. A decoder that ignores the spare
       bits of the last character would accept a flipped character as the
       same signature, so any non-canonical segment is rejected as malformed.

       Clock skew leeway applies to exp only. A token whose iat lies in the
       future is malformed, no leeway.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  Opaque tokens (refresh tokens, authorization codes):
       secrets.token_urlsafe(32) gives 256 bits of entropy. Stores key them by
       SHA-256 of the raw value; no secret is needed for the digest because
       the input is already unguessable, and a key-independent digest keeps
       lookups stable across key rotation.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import bcrypt
from jose import jws, jwt
from jose.exceptions import JOSEError

from auth.errors import BadSignature, Expired, MalformedToken
from auth.keys import KeyRing
from auth.models import Claims, TokenKind, parse_scopes, scopes_to_str

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("hitime.auth.tokens")

_REQUIRED_STR_CLAIMS = ("sub", "scope", "kind", "jti")
_REQUIRED_INT_CLAIMS = ("iat", "exp")


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


def _is_canonical_segment(segment: str) -> bool:
    """True if segment is non-empty base64url without padding, in canonical form."""
    if not segment:
        return False
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


class TokenCodec:
    """Signs and verifies bearer tokens against a KeyRing.

    Usage:
        codec = TokenCodec(KeyRing.from_secrets(secret), leeway=30)
        token = codec.issue("42", {"events:read"}, TokenKind.access, ttl=3600)
        claims = codec.verify(token)
    """

    def __init__(
        self,
        keys: KeyRing,
        algorithm: str = "HS256",
        leeway: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if keys is None:
            raise ValueError("TokenCodec requires a KeyRing.")
        self._keys = keys
        self._algorithm = algorithm
        self._leeway = leeway
        self._clock = clock

    def issue(self, subject: str, scopes: Iterable[str], kind: TokenKind, ttl: int) -> str:
        """Return a signed token. See issue_with_claims() for the token id."""
        token, _claims = self.issue_with_claims(subject, scopes, kind, ttl)
        return token

    def issue_with_claims(
        self, subject: str, scopes: Iterable[str], kind: TokenKind, ttl: int
    ) -> tuple[str, Claims]:
        """Return (token, claims) signed with the current key.

        The claims carry the token id (jti) and timestamps so callers can
        record the token in the ledger without decoding it again.

        ttl is in seconds and must be positive so that exp > iat always holds.
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if not subject:
            raise ValueError("subject must not be empty")
        now = int(self._clock())
        jti = secrets.token_urlsafe(16)
        key = self._keys.current
        payload = {
            "sub": subject,
            "scope": scopes_to_str(scopes),
            "kind": TokenKind(kind).value,
            "iat": now,
            "exp": now + ttl,
            "jti": jti,
        }
        token = jwt.encode(payload, key.secret, algorithm=self._algorithm, headers={"kid": key.kid})
        claims = Claims(
            subject=subject,
            scopes=parse_scopes(payload["scope"]),
            kind=TokenKind(kind),
            token_id=jti,
            issued_at=now,
            expires_at=now + ttl,
        )
        return token, claims

    def verify(self, token: str) -> Claims:
        """Decode and check a token. Raises MalformedToken, BadSignature or Expired.

        Order of checks: structure, signature, claim shape, issued-at, expiry.
        Nothing in the payload is trusted until a key has verified the tag.
        """
        if not isinstance(token, str) or not token.isascii():
            raise MalformedToken("token is not an ASCII string")
        segments = token.split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(s) for s in segments):
            raise MalformedToken("token is not three canonical base64url segments")
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JOSEError as exc:
            raise MalformedToken(f"undecodable token: {exc}") from exc

        self._check_signature(token, header.get("kid"))

        claims = jwt.get_unverified_claims(token)
        for name in _REQUIRED_STR_CLAIMS:
            if not isinstance(claims.get(name), str):
                raise MalformedToken(f"claim {name!r} missing or not a string")
        for name in _REQUIRED_INT_CLAIMS:
            value = claims.get(name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise MalformedToken(f"claim {name!r} missing or not an integer")
        if not claims["sub"] or not claims["jti"]:
            raise MalformedToken("empty sub or jti")
        try:
            kind = TokenKind(claims["kind"])
        except ValueError as exc:
            raise MalformedToken("unknown token kind") from exc
        issued_at, expires_at = claims["iat"], claims["exp"]
        if expires_at <= issued_at:
            raise MalformedToken("exp is not after iat")

        now = int(self._clock())
        if issued_at > now:
            raise MalformedToken("iat is in the future")
        if now >= expires_at + self._leeway:
            raise Expired("token expired")

        return Claims(
            subject=claims["sub"],
            scopes=parse_scopes(claims["scope"]),
            kind=kind,
            token_id=claims["jti"],
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _check_signature(self, token: str, kid: str | None) -> None:
        # The kid header is unauthenticated until verified: it only decides
        # which key is tried first.
        keys = sorted(self._keys.active(), key=lambda k: k.kid != kid)
        for key in keys:
            try:
                jws.verify(token, key.secret, algorithms=[self._algorithm])
                return
            except JOSEError:
                continue
        raise BadSignature("no active key verifies the token")


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """256-bit random URL-safe string for refresh tokens and authorization codes."""
    return secrets.token_urlsafe(32)


def hash_opaque_token(raw: str) -> str:
    """SHA-256 hex digest used as the storage key for an opaque token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes. The API layer caps passwords at 72
    characters (Pydantic field) to stay under the truncation threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("hitime_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
