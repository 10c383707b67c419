"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the codec and
the flow controller do the work; these classes only own the domain shape.

Timestamps are integer UNIX seconds. Scopes are frozensets in memory and a
space-delimited string on the wire (see scopes_to_str / parse_scopes).

Layer rule: no imports from api/, events/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


class AuthorizationState(str, Enum):
    """Lifecycle of one authorization attempt.

    requested -> code_issued -> exchanged | expired | denied
    The three right-hand states are terminal.
    """

    requested = "requested"
    code_issued = "code_issued"
    exchanged = "exchanged"
    expired = "expired"
    denied = "denied"


def parse_scopes(value: str | None) -> frozenset[str]:
    """Split a space-delimited scope string. None and "" give an empty set."""
    if not value:
        return frozenset()
    return frozenset(value.split())


def scopes_to_str(scopes) -> str:
    """Canonical wire form: sorted, single-space separated."""
    return " ".join(sorted(scopes))


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of a protected endpoint.

    Populated only by AuthGate and attached to request.state.identity.
    Route handlers read it; nothing downstream may replace it.
    """

    subject: str
    scopes: frozenset[str] = frozenset()

    def has_scopes(self, required) -> bool:
        return frozenset(required) <= self.scopes


@dataclass(frozen=True)
class Claims:
    """Verified contents of an access (or refresh) bearer token."""

    subject: str
    scopes: frozenset[str]
    kind: TokenKind
    token_id: str
    issued_at: int
    expires_at: int


@dataclass
class AuthorizationCode:
    """One authorization code record.

    code_hash is SHA-256 of the raw code. The raw value leaves the process
    exactly once, in the redirect to the client.
    """

    code_hash: str
    subject: str
    scopes: frozenset[str]
    client_id: str
    redirect_uri: str
    issued_at: int
    expires_at: int
    consumed: bool = False
    state: AuthorizationState = AuthorizationState.code_issued


@dataclass
class TokenRecord:
    """Ledger entry for an issued token.

    Access tokens are recorded by jti; refresh tokens by SHA-256 of the opaque
    value. parent_id links an access token to the refresh token that minted it.
    """

    token_id: str
    subject: str
    kind: TokenKind
    expires_at: int
    scopes: frozenset[str] = frozenset()
    issued_at: int = 0
    revoked: bool = False
    client_id: str | None = None
    parent_id: str | None = None


@dataclass
class TokenGrant:
    """What the token endpoint hands back to a client."""

    access_token: str
    expires_in: int
    scopes: frozenset[str]
    refresh_token: str | None = None
    token_type: str = "bearer"


@dataclass
class OAuthClient:
    """Registered OAuth2 client."""

    client_id: str
    client_name: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    allowed_scopes: frozenset[str] = frozenset()


@dataclass
class User:
    """A resource owner known to the credential store.

    The token subject for a user is str(id). scopes are the permissions the
    user may grant to clients (and receives on first-party login).
    """

    email: str
    scopes: frozenset[str] = frozenset()
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True

    @property
    def subject(self) -> str:
        return str(self.id)
