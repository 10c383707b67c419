"""
auth/token_store.py -- Revocation ledger for issued tokens (SQLAlchemy Core).

Every issued token gets a row: access tokens by jti, refresh tokens by the
SHA-256 digest of the opaque value. The ledger is the only authority on
whether a token has been revoked, and the only place refresh tokens are
resolved.

Cascade revocation:
  parent_id links an access token to the refresh token that minted it.
  revoke() walks that edge breadth-first inside one transaction, so revoking a
  refresh token revokes every access token minted from it (and anything
  minted from those, should deeper chains ever exist). The walk marks rows
  with UPDATE ... WHERE revoked = 0 and follows children of every visited
  id, so concurrent revocations of the same tree are harmless and the count
  of newly revoked rows is exact.

is_revoked() is a primary-key lookup. Unknown ids are not revoked: access
tokens are self-contained, so the ledger acts as a denylist for them.

Retention: the codec still accepts a token for `leeway` seconds after exp, so
rows are kept that long past expiry. Purging a revoked row any earlier would
let its token verify again.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import make_engine
from auth.errors import TokenExpired, TokenNotFound, TokenRevoked
from auth.models import TokenKind, TokenRecord, parse_scopes, scopes_to_str

logger = logging.getLogger("hitime.auth.token_store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tokens = Table(
    "tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),
    Column("subject", String(255), nullable=False),
    Column("kind", String(10), nullable=False),  # "access" | "refresh"
    Column("scope", Text, nullable=False, server_default=""),
    Column("client_id", String(255)),  # None for first-party login tokens
    Column("parent_id", String(64)),  # refresh token that minted this one
    Column("issued_at", Integer, nullable=False),
    Column("expires_at", Integer, nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Index("ix_tokens_parent_id", "parent_id"),
)


class TokenStore:
    """Ledger of issued access and refresh tokens.

    Usage:
        ledger = TokenStore("sqlite:///auth.db", retention=30)
        ledger.register(refresh_id, "42", TokenKind.refresh, expires_at, scopes={"profile"})
        ledger.register(jti, "42", TokenKind.access, expires_at, parent_id=refresh_id)
        ledger.revoke(refresh_id)      # cascades to jti
        ledger.is_revoked(jti)         # True
    """

    def __init__(self, db_url: str, clock: Callable[[], float] = time.time, retention: int = 0) -> None:
        if retention < 0:
            raise ValueError("retention must not be negative")
        self._clock = clock
        self.retention = retention
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def _now(self) -> int:
        return int(self._clock())

    def register(
        self,
        token_id: str,
        subject: str,
        kind: TokenKind,
        expires_at: int,
        scopes: Iterable[str] = (),
        client_id: str | None = None,
        parent_id: str | None = None,
        issued_at: int | None = None,
    ) -> None:
        """Record an issued token as live.

        Raises sqlalchemy.exc.IntegrityError if token_id is already recorded.
        """
        issued_at = self._now() if issued_at is None else issued_at
        if expires_at <= issued_at:
            raise ValueError("expires_at must be after issued_at")
        with self.engine.begin() as conn:
            conn.execute(
                _tokens.insert().values(
                    token_id=token_id,
                    subject=subject,
                    kind=TokenKind(kind).value,
                    scope=scopes_to_str(scopes),
                    client_id=client_id,
                    parent_id=parent_id,
                    issued_at=issued_at,
                    expires_at=expires_at,
                    revoked=0,
                )
            )

    def is_revoked(self, token_id: str) -> bool:
        with self.engine.connect() as conn:
            revoked = conn.execute(select(_tokens.c.revoked).where(_tokens.c.token_id == token_id)).scalar()
        return bool(revoked)

    def revoke(self, token_id: str) -> int:
        """Revoke token_id and everything minted from it. Idempotent.

        Returns the number of rows that changed from live to revoked (0 for an
        unknown or already-revoked id; neither is an error).
        """
        newly_revoked = 0
        visited: set[str] = set()
        frontier = [token_id]
        with self.engine.begin() as conn:
            while frontier:
                visited.update(frontier)
                result = conn.execute(
                    _tokens.update()
                    .where(_tokens.c.token_id.in_(frontier) & (_tokens.c.revoked == 0))
                    .values(revoked=1)
                )
                newly_revoked += result.rowcount
                children = conn.execute(
                    select(_tokens.c.token_id).where(_tokens.c.parent_id.in_(frontier))
                ).scalars()
                frontier = [child for child in children if child not in visited]
        if newly_revoked:
            logger.info("Revoked %d token(s) rooted at %s", newly_revoked, token_id[:12])
        return newly_revoked

    def deny(
        self,
        token_id: str,
        subject: str,
        kind: TokenKind,
        expires_at: int,
        issued_at: int | None = None,
    ) -> bool:
        """Revoke token_id, recording it first if the ledger has never seen it.

        Used for validly signed tokens that were issued without a ledger row.
        Returns True if a row was inserted or flipped to revoked.
        """
        if self.revoke(token_id):
            return True
        issued_at = self._now() if issued_at is None else issued_at
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _tokens.insert().values(
                        token_id=token_id,
                        subject=subject,
                        kind=TokenKind(kind).value,
                        scope="",
                        issued_at=issued_at,
                        expires_at=max(expires_at, issued_at + 1),
                        revoked=1,
                    )
                )
        except IntegrityError:
            # Already recorded (revoked, or registered concurrently).
            return self.revoke(token_id) > 0
        logger.info("Denylisted unrecorded token %s", token_id[:12])
        return True

    def resolve_refresh(self, token_id: str) -> TokenRecord:
        """Return the live refresh token record.

        Raises TokenNotFound (unknown id, or not a refresh token),
        TokenRevoked, or TokenExpired.
        """
        record = self.get(token_id)
        if record is None or record.kind != TokenKind.refresh:
            raise TokenNotFound("unknown refresh token")
        if record.revoked:
            raise TokenRevoked("refresh token revoked")
        if self._now() >= record.expires_at:
            raise TokenExpired("refresh token expired")
        return record

    def get(self, token_id: str) -> TokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_id == token_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def children(self, token_id: str) -> list[TokenRecord]:
        """Tokens minted directly from token_id, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.parent_id == token_id).order_by(_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete expired rows that no live row points at. Returns the count removed.

        A revoked access token must stay denylisted for as long as the codec
        would still accept it, so a row goes only once expires_at + retention
        has passed. An expired parent with unexpired children is kept so
        cascade revocation can still reach them.
        """
        cutoff = self._now() - self.retention
        live_children = select(_tokens.c.parent_id).where(
            (_tokens.c.parent_id.is_not(None)) & (_tokens.c.expires_at > cutoff)
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.delete().where((_tokens.c.expires_at <= cutoff) & (_tokens.c.token_id.not_in(live_children)))
            )
        if result.rowcount:
            logger.debug("Purged %d expired tokens", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> TokenRecord:
    return TokenRecord(
        token_id=row.token_id,
        subject=row.subject,
        kind=TokenKind(row.kind),
        scopes=parse_scopes(row.scope),
        client_id=row.client_id,
        parent_id=row.parent_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
    )
