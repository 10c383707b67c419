"""
auth/codes.py -- One-time authorization code store (SQLAlchemy Core).

Pattern: Repository + Data Mapper, same as auth/store.py.

Single use is enforced by the database, not by Python locks. consume() runs
one conditional UPDATE:

    UPDATE authorization_codes SET consumed = 1, state = 'exchanged'
    WHERE code_hash = ? AND consumed = 0 AND expires_at > ?
      AND client_id = ? AND redirect_uri = ?

That statement is the compare-and-set. SQLite (or any other backend) applies
it under its write lock, so among any number of concurrent exchanges for the
same code exactly one sees rowcount == 1. Losers re-read the row only to
choose which error to raise.

Codes are stored by SHA-256 digest. The winner reads subject and scope inside
the same transaction as its UPDATE, so a concurrent purge cannot take the row
from under it. Expired rows are deleted lazily on issue() and by purge_expired();
consumed rows live until their expiry so a replay still reports
CodeAlreadyUsed rather than CodeNotFound.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.db import make_engine
from auth.errors import CodeAlreadyUsed, CodeExpired, CodeNotFound, InvalidClient, RedirectMismatch
from auth.models import AuthorizationCode, AuthorizationState, parse_scopes, scopes_to_str
from auth.tokens import generate_opaque_token, hash_opaque_token

logger = logging.getLogger("hitime.auth.codes")

MIN_CODE_TTL = 60
MAX_CODE_TTL = 300

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_codes = Table(
    "authorization_codes",
    _metadata,
    Column("code_hash", String(64), primary_key=True),  # SHA-256 hex of the raw code
    Column("subject", String(255), nullable=False),
    Column("scope", Text, nullable=False),  # space-delimited
    Column("client_id", String(255), nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("issued_at", Integer, nullable=False),
    Column("expires_at", Integer, nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("state", String(20), nullable=False),
)


class AuthorizationCodeStore:
    """Issues and consumes single-use authorization codes.

    Usage:
        codes = AuthorizationCodeStore("sqlite:///auth.db", ttl=120)
        code = codes.issue("42", {"events:read"}, "c1", "https://a/cb")
        subject, scopes = codes.consume(code, "c1", "https://a/cb")
    """

    def __init__(
        self,
        db_url: str,
        ttl: int = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not MIN_CODE_TTL <= ttl <= MAX_CODE_TTL:
            raise ValueError(f"Authorization code TTL must be between {MIN_CODE_TTL} and {MAX_CODE_TTL} seconds.")
        self.ttl = ttl
        self._clock = clock
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def _now(self) -> int:
        return int(self._clock())

    def issue(self, subject: str, scopes: Iterable[str], client_id: str, redirect_uri: str) -> str:
        """Store a new code bound to (subject, scopes, client, redirect) and return it."""
        code = generate_opaque_token()
        now = self._now()
        with self.engine.begin() as conn:
            conn.execute(_codes.delete().where(_codes.c.expires_at <= now))
            conn.execute(
                _codes.insert().values(
                    code_hash=hash_opaque_token(code),
                    subject=subject,
                    scope=scopes_to_str(scopes),
                    client_id=client_id,
                    redirect_uri=redirect_uri,
                    issued_at=now,
                    expires_at=now + self.ttl,
                    consumed=0,
                    state=AuthorizationState.code_issued.value,
                )
            )
        return code

    def consume(self, code: str, client_id: str, redirect_uri: str) -> tuple[str, frozenset[str]]:
        """Exchange a code exactly once. Returns (subject, scopes).

        Raises CodeNotFound, CodeAlreadyUsed, CodeExpired, InvalidClient or
        RedirectMismatch, checked in that order when the exchange fails.
        """
        code_hash = hash_opaque_token(code)
        now = self._now()
        with self.engine.begin() as conn:
            result = conn.execute(
                _codes.update()
                .where(
                    (_codes.c.code_hash == code_hash)
                    & (_codes.c.consumed == 0)
                    & (_codes.c.expires_at > now)
                    & (_codes.c.client_id == client_id)
                    & (_codes.c.redirect_uri == redirect_uri)
                )
                .values(consumed=1, state=AuthorizationState.exchanged.value)
            )
            if result.rowcount == 1:
                row = conn.execute(
                    select(_codes.c.subject, _codes.c.scope).where(_codes.c.code_hash == code_hash)
                ).one()
                return row.subject, parse_scopes(row.scope)

        record = self.get(code)
        if record is None:
            raise CodeNotFound("unknown authorization code")
        if record.consumed:
            raise CodeAlreadyUsed("authorization code already used")
        if record.expires_at <= now:
            raise CodeExpired("authorization code expired")
        if record.client_id != client_id:
            raise InvalidClient("authorization code issued to another client")
        raise RedirectMismatch("redirect_uri does not match the authorization request")

    def close_attempt(self, code: str, state: AuthorizationState) -> bool:
        """Move a still-open attempt to a terminal failure state.

        denied also burns the code (consumed = 1). expired only records the
        state; the expiry itself already blocks the exchange.
        Returns True if the record changed.
        """
        code_hash = hash_opaque_token(code)
        if state == AuthorizationState.denied:
            stmt = (
                _codes.update()
                .where((_codes.c.code_hash == code_hash) & (_codes.c.consumed == 0))
                .values(consumed=1, state=state.value)
            )
        elif state == AuthorizationState.expired:
            stmt = (
                _codes.update()
                .where(
                    (_codes.c.code_hash == code_hash)
                    & (_codes.c.state == AuthorizationState.code_issued.value)
                    & (_codes.c.consumed == 0)
                )
                .values(state=state.value)
            )
        else:
            raise ValueError(f"close_attempt() only accepts expired or denied, not {state.value!r}")
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount > 0

    def get(self, code: str) -> AuthorizationCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_codes.select().where(_codes.c.code_hash == hash_opaque_token(code))).fetchone()
        return _row_to_code(row) if row is not None else None

    def get_state(self, code: str) -> AuthorizationState | None:
        record = self.get(code)
        return record.state if record is not None else None

    def purge_expired(self) -> int:
        """Delete every expired code. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at <= self._now()))
        if result.rowcount:
            logger.debug("Purged %d expired authorization codes", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_code(row) -> AuthorizationCode:
    return AuthorizationCode(
        code_hash=row.code_hash,
        subject=row.subject,
        scopes=parse_scopes(row.scope),
        client_id=row.client_id,
        redirect_uri=row.redirect_uri,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        consumed=bool(row.consumed),
        state=AuthorizationState(row.state),
    )
