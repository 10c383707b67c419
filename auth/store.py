"""
auth/store.py -- SQLAlchemy Core persistence layer for user credentials.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and flow code never touches SQL directly.

This is the credential store the OAuth flow consults: a token subject is
str(user.id), and a user's scope column lists what that user may grant to
clients.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are stored lower-cased so lookups are case-insensitive without
  relying on backend collation.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.db import make_engine
from auth.models import User, parse_scopes, scopes_to_str

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("scope", Text, nullable=False, server_default=""),  # space-delimited grantable scopes
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_MUTABLE_FIELDS = {"hashed_password", "scopes", "is_active"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///auth.db")
        uid = store.create_user(User(email="a@example.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already registered.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    scope=scopes_to_str(user.scopes),
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_subject(self, subject: str) -> User | None:
        """Look up a user by token subject. Non-numeric subjects match nobody."""
        if not subject.isdigit():
            return None
        return self.get_by_id(int(subject))

    def granted_scopes(self, subject: str) -> frozenset[str] | None:
        """Scopes an active subject may grant, or None for unknown/inactive subjects."""
        user = self.get_by_subject(subject)
        if user is None or not user.is_active:
            return None
        return user.scopes

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields: hashed_password, scopes, is_active.

        Returns True if a row was updated, False if user_id was not found.
        Unknown field names raise ValueError.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values: dict = {}
        if "hashed_password" in fields:
            values["hashed_password"] = fields["hashed_password"]
        if "scopes" in fields:
            values["scope"] = scopes_to_str(fields["scopes"])
        if "is_active" in fields:
            values["is_active"] = 1 if fields["is_active"] else 0
        if not values:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted.

        Outstanding tokens are not touched; callers revoke them separately.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        scopes=parse_scopes(row.scope),
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
