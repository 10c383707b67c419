"""
events/store.py -- SQLAlchemy-backed persistence layer for calendar events.

Uses SQLAlchemy Core (not ORM) so the dataclass in events/models.py remains
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. EventStore is the repository; _row_to_event
is the mapper. Route handlers never touch SQL directly.

Ownership: every read and write takes the owner (token subject) and puts it
in the WHERE clause, so one user can never read or modify another user's
event by guessing its id.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = EventStore("sqlite:///events.db")
    event_id = store.create_event(Event(title="Standup", start=..., end=..., created_by="42"))
    store.list_events("42")
    store.close()
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from events.models import Event

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(20), nullable=False, server_default="event"),
    Column("title", String(255), nullable=False),
    Column("description", Text),
    Column("start", String(32), nullable=False),
    Column("end", String(32), nullable=False),
    Column("all_day", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("color", String(32)),
    Column("created_by", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_events_created_by", "created_by"),
)

_UPDATABLE = {"type", "title", "description", "start", "end", "all_day", "color"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_utc_iso(value: str) -> str:
    """Normalize an ISO 8601 timestamp to UTC. Naive values are taken as UTC.

    Raises ValueError for anything fromisoformat() rejects.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class EventStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def create_event(self, item: Event) -> int:
        """Insert an event and return its id."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.insert().values(
                    type=item.type,
                    title=item.title,
                    description=item.description,
                    start=to_utc_iso(item.start),
                    end=to_utc_iso(item.end),
                    all_day=1 if item.all_day else 0,
                    color=item.color,
                    created_by=item.created_by,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_event(self, event_id: int, owner: str) -> Optional[Event]:
        """Return the event if it exists and belongs to owner, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _events.select().where((_events.c.id == event_id) & (_events.c.created_by == owner))
            ).fetchone()
        return _row_to_event(row) if row is not None else None

    def list_events(self, owner: str, start_from: Optional[str] = None, start_to: Optional[str] = None) -> list[Event]:
        """Return owner's events ordered by start time.

        start_from / start_to filter on the start timestamp (inclusive). Stored
        timestamps are UTC, and the bounds are normalized the same way, so the
        text comparison orders correctly whatever offset the caller used.
        """
        query = _events.select().where(_events.c.created_by == owner)
        if start_from:
            query = query.where(_events.c.start >= to_utc_iso(start_from))
        if start_to:
            query = query.where(_events.c.start <= to_utc_iso(start_to))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_events.c.start, _events.c.id)).fetchall()
        return [_row_to_event(r) for r in rows]

    def update_event(self, event_id: int, owner: str, **fields) -> bool:
        """Update mutable fields of owner's event. Returns False if not found.

        Unknown field names raise ValueError.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown event fields: {unknown!r}")
        for name in ("start", "end"):
            if fields.get(name) is not None:
                fields[name] = to_utc_iso(fields[name])
        if "all_day" in fields:
            fields["all_day"] = 1 if fields["all_day"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.update()
                .where((_events.c.id == event_id) & (_events.c.created_by == owner))
                .values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def delete_event(self, event_id: int, owner: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.delete().where((_events.c.id == event_id) & (_events.c.created_by == owner))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_event(row) -> Event:
    return Event(
        id=row.id,
        type=row.type,
        title=row.title,
        description=row.description,
        start=row.start,
        end=row.end,
        all_day=bool(row.all_day),
        color=row.color,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
