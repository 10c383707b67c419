"""
events/models.py -- Domain dataclass for calendar events.

Pure data container with zero logic. Persistence lives in events/store.py.

Separation of concerns: events/ knows nothing about tokens or scopes. The
owner of an event is the token subject that created it (created_by); the API
layer enforces that a caller only sees their own events.
"""

from dataclasses import dataclass
from typing import Optional

EVENT_TYPES = ("event", "task", "habit", "travel", "custom")


@dataclass
class Event:
    """A calendar entry.

    start and end are ISO 8601 strings. id is None before the record is
    written to the database; created_at / updated_at are set by the store.
    """

    title: str
    start: str
    end: str
    created_by: str
    type: str = "event"  # "event" | "task" | "habit" | "travel" | "custom"
    description: Optional[str] = None
    all_day: bool = False
    color: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
