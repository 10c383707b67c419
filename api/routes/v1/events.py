"""
api/routes/v1/events.py -- Calendar event CRUD routes.

Routes:
  POST   /api/events          -- create event           (events:write)
  GET    /api/events          -- list caller's events   (events:read)
  GET    /api/events/{id}     -- event detail           (events:read)
  PUT    /api/events/{id}     -- partial update         (events:write)
  DELETE /api/events/{id}     -- delete                 (events:write)

Ownership: the bearer token's subject is passed to every EventStore call and
becomes part of the WHERE clause. Another user's event is indistinguishable
from a missing one (404), so ids cannot be probed.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import EventCreate, EventResponse, EventUpdate, check_event_window
from auth.dependencies import require_scope
from auth.models import Identity
from events.models import Event
from events.store import EventStore

router = APIRouter()

_read = require_scope("events:read")
_write = require_scope("events:write")


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "Event not found."},
    )


def _to_response(item: Event) -> EventResponse:
    return EventResponse(
        id=item.id,
        type=item.type,
        title=item.title,
        description=item.description,
        start=item.start,
        end=item.end,
        all_day=item.all_day,
        color=item.color,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


@router.post("/events", response_model=EventResponse, status_code=201)
def create_event(request: Request, body: EventCreate, identity: Identity = Depends(_write)) -> EventResponse:
    store: EventStore = request.app.state.events
    event_id = store.create_event(
        Event(
            type=body.type.value,
            title=body.title,
            description=body.description,
            start=body.start,
            end=body.end,
            all_day=body.all_day,
            color=body.color,
            created_by=identity.subject,
        )
    )
    created = store.get_event(event_id, identity.subject)
    if created is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Event not found after write."},
        )
    return _to_response(created)


@router.get("/events", response_model=list[EventResponse])
def list_events(
    request: Request,
    start_from: Optional[str] = None,
    start_to: Optional[str] = None,
    identity: Identity = Depends(_read),
) -> list[EventResponse]:
    """List the caller's events, optionally bounded by start time (any UTC offset)."""
    store: EventStore = request.app.state.events
    try:
        items = store.list_events(identity.subject, start_from, start_to)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "validation_error", "message": "start_from and start_to must be ISO 8601 timestamps."},
        ) from exc
    return [_to_response(e) for e in items]


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(request: Request, event_id: int, identity: Identity = Depends(_read)) -> EventResponse:
    store: EventStore = request.app.state.events
    item = store.get_event(event_id, identity.subject)
    if item is None:
        raise _not_found()
    return _to_response(item)


@router.put("/events/{event_id}", response_model=EventResponse)
def update_event(
    request: Request,
    event_id: int,
    body: EventUpdate,
    identity: Identity = Depends(_write),
) -> EventResponse:
    """Apply the fields present in the body. An empty body is a 400."""
    store: EventStore = request.app.state.events
    updates = body.model_dump(exclude_unset=True)
    if "type" in updates and updates["type"] is not None:
        updates["type"] = updates["type"].value
    # Explicit nulls are only meaningful for the optional columns.
    updates = {k: v for k, v in updates.items() if v is not None or k in ("description", "color")}
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    current = store.get_event(event_id, identity.subject)
    if current is None:
        raise _not_found()
    start = updates.get("start", current.start)
    end = updates.get("end", current.end)
    try:
        check_event_window(start, end)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "validation_error", "message": str(exc)},
        ) from exc

    store.update_event(event_id, identity.subject, **updates)
    updated = store.get_event(event_id, identity.subject)
    if updated is None:
        raise _not_found()
    return _to_response(updated)


@router.delete("/events/{event_id}", status_code=204)
def delete_event(request: Request, event_id: int, identity: Identity = Depends(_write)) -> Response:
    store: EventStore = request.app.state.events
    if not store.delete_event(event_id, identity.subject):
        raise _not_found()
    return Response(status_code=204)
