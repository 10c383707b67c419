"""
API request and response models for hitime REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
events/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from events.store import to_utc_iso

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class GrantTypeEnum(str, Enum):
    authorization_code = "authorization_code"
    refresh_token = "refresh_token"  # noqa: S105 -- grant type name, not a password


class TokenRequest(BaseModel):
    """Body of POST /oauth/token (JSON or form-encoded).

    grant_type is validated by the route, not here, so an unknown grant maps
    to unsupported_grant_type rather than a generic validation error.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    grant_type: str = ""
    code: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None


class TokenResponse(BaseModel):
    """RFC 6749 section 5.1 success response."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str


class RevokeRequest(BaseModel):
    """Body of POST /oauth/revoke (RFC 7009)."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    token: str = ""
    token_type_hint: Optional[str] = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    # bcrypt truncates at 72 bytes; cap here so the truncation never applies.
    password: str = Field(min_length=8, max_length=72)


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str


class LoginRequest(BaseModel):
    """Request body for POST /api/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    scope: str


class ProfileResponse(BaseModel):
    """Response for GET /api/profile."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    scope: str
    created_at: str


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventTypeEnum(str, Enum):
    event = "event"
    task = "task"
    habit = "habit"
    travel = "travel"
    custom = "custom"


def _check_iso(value: Optional[str]) -> Optional[str]:
    """Validate an ISO 8601 timestamp and return it normalized to UTC."""
    if value is None:
        return value
    try:
        return to_utc_iso(value)
    except ValueError as exc:
        raise ValueError("must be an ISO 8601 timestamp") from exc


def check_event_window(start: str, end: str) -> None:
    """Raise ValueError unless end is at or after start."""
    try:
        ordered = datetime.fromisoformat(end) >= datetime.fromisoformat(start)
    except TypeError as exc:
        raise ValueError("start and end must both include a UTC offset, or neither") from exc
    if not ordered:
        raise ValueError("end must not be before start")


class EventCreate(BaseModel):
    """Request body for POST /api/events."""

    model_config = ConfigDict(str_strip_whitespace=True)

    type: EventTypeEnum = EventTypeEnum.event
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=4000)
    start: str
    end: str
    all_day: bool = False
    color: Optional[str] = Field(default=None, max_length=32)

    @field_validator("start", "end")
    @classmethod
    def validate_timestamp(cls, value: Optional[str]) -> Optional[str]:
        return _check_iso(value)

    @model_validator(mode="after")
    def end_after_start(self) -> "EventCreate":
        check_event_window(self.start, self.end)
        return self


class EventUpdate(BaseModel):
    """Request body for PUT /api/events/{id}. Only fields present are changed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    type: Optional[EventTypeEnum] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=4000)
    start: Optional[str] = None
    end: Optional[str] = None
    all_day: Optional[bool] = None
    color: Optional[str] = Field(default=None, max_length=32)

    @field_validator("start", "end")
    @classmethod
    def validate_timestamp(cls, value: Optional[str]) -> Optional[str]:
        return _check_iso(value)


class EventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    title: str
    description: Optional[str]
    start: str
    end: str
    all_day: bool
    color: Optional[str]
    created_at: str
    updated_at: str
