"""
api/main.py -- FastAPI application entry point for hitime.

Exposes the auth core (OAuth2 authorization-code grant, first-party login,
bearer-token gate) and the calendar event API over HTTP.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every service on app.state (wire_services) and tears them
down symmetrically (close_services). Tests reuse wire_services with their own
database URLs instead of re-implementing the wiring.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.events import router as events_router
from api.routes.v1.oauth import router as oauth_router
from auth.clients import ClientRegistry
from auth.codes import AuthorizationCodeStore
from auth.dependencies import AuthGate
from auth.flow import OAuthFlowController
from auth.keys import KeyRing
from auth.store import UserStore
from auth.token_store import TokenStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from events.store import EventStore

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hitime.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    auth_db_url: Optional[str] = None,
    events_db_url: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> None:
    """Build the auth core and the event store and attach them to app.state.

    Order follows the dependency graph: keys -> codec -> stores -> flow/gate.
    auth_db_url / events_db_url override the configured URLs (tests).
    """
    auth_url = auth_db_url or settings.auth_db_url
    events_url = events_db_url or settings.events_db_url

    keys = KeyRing.from_secrets(
        settings.secret_key,
        settings.previous_secret_keys,
        grace_seconds=settings.key_grace_seconds,
        clock=clock,
    )
    codec = TokenCodec(keys, algorithm=settings.jwt_algorithm, leeway=settings.clock_skew_seconds, clock=clock)
    user_store = UserStore(auth_url)
    codes = AuthorizationCodeStore(auth_url, ttl=settings.auth_code_ttl_seconds, clock=clock)
    tokens = TokenStore(auth_url, clock=clock, retention=settings.clock_skew_seconds)
    clients = ClientRegistry.from_settings(settings)

    app.state.keys = keys
    app.state.codec = codec
    app.state.user_store = user_store
    app.state.codes = codes
    app.state.tokens = tokens
    app.state.clients = clients
    app.state.flow = OAuthFlowController(
        codec,
        codes,
        tokens,
        clients,
        user_store,
        access_ttl=settings.access_token_ttl_seconds,
        refresh_ttl=settings.refresh_token_ttl_seconds,
    )
    app.state.gate = AuthGate(codec, tokens)
    app.state.events = EventStore(events_url)
    logger.info(
        "Auth initialized (algorithm=%s, keys=%d, clients=%d)",
        settings.jwt_algorithm,
        len(keys.active()),
        len(clients),
    )


def close_services(app: FastAPI) -> None:
    for name in ("events", "tokens", "codes", "user_store"):
        store = getattr(app.state, name, None)
        if store is not None:
            store.close()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_once(app: FastAPI) -> tuple[int, int, int]:
    """Delete expired codes and ledger rows, drop retired signing keys.

    Returns (codes, tokens, keys) removed.
    """
    codes = app.state.codes.purge_expired()
    tokens = app.state.tokens.purge_expired()
    keys = app.state.keys.prune()
    if codes or tokens or keys:
        logger.info("Purged %d code(s), %d token record(s), %d signing key(s)", codes, tokens, keys)
    return codes, tokens, keys


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Run purge_once every interval seconds.

    The store calls block on SQLite, so they run in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(purge_once, app)
        except SQLAlchemyError:
            logger.exception("Purge failed; retrying next interval")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup, cancel the purge task and close stores on shutdown."""
    settings = get_settings()
    logger.info("hitime API starting up")
    wire_services(app, settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    close_services(app)
    logger.info("hitime API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="hitime API",
    description="Calendar backend with an OAuth2 authorization server and bearer-token gate.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Captures wall-clock time around call_next so every response is logged with
# its latency. Query strings are not logged: /oauth/authorize carries codes
# and state values in them.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(oauth_router, tags=["OAuth"])
app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(events_router, prefix="/api", tags=["Events"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# /api routes get the {"error": {code, message, detail}} envelope. The OAuth
# routes build their own RFC 6749 bodies and never reach these handlers
# except for 401 from the authorize endpoint's bearer check.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions.

    Route handlers raise HTTPException with a {code, message} dict as detail;
    use it directly as the error field. Headers (WWW-Authenticate on 401/403)
    are passed through.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit: load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: auth database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
