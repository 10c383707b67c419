"""
tests/conftest.py -- Shared fixtures for hitime unit and integration tests.

This module provides:
  - FakeClock: injectable wall clock for codec / store unit tests
  - memory_url(): named shared-memory SQLite URL, one per caller
  - clock, keys, codec, codes, tokens fixtures for unit tests
  - api_client: TestClient on the real app with isolated in-memory stores
  - login_token: helper that registers an account and returns its bearer token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the process.

Environment variables must be set before any api/auth/core import so the
cached get_settings() sees them: DEBUG lets it generate a SECRET_KEY,
OAUTH_CLIENTS registers the test client, ALLOWED_HOSTS admits TestClient's
"testserver" host, and LOGIN_RATE_LIMIT is raised so login-heavy modules do
not trip the limiter.
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", json.dumps(["testserver", "localhost"]))
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("DEFAULT_USER_SCOPES", json.dumps(["profile", "read", "events:read", "events:write"]))
os.environ.setdefault(
    "OAUTH_CLIENTS",
    json.dumps(
        [
            {
                "client_id": "c1",
                "client_name": "Test client",
                "redirect_uris": ["https://a/cb"],
                "allowed_scopes": ["read", "profile", "events:read", "events:write"],
            },
            {
                "client_id": "c2",
                "redirect_uris": ["https://b/cb"],
                "allowed_scopes": ["read"],
            },
        ]
    ),
)

import pytest
from fastapi.testclient import TestClient

from api.main import app, close_services, wire_services
from auth.codes import AuthorizationCodeStore
from auth.keys import KeyRing
from auth.token_store import TokenStore
from auth.tokens import TokenCodec
from core.config import get_settings

SECRET = "s" * 32 + "-test-signing-key"
OTHER_SECRET = "o" * 32 + "-rotated-signing-key"
START = 1_700_000_000


class FakeClock:
    """Callable clock returning a settable Unix time."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def memory_url(prefix: str = "test") -> str:
    """Fresh named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keys(clock: FakeClock) -> KeyRing:
    return KeyRing.from_secrets(SECRET, grace_seconds=3600, clock=clock)


@pytest.fixture
def codec(keys: KeyRing, clock: FakeClock) -> TokenCodec:
    """Codec with zero leeway so expiry lands exactly on exp."""
    return TokenCodec(keys, leeway=0, clock=clock)


@pytest.fixture
def auth_db_url() -> str:
    return memory_url("auth")


@pytest.fixture
def codes(auth_db_url: str, clock: FakeClock) -> Generator[AuthorizationCodeStore, None, None]:
    store = AuthorizationCodeStore(auth_db_url, ttl=120, clock=clock)
    yield store
    store.close()


@pytest.fixture
def tokens(auth_db_url: str, clock: FakeClock) -> Generator[TokenStore, None, None]:
    store = TokenStore(auth_db_url, clock=clock)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_url: str, events_url: str):
    """Return an async context manager that replaces the real lifespan.

    Runs the real wire_services() against isolated test databases. The
    purge_task is a long-sleeping coroutine so shutdown can cancel it the
    same way the real lifespan does.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), auth_db_url=auth_url, events_db_url=events_url)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        close_services(app)

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient on the real app, one per test module.

    follow_redirects=False so /oauth/authorize tests can read the Location
    header instead of following it to a host that does not exist.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    app.router.lifespan_context = _patch_lifespan(memory_url(f"auth_{suffix}"), memory_url(f"events_{suffix}"))
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


def _register_and_login(client: TestClient, email: str | None = None, password: str = "correct-horse-1") -> str:
    email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
    resp = client.post("/api/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


@pytest.fixture
def login_token():
    """Return a helper: login_token(client, email=None, password=...) -> bearer token for a new account."""
    return _register_and_login
