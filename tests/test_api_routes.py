"""
tests/test_api_routes.py -- Integration tests for account and event routes.

These tests exercise the full stack: FastAPI routing -> AuthGate dependency
-> UserStore/EventStore operations -> response model serialization.

Coverage:
  - Register: 201, duplicate email 409, validation 422 in the error envelope
  - Login: 200 with no-store, wrong password and unknown email both 401
  - Auth failures: 401 without / with a bad token, WWW-Authenticate: Bearer
  - Scope failures: 403 with insufficient_scope
  - Events: CRUD happy path, owner isolation (404 for other users' events)
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from auth.models import TokenKind

EVENT = {
    "title": "Standup",
    "start": "2026-01-05T09:00:00+00:00",
    "end": "2026-01-05T09:15:00+00:00",
}


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token(api_client: TestClient, login_token) -> str:
    return login_token(api_client)


class TestRegisterAndLogin:
    def test_register(self, api_client: TestClient) -> None:
        email = f"New-{uuid.uuid4().hex[:6]}@Example.com"
        resp = api_client.post("/api/register", json={"email": email, "password": "long-enough-1"})
        assert resp.status_code == 201, resp.text
        assert resp.json()["email"] == email.lower()

    def test_duplicate_email(self, api_client: TestClient) -> None:
        body = {"email": f"dup-{uuid.uuid4().hex[:6]}@example.com", "password": "long-enough-1"}
        assert api_client.post("/api/register", json=body).status_code == 201
        resp = api_client.post("/api/register", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_short_password(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/register", json={"email": "short@example.com", "password": "short"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login_sets_no_store(self, api_client: TestClient) -> None:
        email = f"login-{uuid.uuid4().hex[:6]}@example.com"
        api_client.post("/api/register", json={"email": email, "password": "long-enough-1"})
        resp = api_client.post("/api/login", json={"email": email, "password": "long-enough-1"})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert set(body["scope"].split()) == {"profile", "read", "events:read", "events:write"}

    @pytest.mark.parametrize("email, password", [("ghost@example.com", "whatever-1"), (None, "wrong-password")])
    def test_bad_credentials(self, api_client: TestClient, email, password) -> None:
        if email is None:
            email = f"real-{uuid.uuid4().hex[:6]}@example.com"
            api_client.post("/api/register", json={"email": email, "password": "long-enough-1"})
        resp = api_client.post("/api/login", json={"email": email, "password": password})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"


class TestProfile:
    def test_profile(self, api_client: TestClient, token: str) -> None:
        resp = api_client.get("/api/profile", headers=_auth(token))
        assert resp.status_code == 200, resp.text
        assert "@example.com" in resp.json()["email"]

    @pytest.mark.parametrize("header", [None, "Bearer nonsense", "Basic dXNlcjpwYXNz"])
    def test_unauthenticated(self, api_client: TestClient, header) -> None:
        headers = {"Authorization": header} if header else {}
        resp = api_client.get("/api/profile", headers=headers)
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        assert resp.json() == {"error": {"code": "unauthorized", "message": "Authentication required."}}

    def test_expired_and_forged_look_the_same(self, api_client: TestClient, token: str) -> None:
        tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")
        resp = api_client.get("/api/profile", headers=_auth(tampered))
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Authentication required."

    def test_refresh_kind_token_rejected(self, api_client: TestClient) -> None:
        codec = api_client.app.state.codec
        refresh_like = codec.issue("1", {"profile"}, TokenKind.refresh, ttl=60)
        assert api_client.get("/api/profile", headers=_auth(refresh_like)).status_code == 401

    def test_missing_scope_is_403(self, api_client: TestClient) -> None:
        codec = api_client.app.state.codec
        narrow = codec.issue("1", {"events:read"}, TokenKind.access, ttl=60)
        resp = api_client.get("/api/profile", headers=_auth(narrow))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.headers["www-authenticate"] == 'Bearer error="insufficient_scope", scope="profile"'


class TestEvents:
    def test_crud(self, api_client: TestClient, token: str) -> None:
        headers = _auth(token)
        resp = api_client.post("/api/events", json=EVENT, headers=headers)
        assert resp.status_code == 201, resp.text
        created = resp.json()
        assert created["type"] == "event"
        assert created["all_day"] is False
        event_id = created["id"]

        resp = api_client.get(f"/api/events/{event_id}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["title"] == "Standup"

        resp = api_client.put(f"/api/events/{event_id}", json={"title": "Daily standup", "color": "#00f"}, headers=headers)
        assert resp.status_code == 200, resp.text
        assert resp.json()["title"] == "Daily standup"
        assert resp.json()["color"] == "#00f"

        resp = api_client.get("/api/events", headers=headers)
        assert [e["id"] for e in resp.json()] == [event_id]

        assert api_client.delete(f"/api/events/{event_id}", headers=headers).status_code == 204
        assert api_client.get(f"/api/events/{event_id}", headers=headers).status_code == 404

    def test_other_users_events_are_invisible(self, api_client: TestClient, login_token) -> None:
        alice, bob = login_token(api_client), login_token(api_client)
        event_id = api_client.post("/api/events", json=EVENT, headers=_auth(alice)).json()["id"]

        assert api_client.get(f"/api/events/{event_id}", headers=_auth(bob)).status_code == 404
        assert api_client.put(f"/api/events/{event_id}", json={"title": "x"}, headers=_auth(bob)).status_code == 404
        assert api_client.delete(f"/api/events/{event_id}", headers=_auth(bob)).status_code == 404
        assert api_client.get("/api/events", headers=_auth(bob)).json() == []

    def test_list_filters_by_start(self, api_client: TestClient, token: str) -> None:
        headers = _auth(token)
        for day in ("01", "02", "03"):
            body = dict(EVENT, start=f"2026-02-{day}T10:00:00+00:00", end=f"2026-02-{day}T11:00:00+00:00")
            assert api_client.post("/api/events", json=body, headers=headers).status_code == 201
        resp = api_client.get(
            "/api/events",
            params={"start_from": "2026-02-02T00:00:00+00:00", "start_to": "2026-02-02T23:59:59+00:00"},
            headers=headers,
        )
        assert [e["start"] for e in resp.json()] == ["2026-02-02T10:00:00+00:00"]

    def test_timestamps_stored_in_utc(self, api_client: TestClient, token: str) -> None:
        body = dict(EVENT, start="2026-03-01T10:00:00+02:00", end="2026-03-01T11:00:00+02:00")
        created = api_client.post("/api/events", json=body, headers=_auth(token)).json()
        assert created["start"] == "2026-03-01T08:00:00+00:00"
        assert created["end"] == "2026-03-01T09:00:00+00:00"

    def test_list_filter_across_offsets(self, api_client: TestClient, token: str) -> None:
        headers = _auth(token)
        for start, end in (
            ("2026-04-01T09:00:00+00:00", "2026-04-01T09:30:00+00:00"),
            ("2026-04-01T12:00:00+05:00", "2026-04-01T12:30:00+05:00"),  # 07:00 UTC
        ):
            body = dict(EVENT, start=start, end=end)
            assert api_client.post("/api/events", json=body, headers=headers).status_code == 201
        resp = api_client.get(
            "/api/events",
            params={"start_from": "2026-04-01T10:00:00+02:00", "start_to": "2026-04-01T23:00:00+00:00"},
            headers=headers,
        )
        assert [e["start"] for e in resp.json()] == ["2026-04-01T09:00:00+00:00"]

    def test_bad_filter_is_422(self, api_client: TestClient, token: str) -> None:
        resp = api_client.get("/api/events", params={"start_from": "yesterday"}, headers=_auth(token))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_end_before_start_rejected(self, api_client: TestClient, token: str) -> None:
        body = dict(EVENT, start=EVENT["end"], end=EVENT["start"])
        resp = api_client.post("/api/events", json=body, headers=_auth(token))
        assert resp.status_code == 422

    def test_update_cannot_invert_window(self, api_client: TestClient, token: str) -> None:
        headers = _auth(token)
        event_id = api_client.post("/api/events", json=EVENT, headers=headers).json()["id"]
        resp = api_client.put(f"/api/events/{event_id}", json={"end": "2026-01-05T08:00:00+00:00"}, headers=headers)
        assert resp.status_code == 422

    def test_empty_update_is_400(self, api_client: TestClient, token: str) -> None:
        headers = _auth(token)
        event_id = api_client.post("/api/events", json=EVENT, headers=headers).json()["id"]
        resp = api_client.put(f"/api/events/{event_id}", json={}, headers=headers)
        assert resp.status_code == 400

    def test_read_scope_cannot_write(self, api_client: TestClient) -> None:
        codec = api_client.app.state.codec
        reader = codec.issue("1", {"events:read"}, TokenKind.access, ttl=60)
        assert api_client.get("/api/events", headers=_auth(reader)).status_code == 200
        assert api_client.post("/api/events", json=EVENT, headers=_auth(reader)).status_code == 403

    def test_requires_auth(self, api_client: TestClient) -> None:
        assert api_client.get("/api/events").status_code == 401
        assert api_client.post("/api/events", json=EVENT).status_code == 401
