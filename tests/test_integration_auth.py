"""Integration tests for the HTTP session-security surface.

Covers the complete flow:
- OAuth authorize and callback (provider stubbed with httpx.MockTransport)
- Refresh rotation through the cookie, including replay
- Bearer and guest principals
- Rate limiting and the error envelope
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.runtime import get_runtime


def fake_google(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/token":
        form = parse_qs(request.content.decode())
        if form.get("code") != ["abc"]:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "provider-access"})
    if request.url.path == "/v1/userinfo":
        return httpx.Response(
            200, json={"sub": "g-1", "email": "a@example.com", "name": "Ann"}
        )
    return httpx.Response(404)


@pytest.fixture
def client():
    """Create a test client for the API."""
    get_runtime().oauth_client.transport = httpx.MockTransport(fake_google)
    return TestClient(app_module.app)


def start_login(client) -> str:
    response = client.get("/api/v1/auth/oauth/google/authorize")
    assert response.status_code == 200
    url = response.json()["data"]["authorize_url"]
    return parse_qs(urlparse(url).query)["state"][0]


def login(client):
    state = start_login(client)
    response = client.get(
        "/api/v1/auth/oauth/google/callback", params={"code": "abc", "state": state}
    )
    assert response.status_code == 200, response.text
    return response


class TestOAuthFlow:
    def test_authorize_sets_state_cookie(self, client):
        response = client.get("/api/v1/auth/oauth/google/authorize")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["provider"] == "google"
        state = parse_qs(urlparse(body["data"]["authorize_url"]).query)["state"][0]
        assert client.cookies.get("oauth_state") == state
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "path=/api/v1/auth/oauth" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "max-age=300" in set_cookie

    def test_unsupported_provider(self, client):
        response = client.get("/api/v1/auth/oauth/github/authorize")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Unsupported OAuth provider."

    def test_callback_logs_in_first_time_user(self, client):
        response = login(client)

        body = response.json()["data"]
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["access_token"]
        assert client.cookies.get("refresh_token")
        assert client.cookies.get("oauth_state") is None

        store = get_runtime().store
        assert len(store.users) == 1
        assert store.providers[0].provider_user_id == "g-1"

    def test_refresh_cookie_attributes(self, client):
        response = login(client)

        cookies = [value.lower() for value in response.headers.get_list("set-cookie")]
        refresh_cookie = next(c for c in cookies if c.startswith("refresh_token="))
        assert "httponly" in refresh_cookie
        assert "samesite=strict" in refresh_cookie
        assert "path=/api/v1/auth" in refresh_cookie
        assert "max-age=86400" in refresh_cookie

    def test_callback_rejects_mismatched_state(self, client):
        start_login(client)

        response = client.get(
            "/api/v1/auth/oauth/google/callback", params={"code": "abc", "state": "forged"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid OAuth state."
        # Cookie is discarded even on failure
        assert client.cookies.get("oauth_state") is None
        assert get_runtime().store.users == {}

    def test_callback_without_state_cookie(self, client):
        response = client.get(
            "/api/v1/auth/oauth/google/callback", params={"code": "abc", "state": "x"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_provider_failure_is_upstream_error(self, client):
        state = start_login(client)

        response = client.get(
            "/api/v1/auth/oauth/google/callback", params={"code": "expired", "state": state}
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_error"
        assert response.json()["error"]["message"] == "OAuth token exchange failed."


class TestRefresh:
    def test_missing_cookie(self, client):
        response = client.post("/api/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or missing refresh token."

    def test_rotation_then_replay_revokes(self, client):
        login(client)
        original = client.cookies.get("refresh_token")

        rotated = client.post("/api/v1/auth/refresh")
        assert rotated.status_code == 200
        successor = client.cookies.get("refresh_token")
        assert successor and successor != original

        attacker = TestClient(app_module.app)
        attacker.cookies.set("refresh_token", original)
        replay = attacker.post("/api/v1/auth/refresh")
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == (
            "Refresh token reuse detected. Please sign in again."
        )

        # The legitimate holder is cut off as well
        revoked = client.post("/api/v1/auth/refresh")
        assert revoked.status_code == 401
        assert revoked.json()["error"]["message"] == (
            "Refresh token family is revoked. Please sign in again."
        )


class TestPrincipals:
    def test_me_requires_bearer(self, client):
        response = client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required."

    def test_me_with_bearer(self, client):
        access = login(client).json()["data"]["access_token"]

        response = client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {access}"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "USER"
        assert response.json()["data"]["user_id"] == next(iter(get_runtime().store.users))

    def test_refresh_token_is_not_a_bearer(self, client):
        login(client)
        refresh = client.cookies.get("refresh_token")

        response = client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {refresh}"}
        )

        assert response.status_code == 401

    def test_guest_identity_is_stable(self, client):
        first = client.get("/api/v1/guest/me")
        second = client.get("/api/v1/guest/me")

        assert first.status_code == 200
        data = first.json()["data"]
        assert data["role"] == "GUEST"
        assert data["authenticated"] is False
        assert second.json()["data"]["actor_id"] == data["actor_id"]

    def test_guest_route_prefers_user(self, client):
        access = login(client).json()["data"]["access_token"]

        response = client.get(
            "/api/v1/guest/me", headers={"Authorization": f"Bearer {access}"}
        )

        assert response.json()["data"]["authenticated"] is True
        assert get_runtime().store.guests == {}

    def test_guest_route_rejects_bad_bearer(self, client):
        response = client.get(
            "/api/v1/guest/me", headers={"Authorization": "Bearer not-a-token"}
        )

        assert response.status_code == 401


class TestRateLimit:
    def test_guest_route_throttled(self, client):
        for _ in range(10):
            assert client.get("/api/v1/guest/me").status_code == 200

        response = client.get("/api/v1/guest/me")

        assert response.status_code == 429
        assert response.headers["Retry-After"]
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["message"] == "Too many requests. Please try again in 60 seconds."

    def test_headers_on_success(self, client):
        response = client.get("/api/v1/guest/me")

        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"


class TestSystemEndpoints:
    def test_status(self, client):
        response = client.get("/api/v1/status")

        assert response.status_code == 200
        assert response.json()["data"] == {}

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["type"] == "LocalCache"

    def test_request_id_echoed_into_envelope(self, client):
        response = client.get("/api/v1/auth/me", headers={"X-Request-Id": "req-123"})

        assert response.headers["X-Request-Id"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/api/v1/status")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
