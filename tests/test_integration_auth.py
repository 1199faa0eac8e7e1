"""Integration tests for the cookie session flow.

Tests the complete auth flow including:
- Registration
- Login and the session cookie
- /me resolution
- Logout and expiry
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from xmatches import app as app_module
from xmatches.api.routes import SESSION_COOKIE
from xmatches.service.runtime import get_runtime, reset_runtime_for_tests
from xmatches.storage.models import utcnow


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "user@example.com"


@pytest.fixture
def test_user_password():
    return "password123456"


def _register(client, email, password, **extra):
    return client.post(
        "/api/auth/register", json={"email": email, "password": password, **extra}
    )


def _login(client, email, password):
    return client.post("/api/auth/login", json={"email": email, "password": password})


class TestRegisterFlow:
    """Tests for user registration."""

    def test_register_returns_id_and_email(self, client, test_user_email, test_user_password):
        response = _register(client, test_user_email, test_user_password)

        assert response.status_code == 201
        assert response.json() == {"id": 1, "email": test_user_email}

    def test_register_normalizes_email(self, client, test_user_password):
        response = _register(client, "  Mixed.Case@Example.COM ", test_user_password)

        assert response.status_code == 201
        assert response.json()["email"] == "mixed.case@example.com"

    def test_register_rejects_duplicate_email(
        self, client, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)
        response = _register(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["message"] == "email already in use"

    def test_register_rejects_invalid_email(self, client, test_user_password):
        response = _register(client, "not-an-email", test_user_password)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid email"

    def test_register_rejects_short_password(self, client, test_user_email):
        response = _register(client, test_user_email, "short")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "password too short (min 12)"

    def test_register_rejects_mismatched_confirmation(
        self, client, test_user_email, test_user_password
    ):
        response = _register(
            client, test_user_email, test_user_password, password_confirm="something-else"
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "passwords do not match"

    def test_register_rejects_malformed_json(self, client):
        response = client.post(
            "/api/auth/register",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["message"] == "invalid json"


class TestLoginFlow:
    """Tests for login and the session cookie contract."""

    def test_login_sets_session_cookie(self, client, test_user_email, test_user_password):
        _register(client, test_user_email, test_user_password)
        response = _login(client, test_user_email, test_user_password)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        token = response.cookies.get(SESSION_COOKIE)
        assert token and len(token) == 64

        set_cookie = response.headers["set-cookie"]
        assert f"{SESSION_COOKIE}={token}" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "Path=/" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
        assert "Max-Age=" in set_cookie
        # COOKIE_SECURE=false in the test environment
        assert "Secure" not in set_cookie

    def test_login_cookie_max_age_tracks_ttl(
        self, client, monkeypatch, test_user_email, test_user_password
    ):
        monkeypatch.setenv("SESSION_TTL", "90m")
        reset_runtime_for_tests()
        _register(client, test_user_email, test_user_password)

        response = _login(client, test_user_email, test_user_password)

        max_age = int(response.headers["set-cookie"].split("Max-Age=")[1].split(";")[0])
        assert 90 * 60 - 5 <= max_age <= 90 * 60

    def test_out_of_range_ttl_falls_back_to_default(
        self, client, monkeypatch, test_user_email, test_user_password
    ):
        monkeypatch.setenv("SESSION_TTL", "100000000h")
        reset_runtime_for_tests()
        _register(client, test_user_email, test_user_password)

        response = _login(client, test_user_email, test_user_password)

        assert response.status_code == 200
        max_age = int(response.headers["set-cookie"].split("Max-Age=")[1].split(";")[0])
        assert 30 * 24 * 3600 - 5 <= max_age <= 30 * 24 * 3600

    def test_secure_flag_follows_configuration(
        self, client, monkeypatch, test_user_email, test_user_password
    ):
        monkeypatch.setenv("COOKIE_SECURE", "yes")
        reset_runtime_for_tests()
        _register(client, test_user_email, test_user_password)

        response = _login(client, test_user_email, test_user_password)

        assert "Secure" in response.headers["set-cookie"]

    def test_login_with_invalid_password(self, client, test_user_email, test_user_password):
        _register(client, test_user_email, test_user_password)
        response = _login(client, test_user_email, "wrong-password-000")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"
        assert SESSION_COOKIE not in response.cookies

    def test_login_with_nonexistent_user(self, client, test_user_password):
        response = _login(client, "nobody@example.com", test_user_password)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_login_missing_fields(self, client):
        response = client.post("/api/auth/login", json={"email": "a@example.com"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "missing email or password"


class TestSessionLifecycle:
    """Tests for /me, logout and expiry."""

    def test_me_requires_session(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_register_login_me_logout_scenario(
        self, client, test_user_email, test_user_password
    ):
        assert _register(client, test_user_email, test_user_password).status_code == 201
        login = _login(client, test_user_email, test_user_password)
        assert login.status_code == 200
        token = login.cookies.get(SESSION_COOKIE)

        me = client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json() == {"id": 1, "email": test_user_email, "is_admin": True}

        logout = client.post("/api/auth/logout")
        assert logout.status_code == 200
        assert logout.json() == {"ok": True}
        assert "Max-Age=0" in logout.headers["set-cookie"]

        # Replay the old cookie explicitly
        client.cookies.set(SESSION_COOKIE, token)
        assert client.get("/api/auth/me").status_code == 401

    def test_logout_without_session_is_ok(self, client):
        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_me_reports_allow_list_admin(self, client, monkeypatch, test_user_password):
        monkeypatch.setenv("ADMIN_EMAILS", "first@example.com, Listed@Example.com")
        reset_runtime_for_tests()
        _register(client, "first@example.com", test_user_password)
        _register(client, "listed@example.com", test_user_password)
        _login(client, "listed@example.com", test_user_password)

        assert client.get("/api/auth/me").json()["is_admin"] is True

    def test_second_user_is_not_admin(self, client, test_user_password):
        _register(client, "first@example.com", test_user_password)
        _register(client, "second@example.com", test_user_password)
        _login(client, "second@example.com", test_user_password)

        assert client.get("/api/auth/me").json()["is_admin"] is False

    def test_expired_session_is_unauthorized(
        self, client, monkeypatch, test_user_email, test_user_password
    ):
        monkeypatch.setenv("SESSION_TTL", "1s")
        reset_runtime_for_tests()
        _register(client, test_user_email, test_user_password)
        token = _login(client, test_user_email, test_user_password).cookies.get(
            SESSION_COOKIE
        )
        client.cookies.set(SESSION_COOKIE, token)
        assert client.get("/api/auth/me").status_code == 200

        store = get_runtime().store
        store.sessions[token].expires_at = utcnow() - timedelta(milliseconds=1)

        client.cookies.set(SESSION_COOKIE, token)
        assert client.get("/api/auth/me").status_code == 401
        assert store.get_session(token) is None


class TestAppMiddleware:
    """Tests for request id, security headers and health."""

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-456"})

        assert response.json()["request_id"] == "req-456"

    def test_security_headers(self, client):
        response = client.get("/api/auth/me")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_healthz_ok(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["checks"]["store"]["ok"] is True

    def test_healthz_degraded_when_store_fails(self, client, monkeypatch):
        def _down():
            raise RuntimeError("store unreachable")

        monkeypatch.setattr(get_runtime().store, "verify_connection", _down)
        response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
