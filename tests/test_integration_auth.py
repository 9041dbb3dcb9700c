"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Registration and login
- Refresh rotation through the cookie
- Replay rejection
- Logout
- Current-identity lookup and status enforcement
"""

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime, reset_runtime_for_tests
from authcore.storage.models import AccountStatus

EMAIL = "alice@example.com"
PASSWORD = "Passw0rd1"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email=EMAIL, password=PASSWORD, name="Alice"):
    return client.post(
        "/v1/auth/register", json={"email": email, "password": password, "name": name}
    )


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


class TestRegister:
    def test_register_returns_account_and_bearer(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["account"]["email"] == EMAIL
        assert data["account"]["role"] == "user"
        assert data["account"]["status"] == "active"
        assert "password_hash" not in data["account"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert "refresh_token" not in data

    def test_register_sets_refresh_cookie(self, client):
        response = _register(client)

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("refresh_token=")
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
        assert "Path=/v1/auth" in cookie
        assert "Max-Age=604800" in cookie

    def test_register_persists_hashed_session(self, client):
        response = _register(client)
        account_id = response.json()["data"]["account"]["id"]
        raw = client.cookies.get("refresh_token")

        sessions = get_runtime().store.list_sessions(account_id)
        assert len(sessions) == 1
        assert sessions[0].token_hash != raw

    def test_duplicate_is_generic_conflict(self, client):
        _register(client)
        response = _register(client, email="  ALICE@example.com")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert EMAIL not in error["message"]

    def test_field_validation_errors(self, client):
        response = _register(client, email="not-an-email", password="weak", name="A")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        fields = {detail["field"] for detail in error["details"]}
        assert fields == {"email", "password", "name"}

    def test_password_limit_follows_configuration(self, client, monkeypatch):
        long_password = "Passw0rd1" + "x" * 150

        rejected = _register(client, password=long_password)
        assert rejected.status_code == 400
        assert rejected.json()["error"]["details"][0]["field"] == "password"

        monkeypatch.setenv("PASSWORD_MAX_LENGTH", "256")
        reset_runtime_for_tests()

        assert _register(client, password=long_password).status_code == 201
        login = client.post("/v1/auth/login", json={"email": EMAIL, "password": long_password})
        assert login.status_code == 200

    def test_request_id_echoed(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": EMAIL, "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestLogin:
    def test_login_success(self, client):
        _register(client)
        client.cookies.clear()

        response = client.post("/v1/auth/login", json={"email": "Alice@Example.com", "password": PASSWORD})

        assert response.status_code == 200
        assert response.json()["data"]["account"]["email"] == EMAIL
        assert client.cookies.get("refresh_token")

    def test_wrong_password_and_unknown_email_match(self, client):
        _register(client)

        wrong = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong"})
        unknown = client.post("/v1/auth/login", json={"email": "bob@example.com", "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "invalid credentials"

    def test_failed_login_clears_cookie(self, client):
        _register(client)

        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong"})

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("refresh_token=")
        assert "Max-Age=0" in cookie

    def test_suspended_login_forbidden(self, client):
        account_id = _register(client).json()["data"]["account"]["id"]
        get_runtime().store.update_account_status(account_id, AccountStatus.SUSPENDED)

        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_empty_password_rejected(self, client):
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": ""})

        assert response.status_code == 400


class TestRefresh:
    def test_refresh_rotates_cookie(self, client):
        _register(client)
        old = client.cookies.get("refresh_token")

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_token"]
        assert data["expires_in"] == 900
        new = client.cookies.get("refresh_token")
        assert new and new != old

    def test_replay_of_consumed_credential_rejected(self, client):
        _register(client)
        old = client.cookies.get("refresh_token")
        assert client.post("/v1/auth/refresh").status_code == 200

        client.cookies.clear()
        replay = client.post("/v1/auth/refresh", json={"refresh_token": old})

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"
        assert "Max-Age=0" in replay.headers["set-cookie"]

    def test_session_persist_failure_clears_cookie(self, monkeypatch):
        client = TestClient(app_module.app, raise_server_exceptions=False)
        _register(client)

        def _unavailable(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(get_runtime().store, "insert_session", _unavailable)
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "Max-Age=0" in response.headers["set-cookie"]

    def test_store_outage_clears_cookie(self, monkeypatch):
        client = TestClient(app_module.app, raise_server_exceptions=False)
        _register(client)

        def _unavailable(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(get_runtime().store, "list_sessions", _unavailable)
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "Max-Age=0" in response.headers["set-cookie"]

    def test_refresh_without_credential(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401

    def test_garbage_credential_does_not_leak_detail(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "a.b.c"})

        error = response.json()["error"]
        assert response.status_code == 401
        assert error["details"] is None
        assert "Malformed" not in error["message"]


class TestLogout:
    def test_logout_always_succeeds(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {}

    def test_logout_clears_cookie_and_revokes(self, client):
        _register(client)
        credential = client.cookies.get("refresh_token")

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert client.cookies.get("refresh_token") is None
        after = client.post("/v1/auth/refresh", json={"refresh_token": credential})
        assert after.status_code == 401

    def test_logout_with_body_credential(self, client):
        _register(client)
        credential = client.cookies.get("refresh_token")
        client.cookies.clear()

        assert client.post("/v1/auth/logout", json={"refresh_token": credential}).status_code == 200
        assert client.post("/v1/auth/refresh", json={"refresh_token": credential}).status_code == 401


class TestMe:
    def test_me_returns_current_account(self, client):
        registered = _register(client)

        response = client.get("/v1/auth/me", headers=_bearer(registered))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == EMAIL

    def test_me_requires_bearer(self, client):
        assert client.get("/v1/auth/me").status_code == 401
        assert client.get("/v1/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 401

    def test_rotation_credential_is_not_a_bearer(self, client):
        _register(client)
        rotation = client.cookies.get("refresh_token")

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {rotation}"})

        assert response.status_code == 401


class TestScenario:
    def test_full_lifecycle(self, client):
        # register
        registered = _register(client)
        assert registered.status_code == 201
        account = registered.json()["data"]["account"]
        assert (account["status"], account["role"]) == ("active", "user")
        assert len(get_runtime().store.list_sessions(account["id"])) == 1

        # login right and wrong
        assert client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD}).status_code == 200
        wrong = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong"})
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "unauthorized"

        # refresh with the issued rotation credential, then reuse it
        login = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        issued = client.cookies.get("refresh_token")
        rotated = client.post("/v1/auth/refresh")
        assert rotated.status_code == 200
        replacement = client.cookies.get("refresh_token")
        assert replacement != issued
        # the cookie takes precedence over the body, so present the old one alone
        client.cookies.clear()
        assert client.post("/v1/auth/refresh", json={"refresh_token": issued}).status_code == 401

        # logout, then the logged-out credential is dead
        assert client.post("/v1/auth/logout", json={"refresh_token": replacement}).status_code == 200
        assert client.post("/v1/auth/refresh", json={"refresh_token": replacement}).status_code == 401

        # suspend mid-window; the bearer still verifies but /me refuses
        get_runtime().store.update_account_status(account["id"], AccountStatus.SUSPENDED)
        me = client.get("/v1/auth/me", headers=_bearer(login))
        assert me.status_code == 403
        assert me.json()["error"]["code"] == "forbidden"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"


def test_security_headers(client):
    response = client.get("/healthz")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "no-store" in response.headers["Cache-Control"]
