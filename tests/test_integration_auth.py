"""Integration tests for the authentication flow over HTTP.

Covers signup and verification, login, refresh rotation and replay,
logout, lockout, password flows, administration, and rate limiting.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from turnstile.app import app
from turnstile.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app)


def _register(client, email, password=PASSWORD):
    response = client.post("/v1/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    verified = client.post("/v1/auth/verify-email", json={"token": data["verification_token"]})
    assert verified.status_code == 200, verified.text
    return data["user"]


def _login(client, email, password=PASSWORD):
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["tokens"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _error_code(response):
    return response.json()["error"]["code"]


class TestSignup:
    def test_signup_creates_unverified_account(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": "New@Example.edu", "password": PASSWORD, "name": "Ada"},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "new@example.edu"
        assert data["user"]["role"] == "student"
        assert data["user"]["email_verified"] is False
        assert data["verification_required"] is True

    def test_duplicate_email_conflicts(self, client):
        _register(client, "dup@example.edu")
        response = client.post(
            "/v1/auth/signup", json={"email": "DUP@example.edu", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert _error_code(response) == "conflict"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "weak@example.edu", "password": "short"}
        )
        assert response.status_code == 400
        assert _error_code(response) == "validation_error"

    def test_unverified_login_refused(self, client):
        client.post("/v1/auth/signup", json={"email": "later@example.edu", "password": PASSWORD})
        response = client.post(
            "/v1/auth/login", json={"email": "later@example.edu", "password": PASSWORD}
        )
        assert response.status_code == 403
        assert _error_code(response) == "email_unverified"

    def test_resend_verification_answers_generically(self, client):
        client.post("/v1/auth/signup", json={"email": "pending@example.edu", "password": PASSWORD})
        known = client.post(
            "/v1/auth/resend-verification", json={"email": "pending@example.edu"}
        )
        unknown = client.post(
            "/v1/auth/resend-verification", json={"email": "ghost@example.edu"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]


class TestSessionLifecycle:
    def test_login_refresh_replay_logout(self, client):
        _register(client, "flow@example.edu")
        tokens = _login(client, "flow@example.edu")

        me = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "flow@example.edu"

        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert rotated.status_code == 200
        fresh = rotated.json()["data"]
        assert fresh["refresh_token"] != tokens["refresh_token"]
        assert fresh["user"]["email"] == "flow@example.edu"

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert _error_code(replay) == "token_replayed"

        logout = client.post(
            "/v1/auth/logout",
            headers=_bearer(fresh["access_token"]),
            json={"refresh_token": fresh["refresh_token"]},
        )
        assert logout.status_code == 200
        assert logout.json()["data"] == {"logged_out": True}

        after = client.get("/v1/auth/me", headers=_bearer(fresh["access_token"]))
        assert after.status_code == 401
        assert _error_code(after) == "token_replayed"
        dead = client.post("/v1/auth/refresh", json={"refresh_token": fresh["refresh_token"]})
        assert dead.status_code == 401

    def test_logout_twice_is_harmless(self, client):
        _register(client, "twice@example.edu")
        tokens = _login(client, "twice@example.edu")
        for _ in range(2):
            response = client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
            assert response.status_code == 200

    def test_logout_with_refresh_token_only(self, client):
        """A client without a usable access token can still end its session."""
        _register(client, "lapsed@example.edu")
        tokens = _login(client, "lapsed@example.edu")
        response = client.post(
            "/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        dead = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert dead.status_code == 401
        assert _error_code(dead) == "token_replayed"

    def test_logout_without_any_token_is_401(self, client):
        client.cookies.clear()
        response = client.post("/v1/auth/logout")
        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_refresh_cookie_attributes_and_use(self, client):
        _register(client, "cookie@example.edu")
        response = client.post(
            "/v1/auth/login", json={"email": "cookie@example.edu", "password": PASSWORD}
        )
        cookie = response.headers["set-cookie"].lower()
        assert "refresh_token=" in cookie
        assert "httponly" in cookie
        assert "samesite=strict" in cookie
        assert "path=/v1/auth" in cookie

        rotated = client.post("/v1/auth/refresh")
        assert rotated.status_code == 200
        assert rotated.json()["data"]["refresh_token"] != response.json()["data"]["tokens"]["refresh_token"]

    def test_refresh_without_token(self):
        fresh_client = TestClient(app)
        response = fresh_client.post("/v1/auth/refresh")
        assert response.status_code == 401
        assert _error_code(response) == "token_invalid"

    def test_access_token_cannot_refresh(self, client):
        _register(client, "mixup@example.edu")
        tokens = _login(client, "mixup@example.edu")
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert response.status_code == 401
        assert _error_code(response) == "token_type_mismatch"

    def test_refresh_token_cannot_authorize(self, client):
        _register(client, "bearer@example.edu")
        tokens = _login(client, "bearer@example.edu")
        response = client.get("/v1/auth/me", headers=_bearer(tokens["refresh_token"]))
        assert response.status_code == 401
        assert _error_code(response) == "token_type_mismatch"

    def test_second_login_supersedes_first_refresh_token(self, client):
        _register(client, "two@example.edu")
        first = _login(client, "two@example.edu")
        _login(client, "two@example.edu")
        response = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert response.status_code == 401

    def test_update_profile(self, client):
        _register(client, "named@example.edu")
        tokens = _login(client, "named@example.edu")
        response = client.patch(
            "/v1/auth/me", headers=_bearer(tokens["access_token"]), json={"name": " Grace "}
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["name"] == "Grace"


class TestLoginFailures:
    def test_unknown_and_wrong_password_look_alike(self, client):
        _register(client, "real@example.edu")
        wrong = client.post(
            "/v1/auth/login", json={"email": "real@example.edu", "password": "nope-nope"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"email": "nobody@example.edu", "password": "nope-nope"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert _error_code(wrong) == _error_code(unknown) == "invalid_credentials"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_lockout_after_threshold(self, client):
        _register(client, "locked@example.edu")
        bad = {"email": "locked@example.edu", "password": "wrong-password"}
        for _ in range(4):
            assert client.post("/v1/auth/login", json=bad).status_code == 401
        locked = client.post("/v1/auth/login", json=bad)
        assert locked.status_code == 423
        assert _error_code(locked) == "account_locked"
        assert int(locked.headers["retry-after"]) > 0

        correct = client.post(
            "/v1/auth/login", json={"email": "locked@example.edu", "password": PASSWORD}
        )
        assert correct.status_code == 423

    def test_success_below_threshold_resets(self, client):
        _register(client, "reset@example.edu")
        bad = {"email": "reset@example.edu", "password": "wrong-password"}
        for _ in range(4):
            client.post("/v1/auth/login", json=bad)
        _login(client, "reset@example.edu")
        for _ in range(4):
            assert client.post("/v1/auth/login", json=bad).status_code == 401


class TestPasswordFlows:
    def test_change_password_ends_other_sessions(self, client):
        _register(client, "change@example.edu")
        other = _login(client, "change@example.edu")
        mine = _login(client, "change@example.edu")
        response = client.post(
            "/v1/auth/change-password",
            headers=_bearer(mine["access_token"]),
            json={"current_password": PASSWORD, "new_password": "An0ther-Secret!"},
        )
        assert response.status_code == 200
        new_tokens = response.json()["data"]["tokens"]
        stale = client.post("/v1/auth/refresh", json={"refresh_token": other["refresh_token"]})
        assert stale.status_code == 401
        fresh = client.post("/v1/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]})
        assert fresh.status_code == 200
        _login(client, "change@example.edu", "An0ther-Secret!")

    def test_forgot_password_is_generic(self, client):
        _register(client, "forgot@example.edu")
        known = client.post("/v1/auth/forgot-password", json={"email": "forgot@example.edu"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.edu"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password(self, client):
        _register(client, "resetpw@example.edu")
        old = _login(client, "resetpw@example.edu")
        token = asyncio.run(get_runtime().auth.forgot_password("resetpw@example.edu"))
        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "Brand-New-Pass1"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"reset": True}
        stale = client.post("/v1/auth/refresh", json={"refresh_token": old["refresh_token"]})
        assert stale.status_code == 401
        _login(client, "resetpw@example.edu", "Brand-New-Pass1")

        again = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "Yet-Another-Pass1"}
        )
        assert again.status_code == 400


class TestAdministration:
    @pytest.fixture
    def admin_tokens(self, client):
        admin = _register(client, "admin@example.edu")
        get_runtime().store.update_role(admin["id"], "admin")
        return _login(client, "admin@example.edu")

    def test_non_admin_refused(self, client):
        user = _register(client, "plain@example.edu")
        tokens = _login(client, "plain@example.edu")
        response = client.post(
            f"/v1/admin/accounts/{user['id']}/suspend", headers=_bearer(tokens["access_token"])
        )
        assert response.status_code == 403
        assert _error_code(response) == "forbidden"

    def test_suspend_and_reinstate(self, client, admin_tokens):
        user = _register(client, "target@example.edu")
        user_tokens = _login(client, "target@example.edu")
        headers = _bearer(admin_tokens["access_token"])

        suspended = client.post(
            f"/v1/admin/accounts/{user['id']}/suspend", headers=headers, json={"reason": "policy"}
        )
        assert suspended.status_code == 200
        assert suspended.json()["data"]["user"]["suspended"] is True

        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]}
        )
        assert refresh.status_code == 401
        me = client.get("/v1/auth/me", headers=_bearer(user_tokens["access_token"]))
        assert me.status_code == 403
        assert _error_code(me) == "account_suspended"
        login = client.post(
            "/v1/auth/login", json={"email": "target@example.edu", "password": PASSWORD}
        )
        assert login.status_code == 403
        assert _error_code(login) == "account_suspended"

        reinstated = client.post(f"/v1/admin/accounts/{user['id']}/reinstate", headers=headers)
        assert reinstated.status_code == 200
        _login(client, "target@example.edu")

    def test_admin_cannot_suspend_self(self, client, admin_tokens):
        admin = client.get("/v1/auth/me", headers=_bearer(admin_tokens["access_token"]))
        admin_id = admin.json()["data"]["user"]["id"]
        response = client.post(
            f"/v1/admin/accounts/{admin_id}/suspend",
            headers=_bearer(admin_tokens["access_token"]),
        )
        assert response.status_code == 403

    def test_role_change_requires_refresh(self, client, admin_tokens):
        user = _register(client, "promoted@example.edu")
        user_tokens = _login(client, "promoted@example.edu")
        response = client.post(
            f"/v1/admin/accounts/{user['id']}/role",
            headers=_bearer(admin_tokens["access_token"]),
            json={"role": "staff"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "staff"

        stale = client.get("/v1/auth/me", headers=_bearer(user_tokens["access_token"]))
        assert stale.status_code == 401
        assert _error_code(stale) == "token_invalid"
        rotated = client.post(
            "/v1/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]}
        )
        assert rotated.status_code == 200
        me = client.get("/v1/auth/me", headers=_bearer(rotated.json()["data"]["access_token"]))
        assert me.json()["data"]["user"]["role"] == "staff"

    def test_invalid_role_rejected(self, client, admin_tokens):
        user = _register(client, "dean@example.edu")
        response = client.post(
            f"/v1/admin/accounts/{user['id']}/role",
            headers=_bearer(admin_tokens["access_token"]),
            json={"role": "dean"},
        )
        assert response.status_code == 400

    def test_unlock(self, client, admin_tokens):
        user = _register(client, "unlockme@example.edu")
        bad = {"email": "unlockme@example.edu", "password": "wrong-password"}
        for _ in range(5):
            client.post("/v1/auth/login", json=bad)
        response = client.post(
            f"/v1/admin/accounts/{user['id']}/unlock",
            headers=_bearer(admin_tokens["access_token"]),
        )
        assert response.status_code == 200
        _login(client, "unlockme@example.edu")

    def test_unknown_account(self, client, admin_tokens):
        response = client.post(
            "/v1/admin/accounts/does-not-exist/unlock",
            headers=_bearer(admin_tokens["access_token"]),
        )
        assert response.status_code == 404
        assert _error_code(response) == "not_found"


class TestRateLimits:
    def test_login_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT", "2")
        reset_runtime_for_tests()
        body = {"email": "nobody@example.edu", "password": "whatever-pass"}
        assert client.post("/v1/auth/login", json=body).status_code == 401
        assert client.post("/v1/auth/login", json=body).status_code == 401
        limited = client.post("/v1/auth/login", json=body)
        assert limited.status_code == 429
        assert _error_code(limited) == "rate_limited"
        assert int(limited.headers["retry-after"]) >= 1
        assert limited.json()["error"]["details"]["retry_after_seconds"] >= 1


class TestHealth:
    def test_healthz_reports_components(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert response.headers["cache-control"] == "no-store"
