"""Integration tests for the HTTP surface.

Tests the complete flows including:
- Registration and password login with session cookies
- Bearer and cookie authentication on /v1/me
- MFA enrolment and second-factor login
- Social and SSO sign-in
- Password reset by one-time code
- Role and permission administration behind guards
- Rate limiting and the health endpoint
"""

import asyncio
import re
import time

import pytest
from fastapi.testclient import TestClient

from iamcore import app as app_module
from iamcore.service.mfa import generate_totp
from iamcore.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "CorrectHorse42"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, title, message, category="info"):
        self.sent.append((user_id, title, message, category))
        return True


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def notifier(monkeypatch):
    recorder = RecordingNotifier()
    monkeypatch.setattr(get_runtime().auth, "notifier", recorder)
    return recorder


def _register(client, email="alice@example.com", name="Alice", password=PASSWORD):
    response = client.post(
        "/v1/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def _make_admin(user_id):
    asyncio.run(get_runtime().rbac.grant_role_by_name(user_id, "admin"))


def _role_id(name):
    return get_runtime().store.find_role_by_name(name).id


class TestRegistrationAndLogin:
    """Tests for local sign-up and sign-in."""

    def test_register_returns_token_and_cookie(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "Alice@Example.com", "password": PASSWORD},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["mfa_required"] is False
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["role_names"] == ["user"]
        assert "password_hash" not in data["user"]
        assert response.cookies.get("token") == data["token"]
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie

    def test_duplicate_registration_conflicts(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": PASSWORD},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "short"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["details"] == {"field": "password"}

    def test_configured_minimum_password_length(self, client, monkeypatch):
        monkeypatch.setenv("PASSWORD_MIN_LENGTH", "16")
        reset_runtime_for_tests()

        rejected = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": PASSWORD},
        )
        accepted = client.post(
            "/v1/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "CorrectHorse4242"},
        )

        assert rejected.status_code == 400
        assert "at least 16 characters" in rejected.json()["error"]["message"]
        assert accepted.status_code == 201

    def test_login(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["token"]
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_login_failures_are_indistinguishable(self, client):
        _register(client)

        unknown = client.post(
            "/v1/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}
        )
        wrong = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "WrongHorse42"}
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_inactive_account_login_forbidden(self, client):
        data = _register(client)
        get_runtime().auth.set_user_status(data["user"]["id"], False)

        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )

        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"reason": "account_inactive"}

    def test_login_rate_limited(self, client):
        _register(client)
        limit = get_runtime().settings.login_rate_limit_per_minute

        statuses = [
            client.post(
                "/v1/auth/login",
                json={"email": "alice@example.com", "password": "WrongHorse42"},
            ).status_code
            for _ in range(limit + 1)
        ]

        assert statuses[:limit] == [401] * limit
        assert statuses[-1] == 429


class TestSessions:
    def test_me_with_bearer(self, client):
        data = _register(client)
        client.cookies.clear()

        response = client.get("/v1/me", headers=_auth_header(data["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["user"]["id"]

    def test_me_with_cookie(self, client):
        data = _register(client)

        response = client.get("/v1/me")

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["user"]["id"]

    def test_me_without_token(self, client):
        response = client.get("/v1/me")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"] == {"reason": "missing_token"}

    def test_me_with_garbage_token(self, client):
        response = client.get("/v1/me", headers=_auth_header("not.a.token"))

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "invalid_token"}

    def test_logout_clears_cookie(self, client):
        _register(client)

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": True}
        assert client.get("/v1/me").status_code == 401

    def test_change_password(self, client):
        data = _register(client)

        response = client.post(
            "/v1/me/password",
            json={"current_password": PASSWORD, "new_password": "NewHorse4242"},
            headers=_auth_header(data["token"]),
        )

        assert response.status_code == 200
        login = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "NewHorse4242"}
        )
        assert login.status_code == 200

    def test_update_profile(self, client):
        data = _register(client)
        headers = _auth_header(data["token"])

        response = client.patch(
            "/v1/me",
            json={"name": "Alice Liddell", "email": "Alice.L@Example.com"},
            headers=headers,
        )

        assert response.status_code == 200
        user = response.json()["data"]
        assert user["name"] == "Alice Liddell"
        assert user["email"] == "alice.l@example.com"
        assert user["avatar"] == data["user"]["avatar"]
        me = client.get("/v1/me", headers=headers).json()["data"]
        assert me["email"] == "alice.l@example.com"
        login = client.post(
            "/v1/auth/login", json={"email": "alice.l@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200

    def test_update_profile_email_taken(self, client):
        _register(client, email="bob@example.com", name="Bob")
        data = _register(client)

        response = client.patch(
            "/v1/me", json={"email": "bob@example.com"}, headers=_auth_header(data["token"])
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_update_profile_requires_session(self, client):
        assert client.patch("/v1/me", json={"name": "Mallory"}).status_code == 401


class TestMFAFlow:
    """Tests for MFA enrolment and second-factor login over HTTP."""

    def test_enrol_then_login_with_code(self, client):
        data = _register(client)
        headers = _auth_header(data["token"])

        setup = client.post("/v1/mfa/setup", headers=headers)
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        assert setup.json()["data"]["provisioning_uri"].startswith("otpauth://totp/")

        enable = client.post(
            "/v1/mfa/enable", json={"code": generate_totp(secret, time.time())}, headers=headers
        )
        assert enable.status_code == 200
        assert enable.json()["data"] == {"enabled": True}

        client.cookies.clear()
        pending = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert pending.status_code == 200
        assert pending.json()["data"]["mfa_required"] is True
        assert pending.json()["data"]["token"] is None
        assert "token" not in pending.cookies

        verified = client.post(
            "/v1/auth/mfa/verify",
            json={
                "email": "alice@example.com",
                "password": PASSWORD,
                "code": generate_totp(secret, time.time()),
                "remember": True,
            },
        )
        assert verified.status_code == 200
        payload = verified.json()["data"]
        assert payload["token"]
        assert payload["user"]["mfa_enabled"] is True
        assert payload["expires_in"] == get_runtime().settings.remember_token_ttl_minutes * 60

    def test_enable_without_setup(self, client):
        data = _register(client)

        response = client.post(
            "/v1/mfa/enable", json={"code": "123456"}, headers=_auth_header(data["token"])
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestExternalSignIn:
    def test_social_profile_sign_in(self, client):
        response = client.post(
            "/v1/auth/social/google",
            json={"profile": {"id": "g-1", "email": "carol@example.com", "name": "Carol"}},
        )

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["social_provider"] == "google"
        assert user["name"] == "Carol"

    def test_social_links_existing_account(self, client):
        data = _register(client)

        response = client.post(
            "/v1/auth/social/github",
            json={"profile": {"id": 5, "login": "alice", "email": "alice@example.com"}},
        )

        assert response.json()["data"]["user"]["id"] == data["user"]["id"]

    def test_social_unknown_provider(self, client):
        response = client.post(
            "/v1/auth/social/friendster",
            json={"profile": {"id": "1", "email": "x@example.com"}},
        )

        assert response.status_code == 400

    def test_social_disabled(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(
            runtime,
            "settings",
            runtime.settings.model_copy(update={"allow_unverified_social_profiles": False}),
        )

        response = client.post(
            "/v1/auth/social/google",
            json={"profile": {"id": "g-1", "email": "carol@example.com"}},
        )

        assert response.status_code == 404

    def test_sso_exchange(self, client):
        response = client.post("/v1/auth/sso", json={"token": "opaque-sso-token"})

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == "sso.user@organization.com"
        assert user["name"] == "SSO User"
        assert user["social_provider"] == "sso"

    def test_oauth_start_unconfigured(self, client):
        response = client.post("/v1/auth/oauth/google/start")

        assert response.status_code == 400


class TestPasswordReset:
    """Tests for the one-time code reset flow over HTTP."""

    def test_full_flow(self, client, notifier):
        _register(client)

        requested = client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        assert requested.status_code == 200
        assert requested.json()["data"] == {"otp_issued": True}
        code = re.search(r"code is: (\d+)", notifier.sent[-1][2]).group(1)

        premature = client.post(
            "/v1/auth/reset-password",
            json={"email": "alice@example.com", "new_password": "NewHorse4242"},
        )
        assert premature.status_code == 403

        verified = client.post(
            "/v1/auth/verify-otp", json={"email": "alice@example.com", "code": code}
        )
        assert verified.status_code == 200

        reset = client.post(
            "/v1/auth/reset-password",
            json={"email": "alice@example.com", "new_password": "NewHorse4242"},
        )
        assert reset.status_code == 200
        assert reset.json()["data"] == {"reset": True}

        login = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "NewHorse4242"}
        )
        assert login.status_code == 200

    def test_unknown_email_looks_successful(self, client, notifier):
        response = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})

        assert response.status_code == 200
        assert response.json()["data"] == {"otp_issued": True}
        assert notifier.sent == []

    def test_verify_does_not_reveal_accounts(self, client, notifier):
        _register(client)
        client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        code = re.search(r"code is: (\d+)", notifier.sent[-1][2]).group(1)
        wrong = "000000" if code != "000000" else "111111"

        known = client.post(
            "/v1/auth/verify-otp", json={"email": "alice@example.com", "code": wrong}
        )
        unknown = client.post(
            "/v1/auth/verify-otp", json={"email": "nobody@example.com", "code": wrong}
        )

        assert known.status_code == unknown.status_code == 401
        assert known.json()["error"] == unknown.json()["error"]
        assert unknown.json()["error"]["details"] == {"reason": "mismatch"}


class TestAdministration:
    """Tests for guarded role and permission management."""

    def test_non_admin_cannot_create_roles(self, client):
        data = _register(client)

        response = client.post(
            "/v1/iam/roles", json={"name": "auditor"}, headers=_auth_header(data["token"])
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_role_lifecycle(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        _make_admin(admin["user"]["id"])
        headers = _auth_header(admin["token"])
        alice = _register(client, email="alice@example.com")

        created = client.post(
            "/v1/iam/permissions",
            json={"name": "export_reports", "resource": "reports", "action": "export"},
            headers=headers,
        )
        assert created.status_code == 201

        role = client.post(
            "/v1/iam/roles",
            json={"name": "auditor", "permissions": ["export_reports"]},
            headers=headers,
        )
        assert role.status_code == 201
        role_id = role.json()["data"]["id"]

        duplicate = client.post("/v1/iam/roles", json={"name": "auditor"}, headers=headers)
        assert duplicate.status_code == 409

        assigned = client.post(
            f"/v1/iam/users/{alice['user']['id']}/roles",
            json={"role_id": role_id},
            headers=headers,
        )
        assert assigned.status_code == 200
        assert "export_reports" in assigned.json()["data"]["permissions"]

        blocked = client.delete(f"/v1/iam/roles/{role_id}", headers=headers)
        assert blocked.status_code == 409

        removed = client.delete(
            f"/v1/iam/users/{alice['user']['id']}/roles/{role_id}", headers=headers
        )
        assert removed.status_code == 200
        assert "auditor" not in removed.json()["data"]["role_names"]

        deleted = client.delete(f"/v1/iam/roles/{role_id}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"deleted": True, "role_id": role_id}

    def test_update_role(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        _make_admin(admin["user"]["id"])

        response = client.patch(
            f"/v1/iam/roles/{_role_id('editor')}",
            json={"description": "Edits content", "permissions": ["view_dashboard", "view_users"]},
            headers=_auth_header(admin["token"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["permissions"] == ["view_dashboard", "view_users"]

    def test_new_role_visible_to_existing_token(self, client):
        """Test that guards read current roles, not the token's snapshot."""
        admin = _register(client, email="admin@example.com", name="Admin")
        alice = _register(client, email="alice@example.com")
        alice_headers = _auth_header(alice["token"])

        assert client.get("/v1/iam/users", headers=alice_headers).status_code == 403

        _make_admin(admin["user"]["id"])
        client.post(
            f"/v1/iam/users/{alice['user']['id']}/roles",
            json={"role_id": _role_id("manager")},
            headers=_auth_header(admin["token"]),
        )

        listed = client.get("/v1/iam/users", headers=alice_headers)
        assert listed.status_code == 200
        assert {u["email"] for u in listed.json()["data"]["items"]} == {
            "admin@example.com",
            "alice@example.com",
        }

    def test_deactivate_user(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        _make_admin(admin["user"]["id"])
        alice = _register(client, email="alice@example.com")
        headers = _auth_header(admin["token"])

        response = client.patch(
            f"/v1/iam/users/{alice['user']['id']}/status",
            json={"is_active": False},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        client.cookies.clear()
        assert client.get("/v1/me", headers=_auth_header(alice["token"])).status_code == 403

        self_deactivate = client.patch(
            f"/v1/iam/users/{admin['user']['id']}/status",
            json={"is_active": False},
            headers=headers,
        )
        assert self_deactivate.status_code == 400

    def test_delete_unknown_role(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        _make_admin(admin["user"]["id"])

        response = client.delete("/v1/iam/roles/missing", headers=_auth_header(admin["token"]))

        assert response.status_code == 404

    def test_list_roles_and_permissions(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        _make_admin(admin["user"]["id"])
        headers = _auth_header(admin["token"])

        roles = client.get("/v1/iam/roles", headers=headers).json()["data"]["items"]
        permissions = client.get("/v1/iam/permissions", headers=headers).json()["data"]["items"]

        assert [r["name"] for r in roles] == ["admin", "editor", "manager", "user"]
        assert "manage_system" in {p["name"] for p in permissions}


class TestHealthAndHeaders:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["checks"]["filesystem"]["status"] == "healthy"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["API-Version"] == app_module.__version__
