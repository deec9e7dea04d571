"""Integration tests for the /api/v1/users authentication flow.

Covers:
- Signup and login cookies and response shapes
- The first-login (password change required) flow
- Refresh token rotation and replay rejection
- Logout, CSRF double-submit and guards on /me
- Password reset and rate limiting
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from schoolauth import app as app_module
from schoolauth.api.csrf import CSRF_COOKIE, CSRF_FAILURE_MESSAGE, CSRF_HEADER
from schoolauth.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Tr0ub4dor&Zq"
NEW_PASSWORD = "Ny5$Hrk8Wd?j"

USERS = "/api/v1/users"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def signup(client, username="mentor1", role="teacher", password=PASSWORD, **extra):
    body = {
        "username": username,
        "email": f"{username}@school.example",
        "password": password,
        "role": role,
        **extra,
    }
    return client.post(f"{USERS}/signup", json=body)


def login(client, username="mentor1", password=PASSWORD):
    return client.post(f"{USERS}/login", json={"username": username, "password": password})


def auth_headers(client, token):
    """Bearer token plus the CSRF header echoing the cookie."""
    return {"Authorization": f"Bearer {token}", CSRF_HEADER: client.cookies.get(CSRF_COOKIE)}


class TestSignupFlow:
    def test_signup_sets_cookies_and_returns_user(self, client):
        response = signup(client, firstName="Mina", department="academic")

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "success"
        assert data["token"]
        user = data["data"]["user"]
        assert user["username"] == "mentor1"
        assert user["firstName"] == "Mina"
        assert user["mustChangePassword"] is False
        assert "password" not in user
        assert {"refreshToken", "sid", CSRF_COOKIE} <= set(response.cookies.keys())

        set_cookies = response.headers.get_list("set-cookie")
        refresh = next(c for c in set_cookies if c.startswith("refreshToken="))
        assert "HttpOnly" in refresh
        assert "Path=/api" in refresh
        assert "samesite=strict" in refresh.lower()
        csrf = next(c for c in set_cookies if c.startswith(f"{CSRF_COOKIE}="))
        assert "HttpOnly" not in csrf

    def test_signup_missing_fields(self, client):
        response = client.post(f"{USERS}/signup", json={"username": "mentor1"})

        assert response.status_code == 400
        assert response.json() == {
            "status": "fail",
            "message": "Please provide username, email, password, and role",
        }

    def test_signup_weak_password(self, client):
        response = signup(client, password="password")

        assert response.status_code == 400
        assert response.json()["message"].startswith(
            "Password does not meet security requirements: "
        )

    def test_signup_duplicate_username(self, client):
        signup(client)
        response = signup(client)

        assert response.status_code == 400
        assert "already exists" in response.json()["message"]


class TestLoginFlow:
    def test_login_returns_token_and_session(self, client):
        signup(client)
        response = login(client)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["data"]["user"]["lastLogin"] is not None
        assert "sid" in response.cookies

    def test_wrong_password(self, client):
        signup(client)
        response = login(client, password=NEW_PASSWORD)

        assert response.status_code == 401
        assert response.json()["message"] == "Incorrect username or password"

    def test_lockout_after_five_failures(self, client):
        signup(client)
        for _ in range(5):
            assert login(client, password=NEW_PASSWORD).status_code == 401

        response = login(client)
        assert response.status_code == 423
        assert "temporarily locked" in response.json()["message"]

    def test_password_change_required_flow(self, client):
        asyncio.run(
            get_runtime().auth.create_account(
                "pupil7",
                "pupil7@school.example",
                PASSWORD,
                role="student",
                must_change_password=True,
            )
        )

        response = login(client, username="pupil7")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "password_change_required"
        assert data["data"]["user"]["username"] == "pupil7"
        assert set(data["data"]["user"]) == {"id", "username", "role"}
        assert CSRF_COOKIE in response.cookies
        assert "refreshToken" not in response.cookies
        assert "sid" not in response.cookies

        first_token = data["firstLoginToken"]
        # A first-login token is not an access token
        assert client.get(f"{USERS}/me", headers={"Authorization": f"Bearer {first_token}"}).status_code == 401

        response = client.post(
            f"{USERS}/first-password",
            json={"newPassword": NEW_PASSWORD},
            headers={"Authorization": f"Bearer {first_token}"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["mustChangePassword"] is False
        assert "refreshToken" in response.cookies

        assert login(client, username="pupil7", password=NEW_PASSWORD).json()["status"] == "success"

    def test_first_password_without_token(self, client):
        response = client.post(f"{USERS}/first-password", json={"newPassword": NEW_PASSWORD})

        assert response.status_code == 401
        assert response.json()["message"] == "Missing first login token"


class TestRefreshFlow:
    def test_refresh_rotates_and_rejects_replay(self, client):
        signup(client)
        old_refresh = client.cookies.get("refreshToken")
        sid = client.cookies.get("sid")

        response = client.post(f"{USERS}/refresh")
        assert response.status_code == 200
        new_token = response.json()["token"]
        assert response.cookies.get("refreshToken") != old_refresh

        assert client.get(f"{USERS}/me", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200

        replay = TestClient(app_module.app, cookies={"refreshToken": old_refresh, "sid": sid})
        response = replay.post(f"{USERS}/refresh")
        assert response.status_code == 401
        assert response.json()["status"] == "fail"

    def test_refresh_without_cookies(self, client):
        response = client.post(f"{USERS}/refresh")

        assert response.status_code == 401
        assert response.json()["message"] == "Refresh credentials missing"


class TestLogoutAndCsrf:
    def test_logout_requires_csrf_header(self, client):
        token = signup(client).json()["token"]

        response = client.post(f"{USERS}/logout", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403
        assert response.json() == {"status": "fail", "message": CSRF_FAILURE_MESSAGE}

        response = client.post(
            f"{USERS}/logout",
            headers={"Authorization": f"Bearer {token}", CSRF_HEADER: "forged"},
        )
        assert response.status_code == 403

    def test_logout_invalidates_session_and_clears_cookies(self, client):
        token = signup(client).json()["token"]

        response = client.post(f"{USERS}/logout", headers=auth_headers(client, token))
        assert response.status_code == 200
        assert response.json() == {"status": "success", "message": "Logged out successfully"}
        cleared = response.headers.get_list("set-cookie")
        assert any(c.startswith("jwt=loggedout") for c in cleared)
        assert any(c.startswith("refreshToken=") and "Path=/api/v1/users" in c for c in cleared)

        runtime = get_runtime()
        user = runtime.store.get_user_by_username("mentor1")
        assert runtime.sessions.list_user_sessions(user.id) == []

        # A second logout with the same token still succeeds
        assert client.post(f"{USERS}/logout", headers=auth_headers(client, token)).status_code == 200

    def test_logout_all_reports_count(self, client):
        token = signup(client).json()["token"]
        login(client)

        response = client.post(f"{USERS}/logoutAll", headers=auth_headers(client, token))
        assert response.status_code == 200
        assert response.json()["message"] == "All sessions (2) invalidated"

    def test_csrf_rotation(self, client):
        token = signup(client).json()["token"]
        old = client.cookies.get(CSRF_COOKIE)

        response = client.get(f"{USERS}/csrf", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        rotated = response.json()["token"]
        assert rotated != old
        assert client.cookies.get(CSRF_COOKIE) == rotated


class TestGuards:
    def test_me_requires_token(self, client):
        response = client.get(f"{USERS}/me")

        assert response.status_code == 401
        assert response.json()["message"] == "You are not logged in! Please log in to get access"

    def test_me_rejects_garbage_token(self, client):
        response = client.get(f"{USERS}/me", headers={"Authorization": "Bearer nonsense"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token. Please log in again!"

    def test_me_returns_current_user(self, client):
        token = signup(client).json()["token"]

        response = client.get(f"{USERS}/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "mentor1"

    def test_deactivated_account_rejected(self, client):
        token = signup(client).json()["token"]
        runtime = get_runtime()
        user = runtime.store.get_user_by_username("mentor1")
        runtime.store.update_user(user.id, is_active=False)

        response = client.get(f"{USERS}/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403
        assert "deactivated" in response.json()["message"]

    def test_regenerate_first_login_token_needs_admin(self, client):
        token = signup(client).json()["token"]
        runtime = get_runtime()
        pupil = asyncio.run(
            runtime.auth.create_account(
                "pupil7", "pupil7@school.example", PASSWORD, role="student", must_change_password=True
            )
        )

        response = client.post(
            f"{USERS}/{pupil.id}/first-password-token", headers=auth_headers(client, token)
        )
        assert response.status_code == 403
        assert response.json()["message"] == "You do not have permission to perform this action"

        asyncio.run(
            runtime.auth.create_account(
                "root", "root@school.example", NEW_PASSWORD, role="super_admin"
            )
        )
        admin_token = login(client, username="root", password=NEW_PASSWORD).json()["token"]
        response = client.post(
            f"{USERS}/{pupil.id}/first-password-token", headers=auth_headers(client, admin_token)
        )
        assert response.status_code == 200
        assert response.json()["firstLoginToken"]


class TestPasswordManagement:
    def test_forgot_and_reset_password(self, client, monkeypatch):
        signup(client)
        runtime = get_runtime()
        sent = []

        def capture(to_email, reset_url, ttl_minutes=10):
            sent.append(reset_url)
            return True

        monkeypatch.setattr(runtime.email, "send_password_reset", capture)

        response = client.post(f"{USERS}/forgotPassword", json={"username": "mentor1"})
        assert response.status_code == 200
        assert response.json() == {"status": "success", "message": "Token sent to mail"}
        assert sent[0].startswith("http://testserver/api/v1/users/resetPassword/")

        raw = sent[0].rsplit("/", 1)[1]
        response = client.patch(f"{USERS}/resetPassword/{raw}", json={"password": NEW_PASSWORD})
        assert response.status_code == 200
        assert response.json()["token"]

        assert login(client, password=NEW_PASSWORD).status_code == 200

        response = client.patch(f"{USERS}/resetPassword/{raw}", json={"password": PASSWORD})
        assert response.status_code == 400
        assert response.json()["message"] == "Token is invalid or has expired"

    def test_forgot_password_unknown_user(self, client):
        response = client.post(f"{USERS}/forgotPassword", json={"username": "nobody"})

        assert response.status_code == 404

    def test_update_my_password(self, client):
        token = signup(client).json()["token"]

        response = client.patch(
            f"{USERS}/updateMyPassword",
            json={"currentPassword": NEW_PASSWORD, "password": NEW_PASSWORD},
            headers=auth_headers(client, token),
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Your current password is incorrect."

        response = client.patch(
            f"{USERS}/updateMyPassword",
            json={"currentPassword": PASSWORD, "password": NEW_PASSWORD},
            headers=auth_headers(client, token),
        )
        assert response.status_code == 200
        assert response.json()["token"] != token
        assert login(client, password=NEW_PASSWORD).status_code == 200


class TestRateLimits:
    def test_auth_endpoints_are_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT", "2")
        reset_runtime_for_tests()

        assert login(client).status_code == 401
        assert login(client).status_code == 401
        response = login(client)

        assert response.status_code == 429
        assert response.json() == {
            "status": "fail",
            "message": "Too many authentication attempts, please try again later.",
        }
        assert int(response.headers["Retry-After"]) > 0
