import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from schoolauth import app as app_module
from schoolauth.api import schemas
from schoolauth.storage.models import Session, User


@pytest.fixture
def reload_app(monkeypatch):
    """Reload the app module so env-driven settings such as CORS are re-read."""

    def _reload(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return importlib.reload(app_module)

    yield _reload
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    importlib.reload(app_module)


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_api_responses_are_not_cached():
    client = TestClient(app_module.app)
    response = client.get("/api/v1/users/me")

    assert response.status_code == 401
    assert response.headers["Cache-Control"].startswith("no-store")


def test_request_id_is_echoed_or_generated():
    client = TestClient(app_module.app)

    echoed = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"

    generated = client.get("/healthz")
    assert generated.headers["X-Request-ID"]


def test_allowed_origins_default(reload_app):
    module = reload_app()
    origins = module._allowed_origins()
    assert "http://localhost:3000" in origins
    assert "http://127.0.0.1:5173" in origins
    assert "*" not in origins


def test_allowed_origins_override(reload_app):
    module = reload_app(CORS_ALLOW_ORIGINS="https://school.example, https://admin.school.example")
    assert module._allowed_origins() == [
        "https://school.example",
        "https://admin.school.example",
    ]


def test_signup_request_accepts_camel_case_and_strips():
    body = schemas.SignupRequest.model_validate(
        {"username": "  mentor1 ", "firstName": "Mina", "lastName": "Okafor", "role": "teacher"}
    )
    assert body.username == "mentor1"
    assert body.first_name == "Mina"
    assert body.last_name == "Okafor"
    assert body.password is None


def test_blank_identifiers_become_none():
    assert schemas.LoginRequest(username="   ").username is None


def test_oversized_password_rejected():
    with pytest.raises(ValidationError):
        schemas.LoginRequest(username="mentor1", password="x" * (schemas.MAX_PASSWORD_INPUT + 1))


def test_update_password_request_aliases():
    body = schemas.UpdatePasswordRequest.model_validate(
        {"currentPassword": "old", "password": "new"}
    )
    assert body.current_password == "old"
    assert schemas.FirstPasswordRequest.model_validate({"newPassword": "n"}).new_password == "n"


def test_user_response_never_exposes_credentials():
    user = User(
        id="u1",
        username="mentor1",
        email="mentor1@school.example",
        role="teacher",
        password_history=["hash"],
        password_reset_token="secret",
    )
    dumped = schemas.dump(schemas.UserResponse.from_user(user))
    assert dumped["mustChangePassword"] is False
    assert dumped["isActive"] is True
    assert "passwordHistory" not in dumped and "password_history" not in dumped
    assert "secret" not in str(dumped)


def test_session_response_hides_tokens():
    session = Session.new("u1", token="access-token")
    session.refresh_token_hash = "refresh-hash"
    dumped = schemas.dump(schemas.SessionResponse.from_session(session))
    assert dumped["sessionId"] == session.id
    assert dumped["user"] == "u1"
    assert "access-token" not in str(dumped)
    assert "refresh-hash" not in str(dumped)
    assert dumped["expiresAt"] and dumped["logoutTime"] is None


def test_department_count_uses_group_key():
    stats = schemas.SessionStatsResponse(
        total_active=1,
        total_expired=0,
        department_stats=[{"department": "it", "count": 1}],
    )
    dumped = schemas.dump(stats)
    assert dumped["departmentStats"] == [{"_id": "it", "count": 1}]
    assert dumped["recentSessions"] == []
