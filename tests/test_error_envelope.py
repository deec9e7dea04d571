"""Tests for the ``{status, message}`` error body and exception mapping."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from schoolauth import app as app_module
from schoolauth.api.error_handling import (
    SERVER_ERROR_MESSAGE,
    error_response,
    register_exception_handlers,
)
from schoolauth.service.errors import (
    AccountLockedError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from schoolauth.storage.errors import ConstraintViolation


@pytest.fixture
def failing_client():
    """App whose routes raise each kind of error the handlers map."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database exploded")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/slow")
    async def slow():
        raise RateLimitedError("Too many attempts, try later.", retry_after=30)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError("locked")

    @app.get("/server")
    async def server():
        raise ServerError("Failed to logout all sessions")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Session not found")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorResponse:
    def test_client_errors_are_fail(self):
        response = error_response(404, "nope")
        assert response.status_code == 404
        assert json.loads(response.body) == {"status": "fail", "message": "nope"}

    def test_server_errors_are_error(self):
        response = error_response(503, "down", headers={"Retry-After": "5"})
        assert json.loads(response.body) == {"status": "error", "message": "down"}
        assert response.headers["Retry-After"] == "5"


class TestExceptionMapping:
    def test_unhandled_exception_hides_details(self, failing_client):
        response = failing_client.get("/boom")

        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": SERVER_ERROR_MESSAGE}
        assert "exploded" not in response.text

    def test_constraint_violation_names_field(self, failing_client):
        response = failing_client.get("/duplicate")

        assert response.status_code == 400
        assert response.json()["message"] == (
            "Duplicate field value: email. Please use another value!"
        )

    def test_rate_limit_sets_retry_after(self, failing_client):
        response = failing_client.get("/slow")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"

    @pytest.mark.parametrize(
        "path,status,label",
        [("/locked", 423, "fail"), ("/server", 500, "error"), ("/missing", 404, "fail")],
    )
    def test_service_errors_keep_status(self, failing_client, path, status, label):
        response = failing_client.get(path)

        assert response.status_code == status
        assert response.json()["status"] == label


class TestApplicationErrors:
    def test_unknown_route(self):
        client = TestClient(app_module.app)
        response = client.get("/api/v1/nowhere?page=2")

        assert response.status_code == 404
        assert response.json() == {
            "status": "fail",
            "message": "Can't find /api/v1/nowhere?page=2 on this server!",
        }

    def test_invalid_body_is_400(self):
        client = TestClient(app_module.app)
        response = client.post(
            "/api/v1/users/login", json={"username": "x" * 65, "password": "irrelevant"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "fail"
        assert body["message"].startswith("Invalid input data.")


class TestServiceErrors:
    def test_status_labels(self):
        assert AccountLockedError("locked").status == "fail"
        assert ServerError("boom").status == "error"

    def test_retry_after_header_only_when_known(self):
        assert RateLimitedError("slow down").headers() is None
        assert RateLimitedError("slow down", retry_after=12).headers() == {"Retry-After": "12"}
