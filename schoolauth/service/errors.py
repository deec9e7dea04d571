from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """An auth failure the API layer answers with ``{status, message}``.

    ``status_code`` picks the HTTP status, ``error_code`` is the stable name
    written to logs. ``message`` is shown to the client verbatim, so it must
    never carry internals.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def status(self) -> str:
        return "fail" if self.status_code < 500 else "error"

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class BadRequestError(ServiceError):
    """Missing or invalid input, weak or reused passwords (400)."""


class AuthenticationError(ServiceError):
    """No usable credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """The backing session is gone and could not be recreated (401)."""


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class AccountLockedError(ServiceError):
    """Too many failed logins; the lock lifts on its own (423)."""
    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message, detail={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after

    def headers(self) -> Optional[Dict[str, str]]:
        if self.retry_after:
            return {"Retry-After": str(self.retry_after)}
        return None


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
