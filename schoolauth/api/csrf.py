from __future__ import annotations

import hmac
import secrets

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from schoolauth.config import Settings
from schoolauth.logging import get_logger

logger = get_logger(__name__)

CSRF_COOKIE = "csrfToken"
CSRF_HEADER = "x-csrf-token"
CSRF_FAILURE_MESSAGE = "CSRF token missing or invalid"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

# Bootstrap endpoints a client can reach before it holds a CSRF cookie
_CSRF_EXEMPT_PATHS = frozenset(
    {
        "/api/v1/users/login",
        "/api/v1/users/signup",
        "/api/v1/users/refresh",
        "/api/v1/users/forgotPassword",
        "/api/v1/users/first-password",
    }
)
_CSRF_EXEMPT_PREFIXES = ("/api/v1/users/resetPassword/",)


def issue_csrf_token(response: Response, settings: Settings) -> str:
    """Set a fresh double-submit cookie; readable by scripts so it can be echoed."""
    token = secrets.token_hex(32)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        path="/",
    )
    return token


def is_csrf_exempt(method: str, path: str) -> bool:
    if method.upper() in _CSRF_SAFE_METHODS:
        return True
    if path in _CSRF_EXEMPT_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _CSRF_EXEMPT_PREFIXES)


def csrf_token_matches(cookie_token: str | None, header_token: str | None) -> bool:
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token.encode(), header_token.encode())


async def enforce_csrf_token(request: Request, call_next):
    """Reject mutating requests whose header does not echo the CSRF cookie."""
    if is_csrf_exempt(request.method, request.url.path):
        return await call_next(request)
    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not csrf_token_matches(cookie_token, header_token):
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            method=request.method,
            has_cookie=bool(cookie_token),
            has_header=bool(header_token),
        )
        return JSONResponse(
            status_code=403,
            content={"status": "fail", "message": CSRF_FAILURE_MESSAGE},
        )
    return await call_next(request)
