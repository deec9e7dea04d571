from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from schoolauth.api.csrf import issue_csrf_token
from schoolauth.api.schemas import (
    BriefUserResponse,
    FirstPasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    SignupRequest,
    UpdatePasswordRequest,
    UserResponse,
    dump,
)
from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.auth import DEACTIVATED_MESSAGE, TokenBundle
from schoolauth.service.errors import AccountLockedError, ForbiddenError, RateLimitedError
from schoolauth.service.permissions import (
    Permission,
    Role,
    can_access_department,
    has_any_permission,
    has_permission,
)
from schoolauth.service.runtime import check_rate_limit, get_runtime
from schoolauth.service.sessions import RequestContext
from schoolauth.service.tokens import extract_bearer
from schoolauth.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["users"])

AUTH_RATE_LIMIT_MESSAGE = "Too many authentication attempts, please try again later."
REFRESH_RATE_LIMIT_MESSAGE = "Too many token refresh attempts. Please slow down."
FIRST_PASSWORD_RATE_LIMIT_MESSAGE = "Too many attempts, try later."
NO_PERMISSION_MESSAGE = "You do not have permission to perform this action"
ACCOUNT_LOCKED_MESSAGE = "Your account is temporarily locked. Please try again later."

REFRESH_COOKIE = "refreshToken"
SESSION_COOKIE = "sid"
# Cookies are cleared on the path the login flow historically used
LOGOUT_COOKIE_PATH = "/api/v1/users"


@dataclass
class Principal:
    """The authenticated caller of a protected route."""

    user: User
    token: str
    session: Optional[Session] = None


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        scheme=request.url.scheme,
        host=request.headers.get("host") or request.url.netloc,
    )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    message: str,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token from ``key`` or raise 429 with ``message``."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(message, retry_after=info.reset_seconds)
    return info


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def auth_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_key(request)}",
        runtime.settings.effective_auth_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        AUTH_RATE_LIMIT_MESSAGE,
        response=response,
    )


async def refresh_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_key(request)}",
        runtime.settings.effective_refresh_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        REFRESH_RATE_LIMIT_MESSAGE,
        response=response,
    )


async def first_password_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"first-password:{_client_key(request)}",
        runtime.settings.first_password_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        FIRST_PASSWORD_RATE_LIMIT_MESSAGE,
        response=response,
    )


# guards
async def protect(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer access token to a live user or raise 401."""
    runtime = get_runtime()
    token = extract_bearer(authorization)
    user = await runtime.auth.authenticate(token)
    return Principal(user=user, token=token or "")


async def check_account_status(principal: Principal = Depends(protect)) -> Principal:
    user = principal.user
    if not user.is_active:
        raise ForbiddenError(DEACTIVATED_MESSAGE)
    if user.lock_until and user.lock_until > datetime.now(timezone.utc):
        raise AccountLockedError(ACCOUNT_LOCKED_MESSAGE)
    return principal


async def validate_session(
    request: Request, principal: Principal = Depends(check_account_status)
) -> Principal:
    runtime = get_runtime()
    principal.session = await runtime.auth.ensure_session(
        principal.user, principal.token, request_context(request)
    )
    return principal


async def update_session_activity(
    principal: Principal = Depends(validate_session),
) -> Principal:
    if principal.session is not None:
        get_runtime().auth.touch_session(principal.session)
    return principal


# Full chain for the authenticated user routes
get_principal = update_session_activity


def restrict_to(*roles: str | Role) -> Callable[..., Any]:
    allowed = {r.value if isinstance(r, Role) else r for r in roles}

    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.user.role not in allowed:
            raise ForbiddenError(NO_PERMISSION_MESSAGE)
        return principal

    return _guard


def restrict_to_enhanced(*roles: str | Role) -> Callable[..., Any]:
    """Like :func:`restrict_to`, but super_admin always passes."""
    allowed = {r.value if isinstance(r, Role) else r for r in roles}

    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        role = principal.user.role
        if role != Role.SUPER_ADMIN.value and role not in allowed:
            raise ForbiddenError(NO_PERMISSION_MESSAGE)
        return principal

    return _guard


def check_permission(permission: Permission) -> Callable[..., Any]:
    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        user = principal.user
        if not has_permission(user.role, user.permissions, permission):
            raise ForbiddenError(
                f"Access denied. You don't have the required permission: {permission.value}"
            )
        return principal

    return _guard


def check_any_permission(permissions: Iterable[Permission]) -> Callable[..., Any]:
    required = list(permissions)

    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        user = principal.user
        if not has_any_permission(user.role, user.permissions, required):
            names = ", ".join(p.value for p in required)
            raise ForbiddenError(
                f"Access denied. You don't have any of the required permissions: {names}"
            )
        return principal

    return _guard


def check_department(department: str) -> Callable[..., Any]:
    async def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        if not can_access_department(principal.user.role, department):
            raise ForbiddenError(
                f"Access denied. You don't have permission to access {department} department."
            )
        return principal

    return _guard


# cookies and bodies
def _apply_auth_cookies(response: Response, bundle: TokenBundle, settings: Settings) -> None:
    max_age = settings.session_ttl_days * 24 * 60 * 60
    response.set_cookie(
        REFRESH_COOKIE,
        bundle.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max_age,
        path="/api",
    )
    if bundle.session is not None:
        response.set_cookie(
            SESSION_COOKIE,
            bundle.session.id,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            max_age=max_age,
            path="/api",
        )
    issue_csrf_token(response, settings)


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    expires = datetime.now(timezone.utc) + timedelta(seconds=10)
    for name, value in (("jwt", "loggedout"), (REFRESH_COOKIE, ""), (SESSION_COOKIE, "")):
        response.set_cookie(
            name,
            value,
            expires=expires,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            path=LOGOUT_COOKIE_PATH,
        )


def _token_response(response: Response, bundle: TokenBundle, settings: Settings) -> dict:
    _apply_auth_cookies(response, bundle, settings)
    return {
        "status": "success",
        "token": bundle.access_token,
        "data": {"user": dump(UserResponse.from_user(bundle.user))},
    }


# public routes
@router.post("/signup", status_code=201, dependencies=[Depends(auth_rate_limit)])
async def signup(body: SignupRequest, request: Request, response: Response):
    runtime = get_runtime()
    bundle = await runtime.auth.signup(
        body.username,
        body.email,
        body.password,
        body.role,
        department=body.department,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        ctx=request_context(request),
    )
    return _token_response(response, bundle, runtime.settings)


@router.post("/login", dependencies=[Depends(auth_rate_limit)])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username and password.

    Accounts that must change their password get a narrow first-login token
    instead of a session; no refresh or sid cookie is set for them.
    """
    runtime = get_runtime()
    logger.info("login_attempt", username=body.username or "unknown")
    result = await runtime.auth.login(body.username, body.password, request_context(request))
    if result.password_change_required:
        issue_csrf_token(response, runtime.settings)
        brief = BriefUserResponse(
            id=result.user.id, username=result.user.username, role=result.user.role
        )
        return {
            "status": "password_change_required",
            "firstLoginToken": result.first_login_token,
            "data": {"user": brief.model_dump()},
        }
    return _token_response(response, result.tokens, runtime.settings)


@router.post("/first-password", dependencies=[Depends(first_password_rate_limit)])
async def first_password(
    body: FirstPasswordRequest,
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    bundle = await runtime.auth.first_password_setup(
        extract_bearer(authorization), body.new_password, request_context(request)
    )
    return _token_response(response, bundle, runtime.settings)


@router.post("/refresh", dependencies=[Depends(refresh_rate_limit)])
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    sid: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    bundle = await runtime.auth.refresh(refresh_token, sid, request_context(request))
    return _token_response(response, bundle, runtime.settings)


@router.post("/forgotPassword", dependencies=[Depends(auth_rate_limit)])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.username, request_context(request))
    return {"status": "success", "message": "Token sent to mail"}


@router.patch("/resetPassword/{token}")
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    response: Response,
    token: str = Path(..., max_length=256),
):
    runtime = get_runtime()
    bundle = await runtime.auth.reset_password(token, body.password, request_context(request))
    return _token_response(response, bundle, runtime.settings)


# authenticated routes
@router.patch("/updateMyPassword")
async def update_my_password(
    body: UpdatePasswordRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    bundle = await runtime.auth.update_my_password(
        principal.user.id, body.current_password, body.password, request_context(request)
    )
    return _token_response(response, bundle, runtime.settings)


@router.get("/me")
async def get_me(principal: Principal = Depends(get_principal)):
    return {"status": "success", "data": {"user": dump(UserResponse.from_user(principal.user))}}


@router.get("/csrf")
async def rotate_csrf(response: Response, principal: Principal = Depends(get_principal)):
    token = issue_csrf_token(response, get_runtime().settings)
    return {"status": "success", "token": token}


@router.post("/logout")
async def logout(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.logout(principal.token, principal.user, request_context(request))
    _clear_auth_cookies(response, runtime.settings)
    return {"status": "success", "message": "Logged out successfully"}


@router.post("/logoutAll")
async def logout_all(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.user, request_context(request))
    _clear_auth_cookies(response, runtime.settings)
    return {"status": "success", "message": f"All sessions ({count}) invalidated"}


@router.post("/{user_id}/first-password-token")
async def regenerate_first_login_token(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(
        restrict_to_enhanced(Role.SUPER_ADMIN, Role.SCHOOL_ADMIN, Role.IT_ADMIN)
    ),
):
    runtime = get_runtime()
    token = await runtime.auth.regenerate_first_login_token(
        user_id, principal.user, request_context(request)
    )
    return {"status": "success", "firstLoginToken": token}
