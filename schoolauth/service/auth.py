from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.audit import AuditService
from schoolauth.service.email import EmailService
from schoolauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    SessionExpiredError,
)
from schoolauth.service.lockout import LockoutState
from schoolauth.service.password_policy import (
    PASSWORD_ALGO,
    PasswordPolicyService,
    check_password_history,
    hash_password,
    push_password_history,
    verify_password_hash,
)
from schoolauth.service.permissions import (
    Role,
    default_department,
    default_permissions,
    parse_department,
    parse_role,
)
from schoolauth.service.sessions import RequestContext, SessionManager
from schoolauth.service.tokens import TokenIssuer
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Session, User

logger = get_logger(__name__)

LOCKED_LOGIN_MESSAGE = (
    "Account is temporarily locked due to too many failed login attempts. "
    "Please try again later."
)
DEACTIVATED_MESSAGE = "Your account has been deactivated. Please contact administrator."
INVALID_TOKEN_MESSAGE = "Invalid token. Please log in again!"


class AuthStore(Protocol):
    def create_user(self, username: str, email: str, **kwargs: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class TokenBundle:
    """Everything a response needs to establish an authenticated client."""

    user: User
    access_token: str
    refresh_token: str
    session: Optional[Session] = None


@dataclass
class LoginResult:
    user: User
    tokens: Optional[TokenBundle] = None
    first_login_token: Optional[str] = None

    @property
    def password_change_required(self) -> bool:
        return self.first_login_token is not None


def hash_reset_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def _ctx_fields(ctx: Optional[RequestContext]) -> dict:
    if ctx is None:
        return {}
    return {"ip_address": ctx.ip_address, "user_agent": ctx.user_agent}


class AuthService:
    """Login, signup, refresh, logout and password flows.

    Composes the credential store, password policy engine, token issuer and
    session manager. Audit and session writes are best-effort; only the
    credential checks decide whether a request succeeds.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: Optional[SessionManager] = None,
        tokens: Optional[TokenIssuer] = None,
        audit: Optional[AuditService] = None,
        policies: Optional[PasswordPolicyService] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens or TokenIssuer(settings)
        self.sessions = sessions or SessionManager(store, settings)
        self.audit = audit or AuditService(store)
        self.policies = policies or PasswordPolicyService(store)
        self.email = email or EmailService()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _lockout(self, user: User) -> LockoutState:
        return LockoutState.for_user(
            user,
            max_attempts=self.settings.max_login_attempts,
            lockout_minutes=self.settings.lockout_minutes,
        )

    # credentials
    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return verify_password_hash(stored_hash, password)

    def _set_password(self, user: User, new_password: str, **fields: Any) -> User:
        """Persist ``new_password`` and push the hash it replaces onto history."""
        record = self.store.get_password_record(user.id)
        history = push_password_history(user.password_history, record[0] if record else None)
        pwd_hash, algo = hash_password(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        # Back-dated one second so a token minted right after the change stays valid
        changed_at = self._now() - timedelta(seconds=1)
        updated = self.store.update_user(
            user.id, password_history=history, password_changed_at=changed_at, **fields
        )
        return updated or user

    def _require_strong_password(
        self,
        password: str,
        user: User,
        *,
        prefix: str,
        ctx: Optional[RequestContext] = None,
        event_type: str = "PASSWORD_POLICY_VIOLATION",
    ) -> None:
        result = self.policies.validate_for_user(password, user)
        if result.is_valid:
            return
        self.audit.security_event(
            event_type,
            user_id=user.id or None,
            details={"username": user.username, "errors": result.errors},
            **_ctx_fields(ctx),
        )
        raise BadRequestError(f"{prefix}: {result.message()}")

    def _require_unused_password(self, user: User, password: str) -> None:
        history = check_password_history(user.password_history, password)
        if not history.is_valid:
            raise BadRequestError(history.error or "Password has been used recently")

    # token bundle
    def issue_tokens(self, user: User, ctx: Optional[RequestContext] = None) -> TokenBundle:
        """Mint an access/refresh pair on a new session.

        When the session write fails the bundle carries no session and the
        client simply gets no ``sid``.
        """
        access_token = self.tokens.issue_access_token(user.id)
        refresh_token = self.tokens.issue_refresh_token()
        active = self.sessions.create_session(user, access_token, ctx)
        if active is not None:
            try:
                self.sessions.set_refresh_token(active.id, refresh_token)
            except Exception as exc:
                self.logger.warning(
                    "session_refresh_hash_failed", session_id=active.id[:8], error=str(exc)
                )
                active = None
        return TokenBundle(
            user=user, access_token=access_token, refresh_token=refresh_token, session=active
        )

    # signup / provisioning
    async def create_account(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str,
        department: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        must_change_password: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> User:
        """Validate and persist a new account without issuing tokens."""
        parsed_role = parse_role(role)
        if parsed_role is None:
            raise BadRequestError(f"Invalid role: {role}")
        requested_department = parse_department(department) if department else None
        if department and requested_department is None:
            raise BadRequestError(f"Invalid department: {department}")

        if self.store.get_user_by_username(username) or self.store.get_user_by_email(email):
            raise BadRequestError("User with this username or email already exists")

        # Unsaved stand-in so personal-info rules see the submitted profile
        candidate = User(
            id="",
            username=username.lower(),
            email=email.lower(),
            role=parsed_role.value,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
        )
        self._require_strong_password(
            password,
            candidate,
            prefix="Password does not meet security requirements",
            ctx=ctx,
            event_type="WEAK_PASSWORD_DETECTED",
        )

        try:
            user = self.store.create_user(
                username,
                email,
                role=parsed_role.value,
                department=default_department(parsed_role, requested_department).value,
                permissions=default_permissions(parsed_role),
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                must_change_password=must_change_password,
            )
        except ConstraintViolation as exc:
            raise BadRequestError(
                "User with this username or email already exists",
                detail={"field": exc.field},
            ) from exc
        pwd_hash, algo = hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_created", user_id=user.id, role=user.role)
        return user

    async def signup(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        role: Optional[str],
        *,
        department: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> TokenBundle:
        if not username or not email or not password or not role:
            raise BadRequestError("Please provide username, email, password, and role")
        user = await self.create_account(
            username,
            email,
            password,
            role=role,
            department=department,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            ctx=ctx,
        )
        bundle = self.issue_tokens(user, ctx)
        self.audit.log(
            "USER_CREATE",
            "USER",
            user_id=user.id,
            resource_id=user.id,
            details={
                "username": user.username,
                "role": user.role,
                "department": user.department,
            },
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return bundle

    # login
    async def login(
        self,
        username: Optional[str],
        password: Optional[str],
        ctx: Optional[RequestContext] = None,
    ) -> LoginResult:
        if not username or not password:
            raise BadRequestError("Please provide username and password")

        user = self.store.get_user_by_username(username)
        now = self._now()
        # Locked accounts are rejected before any password hashing
        if user and self._lockout(user).is_locked(now):
            self.audit.log(
                "FAILED_LOGIN",
                "USER",
                user_id=user.id,
                details={"reason": "account_locked", "username": username},
                success=False,
                error_message="Account is locked",
                department=user.department,
                role=user.role,
                **_ctx_fields(ctx),
            )
            raise AccountLockedError(LOCKED_LOGIN_MESSAGE)

        if not user or not self.verify_password(user.id, password):
            if user:
                try:
                    self._record_failed_login(user, now, ctx)
                except Exception as exc:
                    self.logger.warning("login_attempts_update_failed", user_id=user.id, error=str(exc))
            raise AuthenticationError("Incorrect username or password")

        if not user.is_active:
            raise ForbiddenError(DEACTIVATED_MESSAGE)

        try:
            self.store.update_user(
                user.id, last_login=now, **self._lockout(user).record_success().as_fields()
            )
        except Exception as exc:
            self.logger.warning("login_attempts_reset_failed", user_id=user.id, error=str(exc))
        user = self.store.get_user(user.id) or user

        try:
            self.sessions.enforce_session_limit(user.id)
        except Exception as exc:
            self.logger.warning("session_limit_failed", user_id=user.id, error=str(exc))

        if user.must_change_password:
            self.logger.info("login_password_change_required", user_id=user.id)
            return LoginResult(
                user=user, first_login_token=self.tokens.issue_first_login_token(user.id)
            )

        bundle = self.issue_tokens(user, ctx)
        self.audit.log(
            "LOGIN",
            "USER",
            user_id=user.id,
            details={"username": user.username, "department": user.department, "role": user.role},
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return LoginResult(user=user, tokens=bundle)

    def _record_failed_login(self, user: User, now: datetime, ctx: Optional[RequestContext]) -> None:
        before = self._lockout(user)
        after = before.record_failure(now)
        self.store.update_user(user.id, **after.as_fields())
        self.audit.log(
            "FAILED_LOGIN",
            "USER",
            user_id=user.id,
            details={"reason": "invalid_password", "attempts": after.login_attempts},
            success=False,
            error_message="Incorrect username or password",
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        if after.is_locked(now) and not before.is_locked(now):
            self.logger.warning("account_locked", user_id=user.id, until=after.lock_until.isoformat())
            self.audit.security_event(
                "ACCOUNT_LOCKOUT",
                user_id=user.id,
                details={"failed_attempts": after.login_attempts},
                **_ctx_fields(ctx),
            )
        elif after.login_attempts >= 3:
            self.audit.security_event(
                "MULTIPLE_FAILED_LOGINS",
                user_id=user.id,
                details={"failed_attempts": after.login_attempts},
                **_ctx_fields(ctx),
            )

    # first-login flow
    async def first_password_setup(
        self,
        token: Optional[str],
        new_password: Optional[str],
        ctx: Optional[RequestContext] = None,
    ) -> TokenBundle:
        if not token:
            raise AuthenticationError("Missing first login token")
        claims, failure = self.tokens.verify_first_login_token(token)
        if failure == "scope":
            raise AuthenticationError("Invalid token scope")
        if not claims:
            raise AuthenticationError("Invalid or expired token")
        if not new_password:
            raise BadRequestError("Provide newPassword")

        user = self.store.get_user(claims["id"])
        if not user:
            raise NotFoundError("User not found")
        if not user.must_change_password:
            raise BadRequestError("Password already set")

        self._require_strong_password(new_password, user, prefix="Weak password", ctx=ctx)
        self._require_unused_password(user, new_password)
        user = self._set_password(user, new_password, must_change_password=False)
        self.audit.log(
            "FIRST_PASSWORD_SET",
            "USER",
            user_id=user.id,
            resource_id=user.id,
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return self.issue_tokens(user, ctx)

    async def regenerate_first_login_token(
        self, user_id: str, actor: User, ctx: Optional[RequestContext] = None
    ) -> str:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.role != Role.STUDENT.value:
            raise BadRequestError("Only student accounts supported")
        if not user.must_change_password:
            raise BadRequestError("User already set password")
        token = self.tokens.issue_first_login_token(user.id)
        self.audit.log(
            "REGENERATE_FIRST_LOGIN_TOKEN",
            "USER",
            user_id=actor.id,
            resource_id=user.id,
            details={"regenerated_for": user.username},
            department=actor.department,
            role=actor.role,
            **_ctx_fields(ctx),
        )
        return token

    # refresh / logout
    async def refresh(
        self,
        refresh_token: Optional[str],
        session_id: Optional[str],
        ctx: Optional[RequestContext] = None,
    ) -> TokenBundle:
        """Swap the presented refresh token for a new one and mint an access token.

        The swap is one conditional store write, so when the same token is
        replayed concurrently exactly one request gets the new pair.
        """
        if not refresh_token or not session_id:
            raise AuthenticationError("Refresh credentials missing")
        next_refresh = self.tokens.issue_refresh_token()
        session = self.sessions.rotate_refresh_token(session_id, refresh_token, next_refresh)
        if not session:
            raise AuthenticationError("Invalid or expired session")
        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("User no longer exists")
        self.audit.security_event(
            "TOKEN_REFRESH",
            user_id=user.id,
            session_id=session.id,
            details={"route": "refresh"},
            **_ctx_fields(ctx),
        )
        access_token = self.tokens.issue_access_token(user.id)
        try:
            self.sessions.bind_token(session, access_token)
        except Exception as exc:
            self.logger.warning(
                "session_bind_token_failed", session_id=session.id[:8], error=str(exc)
            )
        return TokenBundle(
            user=user, access_token=access_token, refresh_token=next_refresh, session=session
        )

    async def logout(
        self,
        access_token: Optional[str],
        actor: Optional[User] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[Session]:
        """Invalidate the session bound to ``access_token``; never raises."""
        if not access_token:
            return None
        try:
            session = self.sessions.find_active_by_token(access_token)
            if session:
                self.sessions.invalidate(session)
        except Exception as exc:
            self.logger.warning("logout_session_invalidate_failed", error=str(exc))
            return None
        if session and actor:
            self.audit.log(
                "LOGOUT",
                "SESSION",
                user_id=actor.id,
                resource_id=session.id,
                details={"session_id": session.id},
                department=actor.department,
                role=actor.role,
                **_ctx_fields(ctx),
            )
        return session

    async def logout_all(self, user: User, ctx: Optional[RequestContext] = None) -> int:
        try:
            count = self.sessions.invalidate_user_sessions(user.id)
        except Exception as exc:
            self.logger.error("logout_all_failed", user_id=user.id, error=str(exc))
            raise ServerError("Failed to logout all sessions") from exc
        self.audit.log(
            "LOGOUT_ALL",
            "SESSION",
            user_id=user.id,
            details={"sessions_invalidated": count},
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return count

    # request-time checks
    async def authenticate(self, access_token: Optional[str]) -> User:
        """Resolve the user behind a bearer access token or raise 401."""
        if not access_token:
            raise AuthenticationError("You are not logged in! Please log in to get access")
        claims = self.tokens.verify_access_token(access_token)
        if not claims:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        user = self.store.get_user(claims["id"])
        if not user:
            raise AuthenticationError("The user belonging to this token does no longer exist")
        if user.changed_password_after(claims.get("iat", 0)):
            raise AuthenticationError("User recently changed password! Please log in again.")
        return user

    async def ensure_session(
        self, user: User, access_token: str, ctx: Optional[RequestContext] = None
    ) -> Session:
        """Active session for ``access_token``, recreated when none is found."""
        try:
            session = self.sessions.find_active_by_token(access_token)
        except Exception as exc:
            self.logger.warning("session_lookup_failed", user_id=user.id, error=str(exc))
            session = None
        if session is None:
            session = self.sessions.create_session(user, access_token, ctx)
            if session is not None:
                self.logger.info("session_recreated", user_id=user.id)
        if session is None:
            raise SessionExpiredError("Session expired or invalid")
        return session

    def touch_session(self, session: Session) -> None:
        try:
            self.sessions.update_activity(session)
        except Exception as exc:
            self.logger.warning("session_activity_failed", session_id=session.id[:8], error=str(exc))

    # password management
    async def forgot_password(self, username: Optional[str], ctx: Optional[RequestContext] = None) -> str:
        user = self.store.get_user_by_username(username) if username else None
        if not user:
            raise NotFoundError("There is no user with that email address")

        raw_token = secrets.token_hex(32)
        ttl = self.settings.password_reset_ttl_minutes
        self.store.update_user(
            user.id,
            password_reset_token=hash_reset_token(raw_token),
            password_reset_expires=self._now() + timedelta(minutes=ttl),
        )
        ctx = ctx or RequestContext()
        reset_url = f"{ctx.scheme}://{ctx.host}/api/v1/users/resetPassword/{raw_token}"
        self.audit.log(
            "PASSWORD_RESET_REQUEST",
            "USER",
            user_id=user.id,
            resource_id=user.id,
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        # SMTP is blocking; keep it off the event loop
        sent = await asyncio.to_thread(self.email.send_password_reset, user.email, reset_url, ttl)
        if not sent:
            self.store.update_user(user.id, password_reset_token=None, password_reset_expires=None)
            raise ServerError("There was an error sending the email. Try again later!")
        self.logger.info("password_reset_requested", user_id=user.id)
        return raw_token

    async def reset_password(
        self, raw_token: str, password: Optional[str], ctx: Optional[RequestContext] = None
    ) -> TokenBundle:
        user = self.store.get_user_by_reset_token(hash_reset_token(raw_token), self._now())
        if not user:
            raise BadRequestError("Token is invalid or has expired")
        self._require_strong_password(
            password or "", user, prefix="Password does not meet security requirements", ctx=ctx
        )
        self._require_unused_password(user, password or "")
        user = self._set_password(
            user, password or "", password_reset_token=None, password_reset_expires=None
        )
        self.audit.log(
            "PASSWORD_RESET_SUCCESS",
            "USER",
            user_id=user.id,
            resource_id=user.id,
            details={"method": "token_reset"},
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return self.issue_tokens(user, ctx)

    async def update_my_password(
        self,
        user_id: str,
        current_password: Optional[str],
        new_password: Optional[str],
        ctx: Optional[RequestContext] = None,
    ) -> TokenBundle:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found.")
        if not current_password or not self.verify_password(user.id, current_password):
            raise AuthenticationError("Your current password is incorrect.")
        self._require_strong_password(
            new_password or "",
            user,
            prefix="New password does not meet security requirements",
            ctx=ctx,
        )
        self._require_unused_password(user, new_password or "")
        user = self._set_password(user, new_password or "")
        bundle = self.issue_tokens(user, ctx)
        self.audit.log(
            "PASSWORD_CHANGE",
            "USER",
            user_id=user.id,
            resource_id=user.id,
            details={"method": "authenticated_change"},
            department=user.department,
            role=user.role,
            **_ctx_fields(ctx),
        )
        return bundle
