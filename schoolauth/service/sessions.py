from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.tokens import hash_refresh_token
from schoolauth.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class RequestContext:
    """Client details snapshotted onto sessions and audit entries."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    scheme: str = "http"
    host: str = "localhost"


def extract_device_info(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown"
    for marker, label in (
        ("Mobile", "Mobile"),
        ("Tablet", "Tablet"),
        ("Windows", "Windows Desktop"),
        ("Mac", "Mac Desktop"),
        ("Linux", "Linux Desktop"),
    ):
        if marker in user_agent:
            return label
    return "Desktop"


class SessionStore(Protocol):
    def create_session(self, user_id: str, token: Optional[str], **kwargs: Any) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session_by_token(self, token: str, now: datetime) -> Optional[Session]: ...

    def list_sessions(self, **kwargs: Any) -> List[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def deactivate_session(self, session_id: str, at: datetime) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> int: ...

    def deactivate_expired_sessions(self, at: datetime) -> int: ...

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> bool: ...

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def set_session_token(self, session_id: str, token: str) -> bool: ...

    def session_stats(self, now: datetime) -> Dict[str, Any]: ...


class SessionManager:
    """Server-side session lifecycle.

    States: created -> active -> (refreshed)* -> invalidated | expired. Every
    mutation after creation is a single-field store update so concurrent
    requests from one browser never overwrite each other.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(
        self, user: User, access_token: Optional[str], ctx: Optional[RequestContext] = None
    ) -> Optional[Session]:
        """Persist a new session; returns None instead of raising on store failure."""
        ctx = ctx or RequestContext()
        try:
            session = self.store.create_session(
                user.id,
                access_token,
                ttl_days=self.settings.session_ttl_days,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                device_info=extract_device_info(ctx.user_agent),
                department=user.department,
                role=user.role,
            )
        except Exception as exc:
            logger.warning("session_create_failed", user_id=user.id, error=str(exc))
            return None
        logger.info("session_created", user_id=user.id, session_id=session.id[:8])
        return session

    def enforce_session_limit(self, user_id: str, max_sessions: Optional[int] = None) -> int:
        """Make room for one more session; returns how many were invalidated."""
        limit = max_sessions or self.settings.max_sessions_per_user
        now = self._now()
        active = self.store.list_sessions(user_id=user_id, active_only=True, now=now)
        if len(active) < limit:
            return 0
        evicted = active[limit - 1 :]
        for sess in evicted:
            self.store.deactivate_session(sess.id, now)
        logger.info("session_limit_enforced", user_id=user_id, invalidated=len(evicted))
        return len(evicted)

    def set_refresh_token(self, session_id: str, raw_refresh_token: str) -> bool:
        return self.store.set_session_refresh_hash(
            session_id, hash_refresh_token(raw_refresh_token)
        )

    def rotate_refresh_token(
        self, session_id: str, presented_refresh_token: str, next_refresh_token: str
    ) -> Optional[Session]:
        """Replace the refresh hash only if it still matches the presented token.

        Returns the session on success and None for every kind of mismatch:
        unknown, inactive or expired session, or a token already rotated away.
        """
        return self.store.rotate_session_refresh_hash(
            session_id,
            hash_refresh_token(presented_refresh_token),
            hash_refresh_token(next_refresh_token),
            self._now(),
        )

    def find_active_by_token(self, access_token: str) -> Optional[Session]:
        return self.store.find_active_session_by_token(access_token, self._now())

    def bind_token(self, session: Session, access_token: str) -> None:
        if self.store.set_session_token(session.id, access_token):
            session.token = access_token

    def update_activity(self, session: Session) -> None:
        now = self._now()
        self.store.touch_session(session.id, now)
        session.last_activity = now

    def invalidate(self, session: Session) -> bool:
        now = self._now()
        changed = self.store.deactivate_session(session.id, now)
        session.is_active = False
        session.logout_time = session.logout_time or now
        return changed

    def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        return self.store.deactivate_user_sessions(
            user_id, self._now(), except_session_id=except_session_id
        )

    def clean_expired_sessions(self) -> int:
        count = self.store.deactivate_expired_sessions(self._now())
        if count:
            logger.info("expired_sessions_cleaned", count=count)
        return count

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id=user_id, active_only=True, now=self._now())

    def list_active_sessions(self, limit: Optional[int] = None) -> List[Session]:
        return self.store.list_sessions(active_only=True, now=self._now(), limit=limit)

    def stats(self) -> Dict[str, Any]:
        stats = dict(self.store.session_stats(self._now()))
        stats["recent_sessions"] = self.list_active_sessions(limit=10)
        return stats
