from __future__ import annotations

import hmac
import json
import threading
import uuid
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation, StoreUnavailable
from schoolauth.storage.models import (
    HIGH_RISK_SEVERITIES,
    MUTABLE_POLICY_FIELDS,
    MUTABLE_USER_FIELDS,
    AuditLog,
    PasswordPolicy,
    SecurityEvent,
    Session,
    User,
    utcnow,
)

_USER_DATETIME_FIELDS = (
    "lock_until",
    "last_login",
    "password_changed_at",
    "password_reset_expires",
    "created_at",
    "updated_at",
)
_SESSION_DATETIME_FIELDS = ("expires_at", "login_time", "last_activity", "logout_time")


class MemoryStore:
    """In-memory credential/session store persisted to a JSON state file.

    Every mutation happens under ``_data_lock`` so single-field session
    updates (activity ping, invalidation, refresh-hash rotation) never lose
    writes to each other.
    """

    def __init__(self, fs_root: str = "/tmp/schoolauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_policies: Dict[str, PasswordPolicy] = {}
        self.audit_logs: List[AuditLog] = []
        self.security_events: List[SecurityEvent] = []
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def ping(self) -> bool:
        return self._state_path().parent.is_dir()

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "student",
        department: str = "general",
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        must_change_password: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        username = username.lower()
        email = email.lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                department=department,
                permissions=list(permissions or []),
                is_active=is_active,
                must_change_password=must_change_password,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == lowered), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == lowered), None)

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.password_reset_token == token_hash
                    and user.password_reset_expires
                    and user.password_reset_expires > now
                ):
                    return user
            return None

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if not role or u.role == role]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields and fields["email"]:
                fields["email"] = fields["email"].lower()
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if user.role == "super_admin":
                raise ConstraintViolation(
                    "super admin accounts cannot be deleted", {"user_id": user_id}
                )
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    sess.logout_time = utcnow()
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        token: Optional[str],
        *,
        ttl_days: int = 7,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: str = "Unknown",
        department: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                token,
                ttl_days,
                ip_address=ip_address,
                user_agent=user_agent,
                device_info=device_info,
                department=department,
                role=role,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_active_session_by_token(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.token == token and s.is_usable(now)
                ),
                None,
            )

    def list_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        active_only: bool = True,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if (not user_id or s.user_id == user_id)
                and (not active_only or s.is_usable(now))
            ]
        results.sort(key=lambda s: s.last_activity, reverse=True)
        return results[:limit] if limit else results

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.last_activity = at
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.logout_time = at
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.logout_time = at
                count += 1
            if count:
                self._persist_state()
            return count

    def deactivate_expired_sessions(self, at: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at < at:
                    sess.is_active = False
                    sess.logout_time = at
                    count += 1
            if count:
                self._persist_state()
            return count

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.refresh_token_hash = refresh_token_hash
            self._persist_state()
            return True

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        """Compare-and-swap of the refresh hash on a usable session."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.refresh_token_hash or not sess.is_usable(now):
                return None
            if not hmac.compare_digest(sess.refresh_token_hash, expected_hash):
                return None
            sess.refresh_token_hash = new_hash
            self._persist_state()
            return sess

    def set_session_token(self, session_id: str, token: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.token = token
            self._persist_state()
            return True

    def session_stats(self, now: datetime) -> Dict[str, Any]:
        with self._data_lock:
            sessions = list(self.sessions.values())
        active = [s for s in sessions if s.is_usable(now)]
        expired = [s for s in sessions if not s.is_active and s.expires_at < now]
        by_department: Dict[str, int] = {}
        for sess in active:
            key = sess.department or "unknown"
            by_department[key] = by_department.get(key, 0) + 1
        department_stats = sorted(
            ({"department": k, "count": v} for k, v in by_department.items()),
            key=lambda row: row["count"],
            reverse=True,
        )
        return {
            "total_active": len(active),
            "total_expired": len(expired),
            "department_stats": department_stats,
        }

    # password policies
    def create_password_policy(self, name: str, **fields: Any) -> PasswordPolicy:
        with self._data_lock:
            if any(p.name == name for p in self.password_policies.values()):
                raise ConstraintViolation("policy name already exists", {"field": "name"})
            policy = PasswordPolicy(id=str(uuid.uuid4()), name=name, **fields)
            self.password_policies[policy.id] = policy
            self._persist_state()
            return policy

    def get_password_policy(self, policy_id: str) -> Optional[PasswordPolicy]:
        with self._data_lock:
            return self.password_policies.get(policy_id)

    def update_password_policy(self, policy_id: str, **fields: Any) -> Optional[PasswordPolicy]:
        unknown = set(fields) - MUTABLE_POLICY_FIELDS
        if unknown:
            raise ValueError(f"unsupported policy fields: {sorted(unknown)}")
        with self._data_lock:
            policy = self.password_policies.get(policy_id)
            if not policy:
                return None
            name = fields.get("name")
            if name and any(
                p.name == name and p.id != policy_id for p in self.password_policies.values()
            ):
                raise ConstraintViolation("policy name already exists", {"field": "name"})
            for key, value in fields.items():
                setattr(policy, key, value)
            self._persist_state()
            return policy

    def list_password_policies(self, *, active_only: bool = False) -> List[PasswordPolicy]:
        with self._data_lock:
            policies = [
                p for p in self.password_policies.values() if p.is_active or not active_only
            ]
        return sorted(policies, key=lambda p: p.created_at, reverse=True)

    # audit trail
    def record_audit_log(self, entry: AuditLog) -> AuditLog:
        with self._data_lock:
            self.audit_logs.append(entry)
            self._persist_state()
            return entry

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        with self._data_lock:
            entries = [
                e
                for e in self.audit_logs
                if (not user_id or e.user_id == user_id) and (not action or e.action == action)
            ]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def record_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(event)
            self._persist_state()
            return event

    def _filter_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            return [
                e
                for e in self.security_events
                if (not event_type or e.type == event_type)
                and (not severities or e.severity in severities)
                and (not user_id or e.user_id == user_id)
                and (resolved is None or e.is_resolved == resolved)
                and (since is None or e.timestamp >= since)
                and (until is None or e.timestamp <= until)
            ]

    def list_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        by_risk: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SecurityEvent]:
        events = self._filter_security_events(
            event_type=event_type,
            severities=severities,
            user_id=user_id,
            resolved=resolved,
            since=since,
            until=until,
        )
        if by_risk:
            events.sort(key=lambda e: (e.risk_score, e.timestamp), reverse=True)
        else:
            events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[offset : offset + limit]

    def count_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        return len(
            self._filter_security_events(
                event_type=event_type,
                severities=severities,
                user_id=user_id,
                resolved=resolved,
                since=since,
                until=until,
            )
        )

    def get_security_event(self, event_id: str) -> Optional[SecurityEvent]:
        with self._data_lock:
            return next((e for e in self.security_events if e.id == event_id), None)

    def resolve_security_event(
        self,
        event_id: str,
        *,
        resolved_by: str,
        at: datetime,
        action: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        with self._data_lock:
            event = next((e for e in self.security_events if e.id == event_id), None)
            if not event:
                return None
            event.is_resolved = True
            event.resolved_at = at
            event.resolved_by = resolved_by
            if action:
                event.actions.append(dict(action))
            self._persist_state()
            return event

    def security_event_stats(self, since: datetime) -> Dict[str, Any]:
        """Totals plus per (severity, type) counts and mean risk since ``since``."""
        events = self._filter_security_events(since=since)
        groups: Dict[tuple, List[int]] = defaultdict(list)
        for event in events:
            groups[(event.severity, event.type)].append(event.risk_score)
        return {
            "total_events": len(events),
            "unresolved_high_risk": sum(
                1
                for e in events
                if e.severity in HIGH_RISK_SEVERITIES and not e.is_resolved
            ),
            "groups": [
                {
                    "severity": severity,
                    "type": event_type,
                    "count": len(scores),
                    "avg_risk_score": sum(scores) / len(scores),
                }
                for (severity, event_type), scores in groups.items()
            ],
        }

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "password_policies": [
                self._serialize_policy(p) for p in self.password_policies.values()
            ],
            "audit_logs": [self._serialize_audit_log(e) for e in self.audit_logs],
            "security_events": [
                self._serialize_security_event(e) for e in self.security_events
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.password_policies = {
            p["id"]: self._deserialize_policy(p) for p in data.get("password_policies", [])
        }
        self.audit_logs = [
            self._deserialize_audit_log(e) for e in data.get("audit_logs", [])
        ]
        self.security_events = [
            self._deserialize_security_event(e) for e in data.get("security_events", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        data = dict(user.__dict__)
        for name in _USER_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(user, name))
        return data

    def _deserialize_user(self, data: dict) -> User:
        payload = dict(data)
        for name in _USER_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        if payload.get("created_at") is None:
            payload.pop("created_at", None)
        if payload.get("updated_at") is None:
            payload.pop("updated_at", None)
        return User(**payload)

    def _serialize_session(self, session: Session) -> dict:
        data = dict(session.__dict__)
        for name in _SESSION_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(session, name))
        return data

    def _deserialize_session(self, data: dict) -> Session:
        payload = dict(data)
        for name in _SESSION_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        return Session(**payload)

    def _serialize_policy(self, policy: PasswordPolicy) -> dict:
        data = dict(policy.__dict__)
        data["created_at"] = self._serialize_datetime(policy.created_at)
        return data

    def _deserialize_policy(self, data: dict) -> PasswordPolicy:
        payload = dict(data)
        payload["created_at"] = self._deserialize_datetime(payload.get("created_at")) or utcnow()
        return PasswordPolicy(**payload)

    def _serialize_audit_log(self, entry: AuditLog) -> dict:
        data = dict(entry.__dict__)
        data["timestamp"] = self._serialize_datetime(entry.timestamp)
        return data

    def _deserialize_audit_log(self, data: dict) -> AuditLog:
        payload = dict(data)
        payload["timestamp"] = self._deserialize_datetime(payload.get("timestamp")) or utcnow()
        return AuditLog(**payload)

    def _serialize_security_event(self, event: SecurityEvent) -> dict:
        data = dict(event.__dict__)
        data["timestamp"] = self._serialize_datetime(event.timestamp)
        data["resolved_at"] = self._serialize_datetime(event.resolved_at)
        data["actions"] = [dict(a) for a in event.actions]
        return data

    def _deserialize_security_event(self, data: dict) -> SecurityEvent:
        payload = dict(data)
        payload["timestamp"] = self._deserialize_datetime(payload.get("timestamp")) or utcnow()
        payload["resolved_at"] = self._deserialize_datetime(payload.get("resolved_at"))
        return SecurityEvent(**payload)
