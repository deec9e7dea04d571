from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = "student"
    department: str = "general"
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    must_change_password: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    # argon2 hashes, most recent first
    password_history: List[str] = field(default_factory=list)
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def changed_password_after(self, issued_at: int | float) -> bool:
        """True when the password changed after a token with ``iat`` was issued."""
        if not self.password_changed_at:
            return False
        return int(issued_at) < int(self.password_changed_at.timestamp())


@dataclass
class Session:
    id: str
    user_id: str
    token: Optional[str]
    expires_at: datetime
    is_active: bool = True
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: str = "Unknown"
    department: Optional[str] = None
    role: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    login_time: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    logout_time: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: Optional[str] = None,
        ttl_days: int = 7,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str = "Unknown",
        department: str | None = None,
        role: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_hex(32),
            user_id=user_id,
            token=token,
            expires_at=now + timedelta(days=ttl_days),
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            department=department,
            role=role,
            login_time=now,
            last_activity=now,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class PasswordPolicy:
    id: str
    name: str
    description: Optional[str] = None
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    prevent_common_passwords: bool = True
    prevent_sequential_chars: bool = True
    prevent_repeated_chars: bool = True
    max_repeated_chars: int = 3
    prevent_personal_info: bool = True
    password_history: int = 5
    expiry_days: int = 90
    is_active: bool = True
    applicable_roles: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def applies_to(self, role: Optional[str]) -> bool:
        return self.is_active and (not self.applicable_roles or role in self.applicable_roles)


@dataclass
class AuditLog:
    id: str
    action: str
    resource: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_model: Optional[str] = None
    details: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    department: Optional[str] = None
    role: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, action: str, resource: str, **fields) -> "AuditLog":
        return cls(id=str(uuid.uuid4()), action=action, resource=resource, **fields)


# Severities an administrator is expected to triage
HIGH_RISK_SEVERITIES = ("HIGH", "CRITICAL")


@dataclass
class SecurityEvent:
    id: str
    type: str
    severity: str
    risk_score: int
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    alert_sent: bool = False
    timestamp: datetime = field(default_factory=utcnow)
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    # {action, performed_by, performed_at (ISO string), notes}
    actions: List[Dict] = field(default_factory=list)


# Columns the auth flows may change after a user is created
MUTABLE_USER_FIELDS = frozenset(
    {
        "email",
        "role",
        "department",
        "permissions",
        "is_active",
        "must_change_password",
        "login_attempts",
        "lock_until",
        "last_login",
        "password_changed_at",
        "password_history",
        "password_reset_token",
        "password_reset_expires",
        "first_name",
        "last_name",
        "phone",
    }
)


# Columns an administrator may change on an existing password policy
MUTABLE_POLICY_FIELDS = frozenset(
    {
        "name",
        "description",
        "min_length",
        "max_length",
        "require_uppercase",
        "require_lowercase",
        "require_numbers",
        "require_special_chars",
        "prevent_common_passwords",
        "prevent_sequential_chars",
        "prevent_repeated_chars",
        "max_repeated_chars",
        "prevent_personal_info",
        "password_history",
        "expiry_days",
        "is_active",
        "applicable_roles",
    }
)
