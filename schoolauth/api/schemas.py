from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schoolauth.storage.models import PasswordPolicy, SecurityEvent, Session, User

# Passwords longer than this are rejected before hashing
MAX_PASSWORD_INPUT = 1024


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class _CamelModel(BaseModel):
    """Request bodies arrive in camelCase; Python code reads snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SignupRequest(_CamelModel):
    # Fields are optional so the service can answer with its own 400 message
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)
    role: Optional[str] = Field(default=None, max_length=64)
    department: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=128)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username", "email", "role", "department")
    @classmethod
    def _strip_identifiers(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class LoginRequest(_CamelModel):
    username: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class FirstPasswordRequest(_CamelModel):
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_PASSWORD_INPUT
    )


class ForgotPasswordRequest(_CamelModel):
    username: Optional[str] = Field(default=None, max_length=64)


class ResetPasswordRequest(_CamelModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)


class UpdatePasswordRequest(_CamelModel):
    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_PASSWORD_INPUT
    )
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)


class UserResponse(BaseModel):
    """Public view of a user; never carries credentials or reset tokens."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    username: str
    email: str
    role: str
    department: str
    permissions: List[str] = Field(default_factory=list)
    is_active: bool = Field(True, alias="isActive")
    must_change_password: bool = Field(False, alias="mustChangePassword")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    phone: Optional[str] = None
    last_login: Optional[datetime] = Field(None, alias="lastLogin")
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            department=user.department,
            permissions=list(user.permissions),
            is_active=user.is_active,
            must_change_password=user.must_change_password,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class BriefUserResponse(BaseModel):
    id: str
    username: str
    role: str


class SessionResponse(BaseModel):
    """Session as shown to its owner and to admins; hashes are never exposed."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    session_id: str = Field(..., alias="sessionId")
    user_id: str = Field(..., alias="user")
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    user_agent: Optional[str] = Field(None, alias="userAgent")
    device_info: str = Field("Unknown", alias="deviceInfo")
    department: Optional[str] = None
    role: Optional[str] = None
    is_active: bool = Field(True, alias="isActive")
    login_time: datetime = Field(..., alias="loginTime")
    last_activity: datetime = Field(..., alias="lastActivity")
    expires_at: datetime = Field(..., alias="expiresAt")
    logout_time: Optional[datetime] = Field(None, alias="logoutTime")

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            session_id=session.id,
            user_id=session.user_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            department=session.department,
            role=session.role,
            is_active=session.is_active,
            login_time=session.login_time,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            logout_time=session.logout_time,
        )


class DepartmentCount(BaseModel):
    department: Optional[str] = Field(None, alias="_id")
    count: int

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class SessionStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    total_active: int = Field(..., alias="totalActive")
    total_expired: int = Field(..., alias="totalExpired")
    department_stats: List[DepartmentCount] = Field(
        default_factory=list, alias="departmentStats"
    )
    recent_sessions: List[SessionResponse] = Field(
        default_factory=list, alias="recentSessions"
    )


class PasswordPolicyRules(_CamelModel):
    """Rule block of a policy; every field is optional so PATCH can send a subset."""

    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    require_uppercase: Optional[bool] = Field(default=None, alias="requireUppercase")
    require_lowercase: Optional[bool] = Field(default=None, alias="requireLowercase")
    require_numbers: Optional[bool] = Field(default=None, alias="requireNumbers")
    require_special_chars: Optional[bool] = Field(default=None, alias="requireSpecialChars")
    prevent_common_passwords: Optional[bool] = Field(
        default=None, alias="preventCommonPasswords"
    )
    prevent_sequential_chars: Optional[bool] = Field(
        default=None, alias="preventSequentialChars"
    )
    prevent_repeated_chars: Optional[bool] = Field(default=None, alias="preventRepeatedChars")
    max_repeated_chars: Optional[int] = Field(default=None, alias="maxRepeatedChars")
    prevent_personal_info: Optional[bool] = Field(default=None, alias="preventPersonalInfo")
    password_history: Optional[int] = Field(default=None, alias="passwordHistory")
    expiry_days: Optional[int] = Field(default=None, alias="expiryDays")

    @classmethod
    def from_policy(cls, policy: PasswordPolicy) -> "PasswordPolicyRules":
        return cls(**{name: getattr(policy, name) for name in cls.model_fields})


class PasswordPolicyRequest(_CamelModel):
    name: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    rules: Optional[PasswordPolicyRules] = None
    applicable_roles: Optional[List[str]] = Field(default=None, alias="applicableRoles")

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)

    def policy_fields(self) -> dict[str, Any]:
        """Fields the client actually sent, flattened to policy attribute names."""
        fields = self.model_dump(exclude_unset=True, exclude={"rules"})
        if self.rules is not None:
            fields.update(self.rules.model_dump(exclude_unset=True))
        return {name: value for name, value in fields.items() if value is not None}


class PasswordPolicyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = Field(True, alias="isActive")
    rules: PasswordPolicyRules
    applicable_roles: List[str] = Field(default_factory=list, alias="applicableRoles")
    created_by: Optional[str] = Field(None, alias="createdBy")
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_policy(cls, policy: PasswordPolicy) -> "PasswordPolicyResponse":
        return cls(
            id=policy.id,
            name=policy.name,
            description=policy.description,
            is_active=policy.is_active,
            rules=PasswordPolicyRules.from_policy(policy),
            applicable_roles=list(policy.applicable_roles),
            created_by=policy.created_by,
            created_at=policy.created_at,
        )


class ValidatePasswordRequest(_CamelModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)


class ResolveEventRequest(_CamelModel):
    action: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=2000)


class SecurityActionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    action: str
    performed_by: Optional[str] = Field(None, alias="performedBy")
    performed_at: Optional[datetime] = Field(None, alias="performedAt")
    notes: Optional[str] = None


class SecurityEventResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    type: str
    severity: str
    risk_score: int = Field(..., alias="riskScore")
    user_id: Optional[str] = Field(None, alias="user")
    session_id: Optional[str] = Field(None, alias="sessionId")
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    user_agent: Optional[str] = Field(None, alias="userAgent")
    details: Optional[dict[str, Any]] = None
    alert_sent: bool = Field(False, alias="alertSent")
    is_resolved: bool = Field(False, alias="isResolved")
    resolved_at: Optional[datetime] = Field(None, alias="resolvedAt")
    resolved_by: Optional[str] = Field(None, alias="resolvedBy")
    actions: List[SecurityActionResponse] = Field(default_factory=list)
    timestamp: datetime

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventResponse":
        return cls(
            id=event.id,
            type=event.type,
            severity=event.severity,
            risk_score=event.risk_score,
            user_id=event.user_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
            alert_sent=event.alert_sent,
            is_resolved=event.is_resolved,
            resolved_at=event.resolved_at,
            resolved_by=event.resolved_by,
            actions=[SecurityActionResponse(**a) for a in event.actions],
            timestamp=event.timestamp,
        )


class EventTypeCount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    type: str
    count: int
    avg_risk_score: float = Field(..., alias="avgRiskScore")


class SeverityBreakdown(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    severity: str = Field(..., alias="_id")
    events: List[EventTypeCount] = Field(default_factory=list)
    total_count: int = Field(..., alias="totalCount")


class ThreatTypeCount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    type: str = Field(..., alias="_id")
    count: int
    avg_risk_score: float = Field(..., alias="avgRiskScore")


class SecurityStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    timeframe: int
    total_events: int = Field(..., alias="totalEvents")
    unresolved_high_risk: int = Field(..., alias="unresolvedHighRisk")
    severity_breakdown: List[SeverityBreakdown] = Field(
        default_factory=list, alias="severityBreakdown"
    )
    top_threat_types: List[ThreatTypeCount] = Field(default_factory=list, alias="topThreatTypes")


def dump(model: BaseModel) -> dict[str, Any]:
    """JSON-ready dict using the camelCase wire names."""
    return model.model_dump(mode="json", by_alias=True)
