from __future__ import annotations

import uuid
from typing import Any, Optional, Protocol

from schoolauth.logging import get_logger, log_security_alert
from schoolauth.service.permissions import parse_role
from schoolauth.storage.models import AuditLog, SecurityEvent

logger = get_logger(__name__)

BASE_RISK_SCORES = {
    "BRUTE_FORCE_ATTEMPT": 70,
    "SUSPICIOUS_IP": 60,
    "MULTIPLE_FAILED_LOGINS": 65,
    "UNUSUAL_LOGIN_TIME": 45,
    "ACCOUNT_LOCKOUT": 55,
    "SUSPICIOUS_DEVICE": 50,
    "RATE_LIMIT_EXCEEDED": 40,
    "SUSPICIOUS_ACTIVITY": 55,
    "POTENTIAL_ATTACK": 85,
    "UNAUTHORIZED_ACCESS_ATTEMPT": 75,
    "SESSION_HIJACKING_ATTEMPT": 90,
    "PASSWORD_POLICY_VIOLATION": 35,
    "WEAK_PASSWORD_DETECTED": 30,
}
DEFAULT_RISK_SCORE = 50
ALERT_THRESHOLD = 80

_ALWAYS_CRITICAL = {"SESSION_HIJACKING_ATTEMPT", "POTENTIAL_ATTACK"}
_ALWAYS_HIGH = {"BRUTE_FORCE_ATTEMPT", "UNAUTHORIZED_ACCESS_ATTEMPT"}


def calculate_risk_score(event_type: str, details: Optional[dict] = None) -> int:
    details = details or {}
    score = BASE_RISK_SCORES.get(event_type, DEFAULT_RISK_SCORE)
    if (details.get("failed_attempts") or 0) > 10:
        score += 15
    if details.get("is_from_blocked_country"):
        score += 20
    if details.get("unusual_location"):
        score += 10
    if details.get("multiple_devices"):
        score += 5
    return min(score, 100)


def determine_severity(event_type: str, risk_score: int) -> str:
    if risk_score >= 80 or event_type in _ALWAYS_CRITICAL:
        return "CRITICAL"
    if risk_score >= 60 or event_type in _ALWAYS_HIGH:
        return "HIGH"
    if risk_score >= 40:
        return "MEDIUM"
    return "LOW"


class AuditStore(Protocol):
    def record_audit_log(self, entry: AuditLog) -> AuditLog: ...

    def record_security_event(self, event: SecurityEvent) -> SecurityEvent: ...


class AuditService:
    """Best-effort audit trail; storage failures are logged, never raised."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def log(
        self,
        action: str,
        resource: str,
        *,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_model: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        department: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Optional[AuditLog]:
        if role and parse_role(role) is None:
            logger.warning("audit_invalid_role", role=role)
            role = None
        entry = AuditLog.new(
            action,
            resource,
            user_id=user_id,
            resource_id=resource_id,
            resource_model=resource_model,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            error_message=error_message,
            department=department,
            role=role,
        )
        try:
            return self.store.record_audit_log(entry)
        except Exception as exc:
            logger.warning("audit_log_failed", action=action, error=str(exc))
            return None

    def security_event(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        risk_score = calculate_risk_score(event_type, details)
        event = SecurityEvent(
            id=str(uuid.uuid4()),
            type=event_type,
            severity=determine_severity(event_type, risk_score),
            risk_score=risk_score,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        if risk_score >= ALERT_THRESHOLD:
            event.alert_sent = True
            log_security_alert(
                event_type,
                risk_score,
                user_id=user_id,
                ip_address=ip_address,
                severity=event.severity,
            )
        try:
            return self.store.record_security_event(event)
        except Exception as exc:
            logger.warning("security_event_failed", event_type=event_type, error=str(exc))
            return None
