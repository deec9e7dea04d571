from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from schoolauth.logging import get_logger
from schoolauth.service.audit import AuditService
from schoolauth.service.errors import BadRequestError, NotFoundError
from schoolauth.service.permissions import Role, parse_role
from schoolauth.service.sessions import RequestContext
from schoolauth.storage.models import HIGH_RISK_SEVERITIES, SecurityEvent, User, utcnow

logger = get_logger(__name__)

SECURITY_ADMIN_ROLES = (Role.SUPER_ADMIN, Role.IT_ADMIN)
SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
RESPONSE_ACTIONS = ("BLOCK_IP", "LOCK_ACCOUNT", "NOTIFY_ADMIN", "LOG_ONLY", "WHITELIST")
HIGH_RISK_LIMIT = 50
TOP_THREAT_TYPES = 10
DEFAULT_STATS_DAYS = 30


class SecurityEventStore(Protocol):
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
    ) -> List[SecurityEvent]: ...

    def count_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int: ...

    def resolve_security_event(
        self,
        event_id: str,
        *,
        resolved_by: str,
        at: datetime,
        action: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]: ...

    def security_event_stats(self, since: datetime) -> Dict[str, Any]: ...


@dataclass
class EventPage:
    events: List[SecurityEvent]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Date-only query values parse without a zone; read them as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def summarize_event_groups(groups: List[Dict[str, Any]]) -> tuple[list, list]:
    """Fold per (severity, type) counts into a severity breakdown and top types.

    The breakdown lists the most severe level first; the top types are ranked
    by count across all severities, with the mean risk weighted by count.
    """
    breakdown = []
    for severity in SEVERITIES:
        rows = [g for g in groups if g["severity"] == severity]
        if not rows:
            continue
        rows.sort(key=lambda g: (-g["count"], g["type"]))
        breakdown.append(
            {
                "severity": severity,
                "events": [
                    {
                        "type": g["type"],
                        "count": g["count"],
                        "avg_risk_score": round(g["avg_risk_score"], 2),
                    }
                    for g in rows
                ],
                "total_count": sum(g["count"] for g in rows),
            }
        )

    by_type: Dict[str, List[float]] = {}
    for g in groups:
        count, weighted = by_type.get(g["type"], [0, 0.0])
        by_type[g["type"]] = [count + g["count"], weighted + g["count"] * g["avg_risk_score"]]
    top_types = [
        {"type": event_type, "count": int(count), "avg_risk_score": round(weighted / count, 2)}
        for event_type, (count, weighted) in by_type.items()
        if count
    ]
    top_types.sort(key=lambda t: (-t["count"], t["type"]))
    return breakdown, top_types[:TOP_THREAT_TYPES]


class SecurityEventService:
    """Review, triage and summary of recorded security events."""

    def __init__(self, store: SecurityEventStore, audit: AuditService) -> None:
        self.store = store
        self.audit = audit

    def list_events(
        self,
        viewer: User,
        *,
        page: int = 1,
        limit: int = 20,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> EventPage:
        if severity and severity not in SEVERITIES:
            raise BadRequestError(f"Invalid severity: {severity}")
        # Anyone outside the security admin roles only sees events about themselves
        if parse_role(viewer.role) not in SECURITY_ADMIN_ROLES:
            user_id = viewer.id
        filters = dict(
            event_type=event_type,
            severities=[severity] if severity else None,
            user_id=user_id,
            resolved=resolved,
            since=_aware(since),
            until=_aware(until),
        )
        total = self.store.count_security_events(**filters)
        events = self.store.list_security_events(
            **filters, limit=limit, offset=(page - 1) * limit
        )
        return EventPage(events=events, total=total, page=page, limit=limit)

    def high_risk_events(
        self, *, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[SecurityEvent]:
        """Unresolved HIGH and CRITICAL events, riskiest first."""
        return self.store.list_security_events(
            severities=HIGH_RISK_SEVERITIES,
            resolved=False,
            since=_aware(since),
            until=_aware(until),
            by_risk=True,
            limit=HIGH_RISK_LIMIT,
        )

    def resolve(
        self,
        event_id: str,
        actor: User,
        *,
        action: Optional[str] = None,
        notes: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> SecurityEvent:
        if action and action not in RESPONSE_ACTIONS:
            raise BadRequestError(f"Invalid action: {action}")
        now = utcnow()
        entry = None
        if action:
            entry = {
                "action": action,
                "performed_by": actor.id,
                "performed_at": now.isoformat(),
                "notes": notes,
            }
        event = self.store.resolve_security_event(
            event_id, resolved_by=actor.id, at=now, action=entry
        )
        if not event:
            raise NotFoundError("Security event not found")

        ctx = ctx or RequestContext()
        self.audit.log(
            "SECURITY_EVENT_RESOLVED",
            "SECURITY",
            user_id=actor.id,
            resource_id=event.id,
            resource_model="SecurityEvent",
            details={"event_type": event.type, "action": action, "notes": notes},
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            department=actor.department,
            role=actor.role,
        )
        logger.info(
            "security_event_resolved", event_id=event.id, event_type=event.type, action=action
        )
        return event

    def stats(self, timeframe_days: int = DEFAULT_STATS_DAYS) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=timeframe_days)
        raw = self.store.security_event_stats(since)
        breakdown, top_types = summarize_event_groups(raw["groups"])
        return {
            "timeframe": timeframe_days,
            "total_events": raw["total_events"],
            "unresolved_high_risk": raw["unresolved_high_risk"],
            "severity_breakdown": breakdown,
            "top_threat_types": top_types,
        }


__all__ = [
    "DEFAULT_STATS_DAYS",
    "RESPONSE_ACTIONS",
    "SECURITY_ADMIN_ROLES",
    "SEVERITIES",
    "EventPage",
    "SecurityEventService",
    "summarize_event_groups",
]
