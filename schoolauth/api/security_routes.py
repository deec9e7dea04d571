from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from schoolauth.api.routes import (
    Principal,
    get_principal,
    request_context,
    restrict_to_enhanced,
)
from schoolauth.api.schemas import (
    PasswordPolicyRequest,
    PasswordPolicyResponse,
    PasswordPolicyRules,
    ResolveEventRequest,
    SecurityEventResponse,
    SecurityStatsResponse,
    ValidatePasswordRequest,
    dump,
)
from schoolauth.service.errors import BadRequestError, NotFoundError
from schoolauth.service.permissions import Role
from schoolauth.service.runtime import get_runtime
from schoolauth.service.security import DEFAULT_STATS_DAYS, SECURITY_ADMIN_ROLES

router = APIRouter(prefix="/api/v1/security", tags=["security"])


def _event_list(events) -> list:
    return [dump(SecurityEventResponse.from_event(e)) for e in events]


@router.get("/events")
async def list_security_events(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    event_type: Optional[str] = Query(None, alias="type", max_length=64),
    severity: Optional[str] = Query(None, max_length=16),
    user_id: Optional[str] = Query(None, alias="user", max_length=64),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    resolved: Optional[bool] = Query(None),
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    result = get_runtime().security.list_events(
        principal.user,
        page=page,
        limit=limit,
        event_type=event_type,
        severity=severity,
        user_id=user_id,
        resolved=resolved,
        since=start_date,
        until=end_date,
    )
    return {
        "status": "success",
        "results": len(result.events),
        "total": result.total,
        "totalPages": result.total_pages,
        "currentPage": result.page,
        "data": {"events": _event_list(result.events)},
    }


@router.get("/events/high-risk")
async def high_risk_events(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    events = get_runtime().security.high_risk_events(since=start_date, until=end_date)
    return {"status": "success", "results": len(events), "data": {"events": _event_list(events)}}


@router.patch("/events/{event_id}/resolve")
async def resolve_security_event(
    request: Request,
    event_id: str = Path(..., max_length=64),
    body: Optional[ResolveEventRequest] = None,
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    body = body or ResolveEventRequest()
    event = get_runtime().security.resolve(
        event_id,
        principal.user,
        action=body.action,
        notes=body.notes,
        ctx=request_context(request),
    )
    return {
        "status": "success",
        "message": "Security event resolved successfully",
        "data": {"event": dump(SecurityEventResponse.from_event(event))},
    }


@router.get("/stats")
async def security_stats(
    timeframe: int = Query(DEFAULT_STATS_DAYS, ge=1, le=365),
    principal: Principal = Depends(
        restrict_to_enhanced(Role.SUPER_ADMIN, Role.SCHOOL_ADMIN, Role.IT_ADMIN)
    ),
):
    stats = get_runtime().security.stats(timeframe)
    return {"status": "success", "data": dump(SecurityStatsResponse(**stats))}


@router.get("/password-policies")
async def list_password_policies(
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    policies = get_runtime().policies.list_policies(active_only=True)
    return {
        "status": "success",
        "results": len(policies),
        "data": {"policies": [dump(PasswordPolicyResponse.from_policy(p)) for p in policies]},
    }


@router.post("/password-policies", status_code=201)
async def create_password_policy(
    body: PasswordPolicyRequest,
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    fields = body.policy_fields()
    name = fields.pop("name", None)
    if not name:
        raise BadRequestError("Please provide a policy name")
    policy = get_runtime().policies.create_policy(name, created_by=principal.user.id, **fields)
    return {
        "status": "success",
        "data": {"policy": dump(PasswordPolicyResponse.from_policy(policy))},
    }


@router.patch("/password-policies/{policy_id}")
async def update_password_policy(
    body: PasswordPolicyRequest,
    policy_id: str = Path(..., max_length=64),
    principal: Principal = Depends(restrict_to_enhanced(*SECURITY_ADMIN_ROLES)),
):
    policy = get_runtime().policies.update_policy(policy_id, **body.policy_fields())
    return {
        "status": "success",
        "data": {"policy": dump(PasswordPolicyResponse.from_policy(policy))},
    }


@router.post("/validate-password")
async def validate_password(
    body: ValidatePasswordRequest, principal: Principal = Depends(get_principal)
):
    """Dry-run a password against the applicable policy without storing anything."""
    if not body.password:
        raise BadRequestError("Please provide password")
    runtime = get_runtime()
    user = None
    if body.user_id:
        user = runtime.store.get_user(body.user_id)
        if not user:
            raise NotFoundError("User not found")
    result, policy = runtime.policies.check_candidate(body.password, user)
    return {
        "status": "success",
        "data": {
            "validation": {"isValid": result.is_valid, "errors": result.errors},
            "policy": dump(PasswordPolicyRules.from_policy(policy)),
        },
    }
