from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from schoolauth.api.routes import (
    Principal,
    get_principal,
    request_context,
    restrict_to_enhanced,
)
from schoolauth.api.schemas import SessionResponse, SessionStatsResponse, dump
from schoolauth.logging import get_logger
from schoolauth.service.errors import BadRequestError, ForbiddenError, NotFoundError
from schoolauth.service.permissions import STAFF_ROLES, Role
from schoolauth.service.runtime import get_runtime
from schoolauth.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])

_SESSION_ADMINS = (Role.SUPER_ADMIN, Role.IT_ADMIN)


def _session_list(sessions: List[Session]) -> dict:
    return {
        "status": "success",
        "results": len(sessions),
        "data": {"sessions": [dump(SessionResponse.from_session(s)) for s in sessions]},
    }


def _audit_session_end(principal: Principal, request: Request, **fields) -> None:
    ctx = request_context(request)
    get_runtime().audit.log(
        "SESSION_END",
        "SESSION",
        user_id=principal.user.id,
        department=principal.user.department,
        role=principal.user.role,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        **fields,
    )


@router.get("/my-sessions")
async def my_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _session_list(runtime.sessions.list_user_sessions(principal.user.id))


@router.get("/all")
async def all_active_sessions(
    principal: Principal = Depends(restrict_to_enhanced(*_SESSION_ADMINS)),
):
    return _session_list(get_runtime().sessions.list_active_sessions())


@router.get("/staff")
async def staff_sessions(
    principal: Principal = Depends(
        restrict_to_enhanced(Role.SUPER_ADMIN, Role.IT_ADMIN, Role.SCHOOL_ADMIN)
    ),
):
    """Active sessions of teachers and administrators only."""
    runtime = get_runtime()
    staff = {role.value for role in STAFF_ROLES}
    roles: Dict[str, Optional[str]] = {}
    filtered = []
    for session in runtime.sessions.list_active_sessions():
        if session.user_id not in roles:
            owner = runtime.store.get_user(session.user_id)
            roles[session.user_id] = owner.role if owner else None
        if roles[session.user_id] in staff:
            filtered.append(session)
    return _session_list(filtered)


@router.get("/stats")
async def session_stats(
    principal: Principal = Depends(
        restrict_to_enhanced(Role.SUPER_ADMIN, Role.SCHOOL_ADMIN, Role.IT_ADMIN)
    ),
):
    stats = get_runtime().sessions.stats()
    body = SessionStatsResponse(
        total_active=stats["total_active"],
        total_expired=stats["total_expired"],
        department_stats=stats["department_stats"],
        recent_sessions=[SessionResponse.from_session(s) for s in stats["recent_sessions"]],
    )
    return {"status": "success", "data": dump(body)}


@router.get("")
async def sessions_for_user(
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    principal: Principal = Depends(restrict_to_enhanced(*_SESSION_ADMINS)),
):
    if not user_id:
        raise BadRequestError("userId is required")
    return _session_list(get_runtime().sessions.list_user_sessions(user_id))


@router.delete("/my-sessions/all")
async def invalidate_my_sessions(request: Request, principal: Principal = Depends(get_principal)):
    count = get_runtime().sessions.invalidate_user_sessions(principal.user.id)
    _audit_session_end(
        principal,
        request,
        details={"action": "invalidate_all_sessions", "sessions_invalidated": count},
    )
    return {"status": "success", "message": f"{count} sessions invalidated successfully"}


@router.delete("/user/{user_id}/all")
async def invalidate_user_sessions(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(restrict_to_enhanced(*_SESSION_ADMINS)),
):
    count = get_runtime().sessions.invalidate_user_sessions(user_id)
    _audit_session_end(
        principal,
        request,
        details={
            "target_user": user_id,
            "action": "admin_invalidate_all_sessions",
            "sessions_invalidated": count,
        },
    )
    return {"status": "success", "message": f"{count} sessions invalidated successfully"}


@router.delete("/expired/clean")
async def clean_expired_sessions(
    principal: Principal = Depends(restrict_to_enhanced(*_SESSION_ADMINS)),
):
    count = get_runtime().sessions.clean_expired_sessions()
    return {"status": "success", "message": f"{count} expired sessions cleaned"}


@router.delete("/{session_id}")
async def invalidate_session(
    request: Request,
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    session = runtime.sessions.get_session(session_id)
    if not session:
        raise NotFoundError("Session not found")
    role = principal.user.role
    if role not in (Role.SUPER_ADMIN.value, Role.IT_ADMIN.value) and (
        session.user_id != principal.user.id
    ):
        raise ForbiddenError("You can only invalidate your own sessions")
    runtime.sessions.invalidate(session)
    _audit_session_end(
        principal,
        request,
        resource_id=session.id,
        details={"invalidated_by": principal.user.id, "session_id": session.id},
    )
    return {"status": "success", "message": "Session invalidated successfully"}
