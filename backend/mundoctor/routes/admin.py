"""
Admin API Routes
Audit log queries, audit retention and user role management
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from ..auth.dependencies import get_container
from ..middleware.audit import AuditTrail, path_param
from ..middleware.authorization import RequirePermission
from ..models import AuditAction, AuditFilters, LocalUser, Pagination, RiskLevel
from ..rbac import Permission
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Administration"])

require_audit_access = RequirePermission(Permission.ADMIN_AUDIT)


class RoleChangeRequest(BaseModel):
    role: str


def audit_filters(
    user_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
    risk_level: Optional[RiskLevel] = Query(None),
    success: Optional[bool] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
) -> AuditFilters:
    return AuditFilters(
        user_id=user_id,
        action=action,
        resource=resource,
        risk_level=risk_level,
        success=success,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/audit-logs")
async def get_audit_logs(
    request: Request,
    filters: AuditFilters = Depends(audit_filters),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: LocalUser = Depends(require_audit_access),
) -> Dict[str, Any]:
    """List audit events, newest first"""
    container = get_container(request)
    pagination = Pagination(limit=limit, offset=offset)
    logs = await container.audit_repository.get_audit_logs(filters, pagination)
    total = await container.audit_repository.count_audit_logs(filters)

    container.audit.log_from_request(
        request,
        AuditAction.AUDIT_LOGS_VIEWED,
        "audit_logs",
        details={"filters": filters.model_dump(mode="json", exclude_none=True), "returned": len(logs)},
        risk_level=RiskLevel.MEDIUM,
    )
    return {
        "success": True,
        "data": {
            "logs": [entry.model_dump(mode="json") for entry in logs],
            "total": total,
            "limit": pagination.limit,
            "offset": pagination.offset,
        },
    }


@router.get("/audit-logs/stats")
async def get_audit_stats(
    request: Request,
    filters: AuditFilters = Depends(audit_filters),
    user: LocalUser = Depends(require_audit_access),
) -> Dict[str, Any]:
    """Aggregate counters over the filtered audit window"""
    stats = await get_container(request).audit_repository.get_audit_stats(filters)
    return {"success": True, "data": stats.model_dump()}


@router.post("/audit-logs/cleanup")
async def cleanup_audit_logs(request: Request, user: LocalUser = Depends(require_audit_access)) -> Dict[str, Any]:
    """Delete low and medium risk events older than the retention horizon"""
    container = get_container(request)
    deleted = await container.cleanup_audit_logs()
    return {
        "success": True,
        "data": {"deleted": deleted, "retention_days": container.settings.audit_retention_days},
    }


@router.put(
    "/users/{user_id}/role",
    dependencies=[Depends(AuditTrail(AuditAction.ADMIN_ACCESS, "user_role", RiskLevel.HIGH, path_param("user_id")))],
)
async def change_user_role(
    user_id: str,
    body: RoleChangeRequest,
    request: Request,
    user: LocalUser = Depends(RequirePermission([Permission.ADMIN_USERS, Permission.USERS_WRITE], strict=True)),
) -> Dict[str, Any]:
    """Change any user's role and push it to the identity provider"""
    result = await get_container(request).sync.change_role(
        user_id, body.role, build_request_context(request), actor_id=user.id
    )
    return {"success": True, "message": "Role updated", "data": {"user_id": user_id, **result}}
