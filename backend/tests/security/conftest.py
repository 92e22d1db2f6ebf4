"""
Fixtures for authorization scenarios.

Adds a set of guarded routes to the application, one per policy
configuration, so each policy can be exercised through the full
dependency chain (verifier, sync engine, policy, error handlers).
"""

from datetime import datetime
from typing import Any, Dict, List

import pytest
from fastapi import APIRouter, Depends, FastAPI, Request

from mundoctor.middleware.authorization import (
    AutoPermission,
    RequireActiveStatus,
    RequireCompleteProfile,
    RequireContextualPermission,
    RequireOwnershipOrPermission,
    RequirePermission,
    RequireRole,
    RequireTimeBasedPermission,
)
from mundoctor.middleware.rate_limiting import UserRateLimit
from mundoctor.models import LocalUser
from mundoctor.rbac import Permission

WEDNESDAY_NOON = datetime(2026, 6, 3, 12, 0)
SATURDAY_NOON = datetime(2026, 6, 6, 12, 0)
WEDNESDAY_EVENING = datetime(2026, 6, 3, 20, 0)

LINKED_PATIENT_ID = "patient_linked"


def _reject_everything(user: LocalUser, permissions: List[str], request: Request) -> bool:
    return False


def _broken_check(user: LocalUser, permissions: List[str], request: Request) -> bool:
    raise RuntimeError("permission backend unavailable")


async def _treats_patient(user: LocalUser, owner_id: str, request: Request) -> bool:
    return user.role == "professional" and owner_id == LINKED_PATIENT_ID


def _system_permissions(request: Request, user: LocalUser) -> List[Permission]:
    if request.path_params.get("kind") == "system":
        return [Permission.ADMIN_SYSTEM]
    return []


def _ok(user: LocalUser) -> Dict[str, Any]:
    return {"success": True, "user_id": user.id, "role": user.role}


def build_guarded_router() -> APIRouter:
    router = APIRouter()

    @router.get("/api/guarded/admin-only")
    async def admin_only(user: LocalUser = Depends(RequireRole(["admin"]))):
        return _ok(user)

    @router.get("/api/guarded/professional-area")
    async def professional_area(user: LocalUser = Depends(RequireRole(["professional"]))):
        return _ok(user)

    @router.get("/api/guarded/professional-strict")
    async def professional_strict(user: LocalUser = Depends(RequireRole(["professional"], strict=True))):
        return _ok(user)

    @router.get("/api/guarded/read-users")
    async def read_users(user: LocalUser = Depends(RequirePermission(Permission.USERS_READ))):
        return _ok(user)

    @router.get("/api/guarded/all-of")
    async def all_of(
        user: LocalUser = Depends(RequirePermission([Permission.PROFILE_READ, Permission.ADMIN_SYSTEM], strict=True))
    ):
        return _ok(user)

    @router.get("/api/guarded/custom-denied")
    async def custom_denied(
        user: LocalUser = Depends(RequirePermission(Permission.PROFILE_READ, custom_check=_reject_everything))
    ):
        return _ok(user)

    @router.get("/api/guarded/custom-broken")
    async def custom_broken(
        user: LocalUser = Depends(RequirePermission(Permission.PROFILE_READ, custom_check=_broken_check))
    ):
        return _ok(user)

    @router.get("/api/users")
    async def list_users(user: LocalUser = Depends(AutoPermission())):
        return _ok(user)

    @router.put("/api/users/{user_id}")
    async def update_user(user_id: str, user: LocalUser = Depends(AutoPermission())):
        return _ok(user)

    @router.get("/api/guarded/unmapped")
    async def unmapped(user: LocalUser = Depends(AutoPermission())):
        return _ok(user)

    @router.get("/api/guarded/unmapped-allowed")
    async def unmapped_allowed(user: LocalUser = Depends(AutoPermission(default_policy="allow"))):
        return _ok(user)

    @router.get("/api/guarded/unmapped-fallback")
    async def unmapped_fallback(
        user: LocalUser = Depends(AutoPermission(fallback_permissions=[Permission.SCHEDULES_WRITE]))
    ):
        return _ok(user)

    @router.get("/api/guarded/patients/{patient_id}/records")
    async def patient_records(
        patient_id: str,
        user: LocalUser = Depends(RequireOwnershipOrPermission("patient_id", relationship_check=_treats_patient)),
    ):
        return _ok(user)

    @router.get("/api/guarded/records")
    async def records_by_query(user: LocalUser = Depends(RequireOwnershipOrPermission("owner_id"))):
        return _ok(user)

    @router.get("/api/guarded/active-only")
    async def active_only(user: LocalUser = Depends(RequireActiveStatus())):
        return _ok(user)

    @router.get("/api/guarded/complete-profile")
    async def complete_profile(user: LocalUser = Depends(RequireCompleteProfile())):
        return _ok(user)

    @router.get("/api/guarded/office-hours")
    async def office_hours(
        user: LocalUser = Depends(
            RequireTimeBasedPermission(
                Permission.PROFILE_READ, allowed_hours=(9, 17), allowed_days=(1, 5), clock=lambda: WEDNESDAY_NOON
            )
        )
    ):
        return _ok(user)

    @router.get("/api/guarded/weekend")
    async def weekend(
        user: LocalUser = Depends(
            RequireTimeBasedPermission(Permission.PROFILE_READ, allowed_days=(1, 5), clock=lambda: SATURDAY_NOON)
        )
    ):
        return _ok(user)

    @router.get("/api/guarded/after-hours")
    async def after_hours(
        user: LocalUser = Depends(
            RequireTimeBasedPermission(Permission.PROFILE_READ, allowed_hours=(9, 17), clock=lambda: WEDNESDAY_EVENING)
        )
    ):
        return _ok(user)

    @router.get("/api/guarded/contextual/{kind}")
    async def contextual(kind: str, user: LocalUser = Depends(RequireContextualPermission(_system_permissions))):
        return _ok(user)

    @router.get("/api/guarded/limited")
    async def limited(user: LocalUser = Depends(UserRateLimit(window_seconds=60, max_requests=2))):
        return _ok(user)

    return router


@pytest.fixture
def guarded_app(app: FastAPI) -> FastAPI:
    """Application with the guarded policy routes mounted."""
    app.include_router(build_guarded_router())
    return app
