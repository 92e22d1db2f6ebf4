"""
Authentication API Routes
Current user, effective permissions and self-service role selection
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..auth.dependencies import current_user, get_container
from ..exceptions import AuthorizationError, ValidationError
from ..models import LocalUser
from ..services.sync import SELF_SELECTABLE_ROLES
from ..utils.logging_security import sanitize_id_for_log
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


class RoleSelectionRequest(BaseModel):
    role: str


@router.get("/me")
async def get_me(request: Request, user: LocalUser = Depends(current_user)) -> Dict[str, Any]:
    """Return the authenticated user's local record"""
    return {"success": True, "data": user.public_dict()}


@router.get("/permissions")
async def get_permissions(request: Request, user: LocalUser = Depends(current_user)) -> Dict[str, Any]:
    """Return the effective permissions of the caller's role"""
    rbac = get_container(request).rbac
    return {
        "success": True,
        "data": {"role": user.role, "permissions": sorted(rbac.get_effective_permissions(user.role))},
    }


@router.post("/select-role")
async def select_role(
    body: RoleSelectionRequest, request: Request, user: LocalUser = Depends(current_user)
) -> Dict[str, Any]:
    """
    Let a user pick patient or professional during onboarding.

    Choosing professional puts the account into pending_validation until an
    admin approves the profile.
    """
    if body.role not in SELF_SELECTABLE_ROLES:
        raise ValidationError(f"Invalid role: {body.role}. Must be one of: {', '.join(SELF_SELECTABLE_ROLES)}")
    if user.role not in SELF_SELECTABLE_ROLES:
        raise AuthorizationError("Administrative accounts cannot select a role")

    container = get_container(request)
    result = await container.sync.change_role(user.id, body.role, build_request_context(request), actor_id=user.id)
    logger.info(f"User {sanitize_id_for_log(user.id)} selected role {body.role}")

    updated = await container.sync.users.get_user(user.id)
    return {
        "success": True,
        "message": "Role updated",
        "data": {**result, "user": updated.public_dict() if updated else None},
    }
