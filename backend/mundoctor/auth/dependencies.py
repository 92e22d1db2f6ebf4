"""
Authentication dependencies for FastAPI routes

``require_auth`` and ``optional_auth`` populate ``request.state.auth`` with the
verified Principal; ``current_user`` additionally resolves the local user
(auto-syncing on first access) and sets ``request.state.user``.
"""

import logging
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Request

from ..exceptions import AppError
from ..models import AuditAction, LocalUser, RiskLevel
from ..utils.logging_security import sanitize_id_for_log
from ..utils.request import build_request_context
from .provider import Principal

if TYPE_CHECKING:
    from ..container import SecurityContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> "SecurityContainer":
    return request.app.state.container


async def require_auth(request: Request) -> Principal:
    """Verify the bearer credential or fail the request with 401"""
    container = get_container(request)
    principal = await container.verifier.verify(
        request.headers.get("authorization"), build_request_context(request)
    )
    request.state.auth = principal
    return principal


async def optional_auth(request: Request) -> Optional[Principal]:
    """Attach a Principal when the credential verifies, otherwise None. Never fails the request."""
    container = get_container(request)
    principal: Optional[Principal] = None
    if request.headers.get("authorization"):
        try:
            principal = await container.verifier.verify(
                request.headers.get("authorization"),
                build_request_context(request),
                audit_failures=False,
            )
        except AppError as e:
            logger.debug(f"Optional authentication ignored invalid credential: {e.message}")
    request.state.auth = principal
    return principal


async def current_user(request: Request, principal: Principal = Depends(require_auth)) -> LocalUser:
    """Resolve the authenticated principal to its local user record"""
    container = get_container(request)
    context = build_request_context(request)
    user = await container.sync.resolve_user(principal, context)
    request.state.user = user

    logger.debug(f"User {sanitize_id_for_log(user.id)} attached with role {user.role}")
    container.audit.log(
        AuditAction.USER_ACCESS,
        "endpoint",
        user_id=user.id,
        resource_id=request.url.path,
        details={"method": request.method, "role": user.role, "status": user.status},
        risk_level=RiskLevel.LOW,
        context=context,
    )
    return user
