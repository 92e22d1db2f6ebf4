"""
Request-scoped audit trail

A route opts in with ``Depends(AuditTrail(...))``; the dependency stores what
to record on ``request.state`` and ``AuditMiddleware`` writes the event once
the final response status is known (``success = status < 400``).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..models import AuditAction, RiskLevel
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)

ResourceIdExtractor = Callable[[Request], Optional[str]]

AUDIT_STATE_KEY = "audit_trail"


def path_param(name: str = "id") -> ResourceIdExtractor:
    """Extractor reading the resource id from a path parameter"""

    def extract(request: Request) -> Optional[str]:
        return request.path_params.get(name)

    return extract


@dataclass
class AuditTrailSpec:
    action: str
    resource: str
    risk_level: RiskLevel = RiskLevel.LOW
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class AuditTrail:
    """Route dependency marking the request for auditing once it completes"""

    def __init__(
        self,
        action: Union[AuditAction, str],
        resource: str,
        risk_level: RiskLevel = RiskLevel.LOW,
        resource_id: Optional[ResourceIdExtractor] = None,
    ):
        self.action = action.value if isinstance(action, AuditAction) else action
        self.resource = resource
        self.risk_level = risk_level
        self.resource_id = resource_id or path_param("id")

    async def __call__(self, request: Request) -> AuditTrailSpec:
        trail = AuditTrailSpec(
            action=self.action,
            resource=self.resource,
            risk_level=self.risk_level,
            resource_id=self.resource_id(request),
        )
        setattr(request.state, AUDIT_STATE_KEY, trail)
        return trail


class AuditMiddleware(BaseHTTPMiddleware):
    """Writes the audit event for routes that declared an AuditTrail"""

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500)
            raise

        self._record(request, response.status_code)
        return response

    def _record(self, request: Request, status_code: int) -> None:
        trail: Optional[AuditTrailSpec] = getattr(request.state, AUDIT_STATE_KEY, None)
        if trail is None:
            return

        container = getattr(request.app.state, "container", None)
        if container is None:
            logger.error(f"No security container configured, audit trail for {trail.action} dropped")
            return

        user = getattr(request.state, "user", None)
        auth = getattr(request.state, "auth", None)
        user_id = getattr(user, "id", None) or getattr(auth, "user_id", None)
        container.audit.log(
            trail.action,
            trail.resource,
            user_id=user_id,
            resource_id=trail.resource_id,
            details={**trail.details, "method": request.method, "path": request.url.path, "status_code": status_code},
            risk_level=trail.risk_level,
            success=status_code < 400,
            error_message=None if status_code < 400 else f"HTTP {status_code}",
            context=build_request_context(request),
        )
