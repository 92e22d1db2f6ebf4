"""
Mundoctor Per-User Rate Limiting
Sliding-window request budget per authenticated user, scaled by role
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Sequence, Tuple

from fastapi import Depends, Request, Response

from ..auth.dependencies import current_user, get_container
from ..exceptions import RateLimitError
from ..models import AuditAction, LocalUser, RiskLevel
from ..rbac import UserRole
from ..utils.logging_security import sanitize_id_for_log
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)


@dataclass
class RequestWindow:
    """Timestamps of a user's requests inside the current window"""

    timestamps: Deque[float] = field(default_factory=deque)
    last_seen: float = 0.0


class UserRateLimitStore:
    """In-memory sliding-window store with periodic cleanup of idle users"""

    def __init__(self, clock: Callable[[], float] = time.time, cleanup_interval: float = 300):
        self.windows: Dict[str, RequestWindow] = {}
        self.clock = clock
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = clock()

    def hit(self, user_id: str, limit: int, window_seconds: float) -> Tuple[bool, int, float]:
        """
        Record a request if the user is under ``limit``.

        Returns:
            (allowed, requests in window, seconds until the oldest request leaves the window)
        """
        now = self.clock()
        self.cleanup_old_entries(window_seconds)

        window = self.windows.setdefault(user_id, RequestWindow())
        window.last_seen = now
        while window.timestamps and window.timestamps[0] <= now - window_seconds:
            window.timestamps.popleft()

        if len(window.timestamps) >= limit:
            retry_after = window.timestamps[0] + window_seconds - now
            return False, len(window.timestamps), max(retry_after, 0.0)

        window.timestamps.append(now)
        return True, len(window.timestamps), 0.0

    def cleanup_old_entries(self, window_seconds: float) -> None:
        now = self.clock()
        if now - self.last_cleanup < self.cleanup_interval:
            return

        idle = [user_id for user_id, w in self.windows.items() if now - w.last_seen > window_seconds]
        for user_id in idle:
            del self.windows[user_id]
        self.last_cleanup = now
        if idle:
            logger.debug(f"Rate limit cleanup: removed {len(idle)} idle users")


class UserRateLimit:
    """
    Per-user request limit as a route dependency.

    Professionals get ``max_requests * professional_scaling``; roles in
    ``bypass_roles`` are never limited. Exceeding the limit writes a
    RATE_LIMITED audit event and raises RateLimitError (429).
    """

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        professional_scaling: Optional[float] = None,
        bypass_roles: Sequence[str] = (UserRole.ADMIN.value,),
        store: Optional[UserRateLimitStore] = None,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.professional_scaling = professional_scaling
        self.bypass_roles = tuple(bypass_roles)
        self.store = store or UserRateLimitStore()

    def effective_limit(self, role: str, max_requests: int, scaling: float) -> int:
        if role == UserRole.PROFESSIONAL.value:
            return int(max_requests * scaling)
        return max_requests

    async def __call__(
        self, request: Request, response: Response, user: LocalUser = Depends(current_user)
    ) -> LocalUser:
        if user.role in self.bypass_roles:
            logger.debug(f"Rate limiting bypassed for {sanitize_id_for_log(user.id)} ({user.role})")
            return user

        container = get_container(request)
        settings = container.settings
        window = self.window_seconds or settings.rate_limit_window_seconds
        limit = self.effective_limit(
            user.role,
            self.max_requests or settings.rate_limit_max_requests,
            self.professional_scaling or settings.rate_limit_professional_scaling,
        )

        allowed, count, wait = self.store.hit(user.id, limit, window)
        if not allowed:
            retry_after = max(1, int(wait + 0.999))
            logger.warning(
                f"Rate limit exceeded for {sanitize_id_for_log(user.id)} on {request.url.path}",
                extra={"request_count": count, "limit": limit, "retry_after": retry_after},
            )
            container.audit.log(
                AuditAction.RATE_LIMITED,
                "endpoint",
                user_id=user.id,
                resource_id=request.url.path,
                details={"request_count": count, "limit": limit, "window_seconds": window, "retry_after": retry_after},
                risk_level=RiskLevel.MEDIUM,
                success=False,
                context=build_request_context(request),
            )
            raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(limit - count, 0))
        return user
