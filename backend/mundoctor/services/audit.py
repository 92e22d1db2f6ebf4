"""
Mundoctor Audit Pipeline
Fans audit events out to sinks without ever failing the operation being audited
"""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Set, Union

from fastapi import Request

from ..logging_config import ALERT_LOGGER_NAME
from ..models import AuditAction, AuditEvent, RequestContext, RiskLevel
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Destination for audit events"""

    async def write(self, event: AuditEvent) -> None: ...


class InMemoryAuditSink:
    """Bounded in-process sink, used for local development and tests"""

    def __init__(self, max_events: int = 10000):
        self.events: Deque[AuditEvent] = deque(maxlen=max_events)

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def find(self, action: Union[AuditAction, str]) -> List[AuditEvent]:
        value = action.value if isinstance(action, AuditAction) else action
        return [e for e in self.events if e.action == value]

    def clear(self) -> None:
        self.events.clear()


class AuditPipeline:
    """
    Audit event dispatcher shared by every component.

    ``record`` awaits all sinks and swallows their failures; ``emit`` schedules
    ``record`` on the running loop and returns immediately. Pending emissions
    are tracked so shutdown and tests can ``flush`` them.
    """

    def __init__(self, sinks: Optional[List[AuditSink]] = None, alert_logger: Optional[logging.Logger] = None):
        self._sinks: List[AuditSink] = list(sinks or [])
        self._pending: Set["asyncio.Task[bool]"] = set()
        self.alert_logger = alert_logger or logging.getLogger(ALERT_LOGGER_NAME)

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def record(self, event: AuditEvent) -> bool:
        """Write an event to every sink. Returns False if any sink failed."""
        if event.is_elevated:
            self._alert(event)

        ok = True
        for sink in self._sinks:
            try:
                await sink.write(event)
            except Exception as e:
                ok = False
                logger.error(
                    f"Audit sink {type(sink).__name__} failed to write {event.action}: {e}",
                    extra={"audit_action": event.action, "audit_user_id": event.user_id},
                )
        return ok

    def emit(self, event: AuditEvent) -> None:
        """Schedule ``record`` without awaiting it"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"No running event loop, audit event {event.action} dropped")
            return

        task = loop.create_task(self.record(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log(
        self,
        action: Union[AuditAction, str],
        resource: str,
        *,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        risk_level: RiskLevel = RiskLevel.LOW,
        success: bool = True,
        error_message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEvent:
        """Build an event from keyword fields, emit it and return it"""
        event = AuditEvent(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=details or {},
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            risk_level=risk_level,
            success=success,
            error_message=error_message,
        )
        self.emit(event)
        return event

    def log_from_request(
        self, request: Request, action: Union[AuditAction, str], resource: str, **fields: Any
    ) -> AuditEvent:
        """``log`` with ip, user agent and the authenticated user taken from the request"""
        user = getattr(request.state, "user", None)
        fields.setdefault("user_id", getattr(user, "id", None))
        return self.log(action, resource, context=build_request_context(request), **fields)

    async def flush(self) -> None:
        """Wait until every emitted event has been recorded"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _alert(self, event: AuditEvent) -> None:
        self.alert_logger.warning(
            f"High-risk audit event: {event.action}",
            extra={
                "audit_action": event.action,
                "audit_resource": event.resource,
                "audit_resource_id": event.resource_id,
                "audit_user_id": event.user_id,
                "risk_level": event.risk_level.value,
                "success": event.success,
                "ip_address": event.ip_address,
                "error_message": event.error_message,
            },
        )
