"""
Identity Provider Webhooks
Signature verification, event dispatch and the per-event retry coordinator
"""

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from pydantic import BaseModel, Field

from ..auth.provider import ProviderProfile
from ..exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WebhookProcessingError,
    WebhookVerificationError,
)
from ..models import AuditAction, RequestContext, RiskLevel
from ..utils.logging_security import sanitize_error_message_for_log, sanitize_for_log, sanitize_id_for_log
from .audit import AuditPipeline
from .sync import SyncEngine

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

HEADER_PREFIXES = ("svix-", "webhook-", "event-")
SIGNATURE_VERSION = "v1"

EXPECTED_ERROR_MARKERS = ("already exists", "not found")


def is_expected_webhook_error(error: BaseException) -> bool:
    """
    Errors that mean the event has nothing left to do (duplicate delivery,
    deleted user). They are never retried and are acknowledged with 200.
    """
    if isinstance(error, WebhookProcessingError):
        error = error.original
    if isinstance(error, (ConflictError, NotFoundError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in EXPECTED_ERROR_MARKERS)


# ----------------------------------------------------------------------
# Retry state
# ----------------------------------------------------------------------


@dataclass
class RetryRecord:
    """In-memory retry bookkeeping for one provider event"""

    event_id: str
    event_type: str
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("last_attempt", "next_retry_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class RetryStateStore(Protocol):
    """Storage for retry records, keyed by event id"""

    def get(self, event_id: str) -> Optional[RetryRecord]: ...

    def set(self, record: RetryRecord) -> None: ...

    def delete(self, event_id: str) -> None: ...

    def items(self) -> List[RetryRecord]: ...

    def sweep(self, max_age_seconds: float) -> int: ...


class InMemoryRetryStore:
    """Process-local retry store; state does not survive a restart"""

    def __init__(self) -> None:
        self._records: Dict[str, RetryRecord] = {}

    def get(self, event_id: str) -> Optional[RetryRecord]:
        return self._records.get(event_id)

    def set(self, record: RetryRecord) -> None:
        self._records[record.event_id] = record

    def delete(self, event_id: str) -> None:
        self._records.pop(event_id, None)

    def items(self) -> List[RetryRecord]:
        return list(self._records.values())

    def sweep(self, max_age_seconds: float) -> int:
        """Drop records whose last attempt is older than ``max_age_seconds``"""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        stale = [r.event_id for r in self._records.values() if r.last_attempt and r.last_attempt < cutoff]
        for event_id in stale:
            del self._records[event_id]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class WebhookResult:
    success: bool
    attempts: int
    will_retry: bool = False
    next_retry_in: Optional[float] = None


class WebhookRetryCoordinator:
    """
    Runs webhook handlers with bounded retries.

    A failed attempt below ``max_retries`` schedules a re-invocation after
    the retry delay and returns a "will retry" result. The attempt that
    reaches ``max_retries`` clears the event's state, writes a critical
    WEBHOOK_FAILED audit event and raises WebhookProcessingError. Expected
    errors (see ``is_expected_webhook_error``) are raised immediately without
    scheduling a retry.
    """

    def __init__(
        self,
        audit: AuditPipeline,
        store: Optional[RetryStateStore] = None,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        backoff_multiplier: float = 1.0,
        max_delay: float = 30.0,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.audit = audit
        self.store: RetryStateStore = store or InMemoryRetryStore()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay
        self.is_retryable = is_retryable or (lambda error: not is_expected_webhook_error(error))
        self._scheduled: Dict[str, "asyncio.Task[Optional[WebhookResult]]"] = {}
        self._inflight: Set["asyncio.Task[Optional[WebhookResult]]"] = set()

    def delay_for(self, attempts: int) -> float:
        """Delay before the retry that follows attempt number ``attempts``"""
        if self.backoff_multiplier <= 1.0:
            return self.retry_delay
        return min(self.retry_delay * self.backoff_multiplier ** (attempts - 1), self.max_delay)

    async def process_event(
        self, event_id: str, event_type: str, payload: Dict[str, Any], handler: WebhookHandler
    ) -> WebhookResult:
        record = self.store.get(event_id) or RetryRecord(event_id=event_id, event_type=event_type)

        try:
            await handler(payload)
        except Exception as e:
            return self._handle_failure(record, payload, handler, e)

        self.store.delete(event_id)
        attempts = record.attempts + 1
        logger.info(f"Webhook {event_type} {sanitize_id_for_log(event_id)} processed after {attempts} attempt(s)")
        return WebhookResult(success=True, attempts=attempts)

    def _handle_failure(
        self, record: RetryRecord, payload: Dict[str, Any], handler: WebhookHandler, error: Exception
    ) -> WebhookResult:
        record.attempts += 1
        record.last_attempt = datetime.now(timezone.utc)
        record.last_error = str(error)

        if not self.is_retryable(error):
            self.store.delete(record.event_id)
            logger.warning(
                f"Webhook {record.event_type} {sanitize_id_for_log(record.event_id)} not retried: "
                f"{sanitize_error_message_for_log(error)}"
            )
            raise error

        if record.attempts < self.max_retries:
            delay = self.delay_for(record.attempts)
            record.next_retry_at = record.last_attempt + timedelta(seconds=delay)
            self.store.set(record)
            logger.warning(
                f"Webhook {record.event_type} {sanitize_id_for_log(record.event_id)} failed, will retry",
                extra={"attempt": record.attempts, "next_retry_in": delay, "error": str(error)},
            )
            if record.event_id not in self._scheduled:
                self._schedule(record, payload, handler, delay)
            return WebhookResult(success=False, attempts=record.attempts, will_retry=True, next_retry_in=delay)

        self.store.delete(record.event_id)
        logger.error(
            f"Webhook {record.event_type} {sanitize_id_for_log(record.event_id)} failed permanently "
            f"after {record.attempts} attempts: {sanitize_error_message_for_log(error)}"
        )
        self.audit.log(
            AuditAction.WEBHOOK_FAILED,
            "webhook",
            user_id=payload.get("id") or payload.get("user_id"),
            resource_id=record.event_id,
            details={"event_type": record.event_type, "attempts": record.attempts, "error": str(error)},
            risk_level=RiskLevel.CRITICAL,
            success=False,
            error_message=str(error),
        )
        raise WebhookProcessingError(record.event_id, record.attempts, error) from error

    def _schedule(self, record: RetryRecord, payload: Dict[str, Any], handler: WebhookHandler, delay: float) -> None:
        task = asyncio.get_running_loop().create_task(self._retry(record, payload, handler, delay))
        self._scheduled[record.event_id] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _retry(
        self, record: RetryRecord, payload: Dict[str, Any], handler: WebhookHandler, delay: float
    ) -> Optional[WebhookResult]:
        await asyncio.sleep(delay)
        self._scheduled.pop(record.event_id, None)

        # A redelivery may already have succeeded
        if self.store.get(record.event_id) is None:
            return None

        try:
            return await self.process_event(record.event_id, record.event_type, payload, handler)
        except Exception as e:
            # Nobody awaits a scheduled retry; the failure is already logged and audited
            logger.debug(f"Scheduled retry for {sanitize_id_for_log(record.event_id)} ended with {type(e).__name__}")
            return None

    def pending(self) -> List[Dict[str, Any]]:
        """Snapshot of events awaiting a retry"""
        return [record.to_dict() for record in self.store.items()]

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled retry has run to completion"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel scheduled retries; their state stays in the store"""
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} scheduled webhook retries")


# ----------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------


class WebhookEvent(BaseModel):
    """A verified provider webhook delivery"""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int


def extract_signing_key(secret: str) -> bytes:
    """
    Signing key bytes for a ``whsec_`` style secret.

    The part after ``whsec_`` is base64; secrets that are not valid base64
    are used as raw UTF-8 bytes.
    """
    encoded = secret[len("whsec_") :] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return encoded.encode("utf-8")


class WebhookVerifier:
    """Verifies provider webhook signatures (HMAC-SHA256 over ``id.timestamp.body``)"""

    def __init__(self, secret: str, tolerance_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.key = extract_signing_key(secret)
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def sign(self, message_id: str, timestamp: int, body: bytes) -> str:
        signed = b".".join([message_id.encode("utf-8"), str(timestamp).encode("utf-8"), body])
        digest = hmac.new(self.key, signed, hashlib.sha256).digest()
        return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('utf-8')}"

    @staticmethod
    def _signature_headers(headers: Mapping[str, str]) -> Tuple[str, str, str]:
        lowered = {key.lower(): value for key, value in headers.items()}
        for prefix in HEADER_PREFIXES:
            message_id = lowered.get(f"{prefix}id")
            if message_id:
                timestamp = lowered.get(f"{prefix}timestamp")
                signature = lowered.get(f"{prefix}signature")
                if not timestamp or not signature:
                    raise WebhookVerificationError("Missing webhook timestamp or signature header")
                return message_id, timestamp, signature
        raise WebhookVerificationError("Missing webhook id header")

    def verify(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Check signature and timestamp, then parse the event. Raises WebhookVerificationError."""
        message_id, timestamp_header, signature_header = self._signature_headers(headers)

        try:
            timestamp = int(timestamp_header)
        except ValueError:
            raise WebhookVerificationError("Invalid webhook timestamp")

        age = abs(self.clock() - timestamp)
        if age > self.tolerance_seconds:
            logger.warning(f"Webhook timestamp outside tolerance: {int(age)}s (max {self.tolerance_seconds}s)")
            raise WebhookVerificationError("Webhook timestamp outside tolerance")

        expected = self.sign(message_id, timestamp, body)
        candidates = [sig for sig in signature_header.split(" ") if sig.startswith(f"{SIGNATURE_VERSION},")]
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            logger.warning(f"Webhook signature mismatch for {sanitize_id_for_log(message_id)}")
            raise WebhookVerificationError("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise WebhookVerificationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict) or not payload.get("type"):
            raise WebhookVerificationError("Webhook body has no event type")

        return WebhookEvent(id=message_id, type=payload["type"], data=payload.get("data") or {}, timestamp=timestamp)


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------


SESSION_END_EVENTS = ("session.ended", "session.removed", "session.revoked")


class WebhookDispatcher:
    """Maps provider event types onto sync engine operations and audit events"""

    HANDLED_EVENTS = (
        "user.created",
        "user.updated",
        "user.deleted",
        "session.created",
        *SESSION_END_EVENTS,
        "email.created",
        "sms.created",
        "emailAddress.verified",
    )

    def __init__(self, sync: SyncEngine, audit: AuditPipeline):
        self.sync = sync
        self.audit = audit

    def handler_for(self, event_type: str, context: Optional[RequestContext] = None) -> WebhookHandler:
        """Handler for one delivery; records WEBHOOK_PROCESSED once the event is handled"""

        async def handle(data: Dict[str, Any]) -> None:
            started = time.monotonic()
            await self.dispatch(event_type, data, context)
            self.audit.log(
                AuditAction.WEBHOOK_PROCESSED,
                "webhook",
                user_id=data.get("id") or data.get("user_id"),
                resource_id=data.get("id"),
                details={"event_type": event_type, "processing_ms": int((time.monotonic() - started) * 1000)},
                risk_level=RiskLevel.LOW,
                context=context,
            )

        return handle

    async def dispatch(self, event_type: str, data: Dict[str, Any], context: Optional[RequestContext] = None) -> None:
        if event_type in ("user.created", "user.updated"):
            await self.sync.upsert_from_provider(ProviderProfile.from_api(data), context)
        elif event_type == "user.deleted":
            await self.sync.delete_user(data["id"], context)
        elif event_type == "session.created":
            self._session_event(AuditAction.SESSION_CREATED, data, context, {"client_type": data.get("client_type")})
        elif event_type in SESSION_END_EVENTS:
            self._session_event(
                AuditAction.SESSION_ENDED,
                data,
                context,
                {"end_reason": event_type.split(".")[1], "duration": data.get("duration")},
            )
        elif event_type == "email.created":
            self._message_event(AuditAction.EMAIL_CREATED, "email", data, context)
        elif event_type == "sms.created":
            self._message_event(AuditAction.SMS_CREATED, "sms", data, context)
        elif event_type == "emailAddress.verified":
            await self._email_verified(data, context)
        else:
            logger.warning(f"Unhandled webhook event type: {sanitize_for_log(event_type)}")

    def _session_event(
        self, action: AuditAction, data: Dict[str, Any], context: Optional[RequestContext], details: Dict[str, Any]
    ) -> None:
        self.audit.log(
            action,
            "user_session",
            user_id=data.get("user_id"),
            resource_id=data.get("id"),
            details={"session_id": data.get("id"), **details},
            risk_level=RiskLevel.LOW,
            context=context,
        )

    def _message_event(
        self, action: AuditAction, channel: str, data: Dict[str, Any], context: Optional[RequestContext]
    ) -> None:
        # Delivery is the provider's job; only the fact that a message went out is kept
        self.audit.log(
            action,
            channel,
            user_id=data.get("user_id"),
            resource_id=data.get("id"),
            details={"slug": data.get("slug"), "status": data.get("status")},
            risk_level=RiskLevel.LOW,
            context=context,
        )

    async def _email_verified(self, data: Dict[str, Any], context: Optional[RequestContext]) -> None:
        user_id = data.get("user_id")
        if not user_id:
            raise ValidationError("Email verification event without user_id")
        await self.sync.sync_user(user_id, context)
        self.audit.log(
            AuditAction.EMAIL_VERIFIED,
            "email",
            user_id=user_id,
            resource_id=data.get("id"),
            details={"email": data.get("email_address")},
            risk_level=RiskLevel.LOW,
            context=context,
        )
