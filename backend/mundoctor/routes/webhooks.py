"""
Identity Provider Webhook Routes
Signed event delivery plus manual sync and consistency endpoints
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from ..auth.dependencies import get_container
from ..exceptions import WebhookProcessingError, WebhookVerificationError
from ..middleware.authorization import RequirePermission
from ..models import AuditAction, LocalUser, RiskLevel
from ..rbac import Permission
from ..services.webhooks import WebhookDispatcher, is_expected_webhook_error
from ..utils.logging_security import sanitize_error_message_for_log, sanitize_id_for_log
from ..utils.request import build_request_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/identity")
async def receive_identity_event(request: Request) -> JSONResponse:
    """
    Receive a signed identity-provider event.

    Expected conditions (duplicate delivery, user already gone) are
    acknowledged with 200 and a warning so the provider does not redeliver;
    failures that exhausted local retries surface as 500.
    """
    container = get_container(request)
    context = build_request_context(request)
    body = await request.body()

    try:
        event = container.webhook_verifier.verify(body, request.headers)
    except WebhookVerificationError as e:
        container.audit.log(
            AuditAction.WEBHOOK_VERIFICATION_FAILED,
            "webhook",
            details={"error": e.message, "path": context.path},
            risk_level=RiskLevel.HIGH,
            success=False,
            error_message=e.message,
            context=context,
        )
        raise

    logger.info(f"Webhook {event.type} received: {sanitize_id_for_log(event.id)}")
    handler = container.webhook_dispatcher.handler_for(event.type, context)

    try:
        result = await container.webhook_coordinator.process_event(event.id, event.type, event.data, handler)
    except Exception as e:
        if not is_expected_webhook_error(e):
            raise
        logger.warning(
            f"Webhook {event.type} {sanitize_id_for_log(event.id)} handled with warning: "
            f"{sanitize_error_message_for_log(e)}"
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "success": True,
                "message": f"Webhook {event.type} handled with warning",
                "warning": str(e.original if isinstance(e, WebhookProcessingError) else e),
                "event_id": event.id,
            },
        )

    if result.will_retry:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "success": False,
                "message": f"Webhook {event.type} failed, retry scheduled",
                "event_id": event.id,
                "attempts": result.attempts,
                "will_retry": True,
            },
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "message": f"Webhook {event.type} processed successfully",
            "event_id": event.id,
            "attempts": result.attempts,
        },
    )


@router.get("/health")
async def webhook_health(request: Request) -> Dict[str, Any]:
    coordinator = get_container(request).webhook_coordinator
    return {
        "status": "healthy",
        "service": "identity-webhooks",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "events": list(WebhookDispatcher.HANDLED_EVENTS),
        "retry": {
            "queue_size": len(coordinator.pending()),
            "max_retries": coordinator.max_retries,
            "retry_delay_seconds": coordinator.retry_delay,
        },
    }


@router.get("/retry-status")
async def retry_status(
    request: Request, user: LocalUser = Depends(RequirePermission(Permission.ADMIN_SYSTEM))
) -> Dict[str, Any]:
    """Events currently waiting for a retry"""
    pending = get_container(request).webhook_coordinator.pending()
    return {"success": True, "data": {"queue_size": len(pending), "active_retries": pending}}


@router.post("/sync-user/{subject_id}")
async def sync_user(
    subject_id: str,
    request: Request,
    validate_after: bool = True,
    user: LocalUser = Depends(RequirePermission(Permission.USERS_WRITE)),
) -> Dict[str, Any]:
    """Re-fetch a user from the identity provider and upsert it locally"""
    container = get_container(request)
    synced, created = await container.sync.sync_user(subject_id, build_request_context(request))

    data: Dict[str, Any] = {"user": synced.public_dict(), "created": created}
    if validate_after:
        report = await container.sync.validate_consistency(subject_id)
        data["validation"] = report.to_dict()
    return {"success": True, "message": "User synced successfully", "data": data}


@router.get("/validate-user/{subject_id}")
async def validate_user(
    subject_id: str,
    request: Request,
    user: LocalUser = Depends(RequirePermission(Permission.USERS_READ)),
) -> Dict[str, Any]:
    """Compare a local user with the identity provider's record"""
    report = await get_container(request).sync.validate_consistency(subject_id)
    return {"success": True, "data": report.to_dict()}
