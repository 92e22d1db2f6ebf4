"""
Integration tests for the identity-provider webhook endpoint and the manual
sync routes.
"""

import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from mundoctor.container import SecurityContainer
from mundoctor.database import Database
from mundoctor.models import AuditAction, LocalUser, RiskLevel
from mundoctor.repositories.user_repository import UserRepository
from mundoctor.services.audit import InMemoryAuditSink

SeedUser = Callable[..., Awaitable[LocalUser]]

WEBHOOK_URL = "/api/webhooks/identity"


def auth(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer token-{user_id}"}


def signed_delivery(
    container: SecurityContainer,
    event_type: str,
    data: Dict[str, Any],
    message_id: str = "msg_001",
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    """Request kwargs for a correctly signed delivery"""
    body = json.dumps({"type": event_type, "data": data}).encode("utf-8")
    ts = timestamp if timestamp is not None else int(time.time())
    return {
        "content": body,
        "headers": {
            "content-type": "application/json",
            "svix-id": message_id,
            "svix-timestamp": str(ts),
            "svix-signature": container.webhook_verifier.sign(message_id, ts, body),
        },
    }


def user_data(user_id: str = "user_hook", role: str = "patient") -> Dict[str, Any]:
    return {
        "id": user_id,
        "first_name": "Marta",
        "last_name": "Ruiz",
        "primary_email_address_id": "idn_1",
        "email_addresses": [
            {"id": "idn_1", "email_address": f"{user_id}@example.com", "verification": {"status": "verified"}}
        ],
        "public_metadata": {"role": role},
    }


@pytest.mark.integration
class TestWebhookDelivery:
    """Test signed event delivery end to end."""

    @pytest.mark.asyncio
    async def test_user_created(
        self,
        client: httpx.AsyncClient,
        container: SecurityContainer,
        db: Database,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """A signed user.created creates the local user and acknowledges with 200."""
        response = await client.post(WEBHOOK_URL, **signed_delivery(container, "user.created", user_data()))
        await container.audit.flush()

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Webhook user.created processed successfully"
        assert body["attempts"] == 1
        assert body["event_id"] == "msg_001"

        user = await UserRepository(db).get_user("user_hook")
        assert user is not None
        assert user.role == "patient"
        assert len(audit_sink.find(AuditAction.WEBHOOK_PROCESSED)) == 1

    @pytest.mark.asyncio
    async def test_invalid_signature(
        self, client: httpx.AsyncClient, container: SecurityContainer, audit_sink: InMemoryAuditSink
    ) -> None:
        """A tampered body is rejected with 400 and a high-risk audit event."""
        delivery = signed_delivery(container, "user.created", user_data())
        delivery["content"] = delivery["content"].replace(b"Marta", b"Mallory")

        response = await client.post(WEBHOOK_URL, **delivery)
        await container.audit.flush()

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid webhook signature"
        [event] = audit_sink.find(AuditAction.WEBHOOK_VERIFICATION_FAILED)
        assert event.risk_level == RiskLevel.HIGH
        assert event.success is False

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, client: httpx.AsyncClient, container: SecurityContainer) -> None:
        """Deliveries older than the tolerance are rejected even when correctly signed."""
        delivery = signed_delivery(container, "user.created", user_data(), timestamp=int(time.time()) - 3600)
        response = await client.post(WEBHOOK_URL, **delivery)
        assert response.status_code == 400
        assert response.json()["message"] == "Webhook timestamp outside tolerance"

    @pytest.mark.asyncio
    async def test_missing_headers(self, client: httpx.AsyncClient) -> None:
        """Unsigned requests never reach a handler."""
        response = await client.post(WEBHOOK_URL, json={"type": "user.created", "data": user_data()})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_expected_error_is_acknowledged(
        self, client: httpx.AsyncClient, container: SecurityContainer
    ) -> None:
        """Deleting an unknown user returns 200 with a warning and schedules no retry."""
        response = await client.post(
            WEBHOOK_URL, **signed_delivery(container, "user.deleted", {"id": "user_ghost", "deleted": True})
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "not found" in body["warning"]
        assert container.webhook_coordinator.pending() == []

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retries(
        self,
        client: httpx.AsyncClient,
        container: SecurityContainer,
        audit_sink: InMemoryAuditSink,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A failing handler returns 202, then exhausts its retries and records WEBHOOK_FAILED."""
        failing = AsyncMock(side_effect=RuntimeError("database unavailable"))
        monkeypatch.setattr(container.sync, "upsert_from_provider", failing)

        response = await client.post(WEBHOOK_URL, **signed_delivery(container, "user.updated", user_data()))

        assert response.status_code == 202
        assert response.json()["will_retry"] is True
        assert response.json()["attempts"] == 1

        await container.webhook_coordinator.wait_for_pending()
        await container.audit.flush()

        assert failing.await_count == container.settings.webhook_max_retries
        [event] = audit_sink.find(AuditAction.WEBHOOK_FAILED)
        assert event.risk_level == RiskLevel.CRITICAL
        assert container.webhook_coordinator.pending() == []

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(
        self, client: httpx.AsyncClient, container: SecurityContainer
    ) -> None:
        """Event types without a handler are accepted so the provider stops redelivering."""
        response = await client.post(WEBHOOK_URL, **signed_delivery(container, "organization.created", {"id": "org_1"}))
        assert response.status_code == 200


@pytest.mark.integration
class TestWebhookOperations:
    """Test health, retry status and manual sync routes."""

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        """The webhook health route lists handled events and retry settings."""
        response = await client.get("/api/webhooks/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "user.created" in body["events"]
        assert body["retry"]["queue_size"] == 0

    @pytest.mark.asyncio
    async def test_retry_status_requires_admin(self, client: httpx.AsyncClient, seed_user: SeedUser) -> None:
        """Only holders of admin:system see the retry queue."""
        await seed_user("user_pat")
        await seed_user("user_adm", role="admin")

        assert (await client.get("/api/webhooks/retry-status", headers=auth("user_pat"))).status_code == 403

        response = await client.get("/api/webhooks/retry-status", headers=auth("user_adm"))
        assert response.status_code == 200
        assert response.json()["data"]["queue_size"] == 0

    @pytest.mark.asyncio
    async def test_manual_sync(
        self, client: httpx.AsyncClient, seed_user: SeedUser, provider, db: Database
    ) -> None:
        """An admin can pull a provider user into the local database."""
        await seed_user("user_adm", role="admin")
        provider.add_user("user_remote", role="professional")

        response = await client.post("/api/webhooks/sync-user/user_remote", headers=auth("user_adm"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["created"] is True
        assert data["user"]["id"] == "user_remote"
        assert "validation" in data
        assert await UserRepository(db).get_user("user_remote") is not None

    @pytest.mark.asyncio
    async def test_manual_sync_requires_users_write(self, client: httpx.AsyncClient, seed_user: SeedUser) -> None:
        """Patients cannot trigger a sync."""
        await seed_user("user_pat")
        response = await client.post("/api/webhooks/sync-user/user_pat", headers=auth("user_pat"))
        assert response.status_code == 403
