"""
Security tests for authentication and role checks.

Each scenario goes through the full HTTP stack and then inspects the audit
trail, since every denial must leave exactly one matching audit event.
"""

from typing import Awaitable, Callable, Dict

import httpx
import pytest

from mundoctor.auth.provider import Principal
from mundoctor.container import SecurityContainer
from mundoctor.models import AuditAction, LocalUser, RiskLevel
from mundoctor.services.audit import InMemoryAuditSink

SeedUser = Callable[..., Awaitable[LocalUser]]


def auth(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer token-{user_id}"}


@pytest.mark.security
class TestAuthentication:
    """Test the authentication boundary."""

    @pytest.mark.asyncio
    async def test_missing_token_returns_401_and_one_audit_event(
        self, client: httpx.AsyncClient, container: SecurityContainer, audit_sink: InMemoryAuditSink
    ) -> None:
        """A request without a credential is rejected and audited exactly once."""
        response = await client.get("/api/auth/me")
        await container.audit.flush()

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "AUTHENTICATION_ERROR"
        assert body["message"] == "Authentication required"
        assert body["path"] == "/api/auth/me"
        assert len(body["error_id"]) == 8
        [event] = audit_sink.find(AuditAction.LOGIN_FAILED)
        assert event.user_id is None
        assert event.risk_level == RiskLevel.MEDIUM
        assert event.details["method"] == "GET"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_rejected(self, client: httpx.AsyncClient) -> None:
        """Basic credentials are not accepted."""
        response = await client.get("/api/auth/me", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_returns_401(
        self, client: httpx.AsyncClient, container: SecurityContainer, audit_sink: InMemoryAuditSink
    ) -> None:
        """A token the provider rejects is a 401 with a LOGIN_FAILED event."""
        response = await client.get("/api/auth/me", headers={"Authorization": "Bearer forged"})
        await container.audit.flush()

        assert response.status_code == 401
        assert response.json()["message"] == "Could not validate credentials"
        assert len(audit_sink.find(AuditAction.LOGIN_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_valid_token_returns_local_user(
        self,
        client: httpx.AsyncClient,
        seed_user: SeedUser,
        container: SecurityContainer,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """An authenticated request sees its local record and is logged as USER_ACCESS."""
        await seed_user("user_ana")

        response = await client.get("/api/auth/me", headers=auth("user_ana"))
        await container.audit.flush()

        assert response.status_code == 200
        assert response.json()["data"]["id"] == "user_ana"
        [event] = audit_sink.find(AuditAction.USER_ACCESS)
        assert event.user_id == "user_ana"
        assert event.resource_id == "/api/auth/me"

    @pytest.mark.asyncio
    async def test_repeated_requests_hit_the_cache(
        self, client: httpx.AsyncClient, seed_user: SeedUser, provider
    ) -> None:
        """The provider verifies a token once within the cache TTL."""
        await seed_user("user_ana")

        for _ in range(3):
            assert (await client.get("/api/auth/me", headers=auth("user_ana"))).status_code == 200

        assert provider.verify_token.await_count == 1

    @pytest.mark.asyncio
    async def test_first_access_auto_syncs(
        self, client: httpx.AsyncClient, provider, container: SecurityContainer, audit_sink: InMemoryAuditSink
    ) -> None:
        """A verified principal without a local row is materialized on first request."""
        provider.add_user("user_first", role="patient", token="token-user_first")

        response = await client.get("/api/auth/me", headers=auth("user_first"))
        await container.audit.flush()

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "patient"
        assert len(audit_sink.find(AuditAction.USER_AUTO_SYNCED)) == 1

    @pytest.mark.asyncio
    async def test_failed_auto_sync_returns_401(self, client: httpx.AsyncClient, provider) -> None:
        """A principal the provider cannot describe is not let through."""
        provider.tokens["token-orphan"] = Principal(user_id="user_orphan")

        response = await client.get("/api/auth/me", headers={"Authorization": "Bearer token-orphan"})

        assert response.status_code == 401
        assert response.json()["message"] == "User not found in database and auto-sync failed"


@pytest.mark.security
@pytest.mark.usefixtures("guarded_app")
class TestRoleChecks:
    """Test RequireRole and the admin override."""

    @pytest.mark.asyncio
    async def test_patient_denied_admin_route(
        self,
        client: httpx.AsyncClient,
        seed_user: SeedUser,
        container: SecurityContainer,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """A patient on an admin route gets 403 and an AUTHORIZATION_FAILED event."""
        await seed_user("user_pat")

        response = await client.get("/api/guarded/admin-only", headers=auth("user_pat"))
        await container.audit.flush()

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "AUTHORIZATION_ERROR"
        assert body["message"] == "Access denied. Required roles: admin"
        assert body["required_roles"] == ["admin"]
        [event] = audit_sink.find(AuditAction.AUTHORIZATION_FAILED)
        assert event.risk_level == RiskLevel.MEDIUM
        assert event.user_id == "user_pat"
        assert event.success is False

    @pytest.mark.asyncio
    async def test_admin_in_allowed_roles_is_not_an_override(
        self,
        client: httpx.AsyncClient,
        seed_user: SeedUser,
        container: SecurityContainer,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """An admin listed in the roles is granted without the override flag."""
        await seed_user("user_adm", role="admin")

        response = await client.get("/api/guarded/admin-only", headers=auth("user_adm"))
        await container.audit.flush()

        assert response.status_code == 200
        [event] = audit_sink.find(AuditAction.ACCESS_GRANTED)
        assert event.details["override"] is False
        assert audit_sink.find(AuditAction.ADMIN_ACCESS) == []

    @pytest.mark.asyncio
    async def test_admin_override_on_other_role_route(
        self,
        client: httpx.AsyncClient,
        seed_user: SeedUser,
        container: SecurityContainer,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        """An admin passes a professional-only route through the audited override."""
        await seed_user("user_adm", role="admin")

        response = await client.get("/api/guarded/professional-area", headers=auth("user_adm"))
        await container.audit.flush()

        assert response.status_code == 200
        [event] = audit_sink.find(AuditAction.ADMIN_ACCESS)
        assert event.details["override"] is True
        assert event.risk_level == RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_strict_role_check_blocks_admin(self, client: httpx.AsyncClient, seed_user: SeedUser) -> None:
        """strict=True disables the admin override."""
        await seed_user("user_adm", role="admin")
        response = await client.get("/api/guarded/professional-strict", headers=auth("user_adm"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_professional_on_professional_route(self, client: httpx.AsyncClient, seed_user: SeedUser) -> None:
        """The listed role passes."""
        await seed_user("user_doc", role="professional")
        response = await client.get("/api/guarded/professional-area", headers=auth("user_doc"))
        assert response.status_code == 200
        assert response.json()["role"] == "professional"

    @pytest.mark.asyncio
    async def test_super_admin_has_no_role_override(self, client: httpx.AsyncClient, seed_user: SeedUser) -> None:
        """Only the admin role gets the override; super_admin must be listed explicitly."""
        await seed_user("user_root", role="super_admin")
        response = await client.get("/api/guarded/admin-only", headers=auth("user_root"))
        assert response.status_code == 403
