"""
Pytest configuration and fixtures for Mundoctor backend tests.

Every test gets its own SQLite database file (aiosqlite) and an in-memory
identity provider, so nothing here needs network access or a running
PostgreSQL instance.
"""

import base64
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncConnection

from mundoctor.auth.provider import Principal, ProviderProfile
from mundoctor.config import Settings
from mundoctor.container import SecurityContainer
from mundoctor.database import Database, professionals_table
from mundoctor.exceptions import AuthenticationError, ProviderError
from mundoctor.main import create_app
from mundoctor.models import LocalUser
from mundoctor.repositories.user_repository import UserRepository
from mundoctor.services.audit import InMemoryAuditSink

TEST_PROVIDER_SECRET = "sk_test_mundoctor_unit_tests_0001"  # pragma: allowlist secret
TEST_WEBHOOK_KEY = b"mundoctor-webhook-signing-key-01"  # pragma: allowlist secret
TEST_WEBHOOK_SECRET = "whsec_" + base64.b64encode(TEST_WEBHOOK_KEY).decode()


class FakeIdentityProvider:
    """
    In-memory identity provider.

    Tokens map straight to principals and profiles live in a dict. The public
    methods are AsyncMocks wrapping the fake behaviour so tests can assert on
    call counts and inject failures with ``side_effect``.
    """

    def __init__(self) -> None:
        self.tokens: Dict[str, Principal] = {}
        self.profiles: Dict[str, ProviderProfile] = {}
        self.verify_token = AsyncMock(side_effect=self._verify_token)
        self.get_user_profile = AsyncMock(side_effect=self._get_user_profile)
        self.update_user_metadata = AsyncMock(side_effect=self._update_user_metadata)
        self.list_users = AsyncMock(side_effect=self._list_users)

    def add_user(
        self,
        user_id: str,
        role: Optional[str] = None,
        status: Optional[str] = None,
        email: Optional[str] = None,
        token: Optional[str] = None,
    ) -> ProviderProfile:
        metadata: Dict[str, Any] = {}
        if role:
            metadata["role"] = role
        if status:
            metadata["status"] = status
        profile = ProviderProfile(
            id=user_id,
            email=email or f"{user_id}@example.com",
            first_name="Test",
            last_name=user_id,
            email_verified=True,
            public_metadata=metadata,
        )
        self.profiles[user_id] = profile
        if token:
            self.tokens[token] = Principal(user_id=user_id, session_id=f"sess_{user_id}")
        return profile

    async def _verify_token(self, credential: str) -> Principal:
        principal = self.tokens.get(credential)
        if principal is None:
            raise AuthenticationError("Could not validate credentials")
        return principal

    async def _get_user_profile(self, subject_id: str) -> ProviderProfile:
        profile = self.profiles.get(subject_id)
        if profile is None:
            raise ProviderError(upstream_status=404)
        return profile

    async def _update_user_metadata(self, subject_id: str, public_metadata: Dict[str, Any]) -> None:
        profile = self.profiles.get(subject_id)
        if profile is not None:
            merged = {**profile.public_metadata, **public_metadata}
            self.profiles[subject_id] = profile.model_copy(update={"public_metadata": merged})

    async def _list_users(self, limit: int = 100, offset: int = 0) -> List[ProviderProfile]:
        return list(self.profiles.values())[offset : offset + limit]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file with immediate webhook retries."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'mundoctor_test.db'}",
        provider_secret_key=TEST_PROVIDER_SECRET,
        webhook_secret=TEST_WEBHOOK_SECRET,
        webhook_retry_delay_seconds=0,
        audit_cleanup_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    """Database with every table created."""
    database = Database(settings.database_url)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    """In-memory identity provider."""
    return FakeIdentityProvider()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    """Audit sink the tests assert against."""
    return InMemoryAuditSink()


@pytest_asyncio.fixture
async def container(
    settings: Settings, db: Database, provider: FakeIdentityProvider, audit_sink: InMemoryAuditSink
) -> AsyncIterator[SecurityContainer]:
    """Security container wired to the test database, fake provider and in-memory audit sink."""
    security = SecurityContainer(settings, db=db, provider=provider, audit_sinks=[audit_sink])
    yield security
    await security.stop()


@pytest.fixture
def app(settings: Settings, container: SecurityContainer) -> FastAPI:
    """Application built around the test container."""
    return create_app(settings, container, fail_fast=False)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client calling the application in-process."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture
def seed_user(db: Database, provider: FakeIdentityProvider) -> Callable[..., Awaitable[LocalUser]]:
    """
    Insert a local user, mirror it in the fake provider and register the
    bearer token ``token-<user_id>`` for it.
    """
    users = UserRepository(db)

    async def _seed(
        user_id: str,
        role: str = "patient",
        status: str = "active",
        profile_completed: bool = False,
        professional_verified: bool = False,
    ) -> LocalUser:
        provider.add_user(user_id, role=role, status=status, token=f"token-{user_id}")

        async def _insert(conn: AsyncConnection) -> None:
            await users.insert_user_if_absent(
                conn,
                {
                    "id": user_id,
                    "email": f"{user_id}@example.com",
                    "name": f"Test {user_id}",
                    "role": role,
                    "status": status,
                    "verified": True,
                },
            )
            await users.create_role_profile(conn, user_id, role)
            if role == "professional":
                await conn.execute(
                    update(professionals_table)
                    .where(professionals_table.c.user_id == user_id)
                    .values(profile_completed=profile_completed, verified=professional_verified)
                )

        await db.with_transaction(_insert)
        user = await users.get_user(user_id)
        assert user is not None
        return user

    return _seed
