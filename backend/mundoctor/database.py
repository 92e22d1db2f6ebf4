"""
Mundoctor relational store
Table definitions and the async query/transaction capability used by the core
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql.expression import Executable

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):  # type: ignore[valid-type, misc]
    """Local mirror of an identity-provider user, keyed by the provider subject id"""

    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    avatar_url = Column(Text, nullable=True)
    role = Column(String(20), nullable=False, default="patient")
    status = Column(String(30), nullable=False, default="active")
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Professional(Base):  # type: ignore[valid-type, misc]
    """Role-specific profile for users with role=professional"""

    __tablename__ = "professionals"

    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    license_number = Column(String(100), nullable=True)
    specialty = Column(String(255), nullable=True)
    profile_completed = Column(Boolean, nullable=False, default=False)
    verified = Column(Boolean, nullable=False, default=False)
    subscription_plan = Column(String(30), nullable=False, default="free")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Patient(Base):  # type: ignore[valid-type, misc]
    """Role-specific profile for users with role=patient"""

    __tablename__ = "patients"

    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserPreferences(Base):  # type: ignore[valid-type, misc]
    """Default UI and notification preferences created on first sync"""

    __tablename__ = "user_preferences"

    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    theme = Column(String(20), nullable=False, default="light")
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    language = Column(String(10), nullable=False, default="es")
    timezone = Column(String(50), nullable=False, default="Europe/Madrid")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(Base):  # type: ignore[valid-type, misc]
    """Append-only security audit trail"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=True, index=True)  # NULL for unauthenticated attempts
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(100), nullable=False)
    resource_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)
    risk_level = Column(String(10), nullable=False, default="low", index=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


users_table = User.__table__
professionals_table = Professional.__table__
patients_table = Patient.__table__
user_preferences_table = UserPreferences.__table__
audit_logs_table = AuditLog.__table__


class Database:
    """Async relational store exposing query and transaction primitives.

    The core only depends on ``query``, ``execute`` and ``with_transaction``;
    schema migrations are managed outside this package.
    """

    def __init__(self, url: str, echo: bool = False, engine: Optional[AsyncEngine] = None):
        self.url = url
        self.engine = engine or create_async_engine(url, echo=echo, pool_pre_ping=True)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def query(self, statement: Executable, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a statement in its own transaction and return rows as dicts"""
        async with self.engine.begin() as conn:
            result = await conn.execute(statement, params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    async def execute(self, statement: Executable, params: Optional[Dict[str, Any]] = None) -> int:
        """Run a write statement in its own transaction and return the affected row count"""
        async with self.engine.begin() as conn:
            result = await conn.execute(statement, params or {})
            return result.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Open a transaction that commits on exit and rolls back on any exception"""
        async with self.engine.begin() as conn:
            yield conn

    async def with_transaction(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        async with self.transaction() as conn:
            return await fn(conn)

    async def create_all(self) -> None:
        """Create tables for local development and tests"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_health(self) -> bool:
        try:
            await self.query(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
