"""
User Repository
SQL for users and their role-specific profile rows.

Every write method takes an ``AsyncConnection`` so callers control the
transaction boundary; reads accept an optional connection and otherwise run
through ``Database.query``.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql.expression import Executable

from ..database import (
    Database,
    patients_table,
    professionals_table,
    user_preferences_table,
    users_table,
    utcnow,
)
from ..models import LocalUser

logger = logging.getLogger(__name__)

_DIALECT_INSERTS: Dict[str, Callable[..., Any]] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

ROLE_PROFILE_TABLES = {
    "professional": professionals_table,
    "patient": patients_table,
}


class UserRepository:
    """Data access for users, professionals, patients and user_preferences"""

    def __init__(self, db: Database):
        self.db = db

    def _user_select(self) -> Executable:
        u = users_table.c
        p = professionals_table.c
        return select(
            users_table,
            p.profile_completed,
            p.verified.label("professional_verified"),
        ).select_from(users_table.outerjoin(professionals_table, p.user_id == u.id))

    async def get_user(self, user_id: str, conn: Optional[AsyncConnection] = None) -> Optional[LocalUser]:
        stmt = self._user_select().where(users_table.c.id == user_id)
        if conn is not None:
            result = await conn.execute(stmt)
            row = result.mappings().first()
            return LocalUser(**row) if row else None

        rows = await self.db.query(stmt)
        return LocalUser(**rows[0]) if rows else None

    @staticmethod
    def _insert_ignore(conn: AsyncConnection, table: Any, values: Dict[str, Any], key: str) -> Executable:
        insert_fn = _DIALECT_INSERTS.get(conn.dialect.name)
        if insert_fn is None:
            raise RuntimeError(f"Upsert not supported for dialect {conn.dialect.name}")
        return insert_fn(table).values(**values).on_conflict_do_nothing(index_elements=[key])

    async def insert_user_if_absent(self, conn: AsyncConnection, values: Dict[str, Any]) -> bool:
        """Insert a user row; returns False when the id already existed"""
        now = utcnow()
        row = {"created_at": now, "updated_at": now, **values}
        result = await conn.execute(self._insert_ignore(conn, users_table, row, "id"))
        return result.rowcount == 1

    async def update_user(self, conn: AsyncConnection, user_id: str, values: Dict[str, Any]) -> int:
        result = await conn.execute(
            update(users_table).where(users_table.c.id == user_id).values(**values, updated_at=utcnow())
        )
        return result.rowcount

    async def create_role_profile(self, conn: AsyncConnection, user_id: str, role: str) -> bool:
        """Create the profile row matching ``role``; existing rows are left untouched"""
        table = ROLE_PROFILE_TABLES.get(role)
        if table is None:
            return False

        now = utcnow()
        values: Dict[str, Any] = {"user_id": user_id, "created_at": now, "updated_at": now}
        if role == "professional":
            values.update(profile_completed=False, verified=False, subscription_plan="free")

        result = await conn.execute(self._insert_ignore(conn, table, values, "user_id"))
        if result.rowcount == 1:
            logger.info(f"{role.capitalize()} profile created for {user_id}")
        return result.rowcount == 1

    async def remove_other_role_profiles(self, conn: AsyncConnection, user_id: str, role: str) -> None:
        """Delete profile rows that no longer match the user's role"""
        for other_role, table in ROLE_PROFILE_TABLES.items():
            if other_role != role:
                await conn.execute(delete(table).where(table.c.user_id == user_id))

    async def create_preferences(self, conn: AsyncConnection, user_id: str) -> None:
        now = utcnow()
        values = {
            "user_id": user_id,
            "theme": "light",
            "notifications_enabled": True,
            "language": "es",
            "timezone": "Europe/Madrid",
            "created_at": now,
            "updated_at": now,
        }
        await conn.execute(self._insert_ignore(conn, user_preferences_table, values, "user_id"))

    async def get_professional(self, conn: AsyncConnection, user_id: str) -> Optional[Dict[str, Any]]:
        result = await conn.execute(select(professionals_table).where(professionals_table.c.user_id == user_id))
        row = result.mappings().first()
        return dict(row) if row else None

    async def delete_user(self, conn: AsyncConnection, user_id: str) -> bool:
        """Delete a user and every dependent row. Returns False if the user did not exist."""
        for table in (professionals_table, patients_table, user_preferences_table):
            await conn.execute(delete(table).where(table.c.user_id == user_id))
        result = await conn.execute(delete(users_table).where(users_table.c.id == user_id))
        return result.rowcount == 1

    async def count_users(self, user_id: str) -> int:
        """Number of user rows for an id (0 or 1 while the primary key holds)"""
        rows = await self.db.query(select(users_table.c.id).where(users_table.c.id == user_id))
        return len(rows)
