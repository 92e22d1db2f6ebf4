"""
Database Audit Module
Writes audit events to the audit_logs table and serves the read-side queries
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import and_, case, delete, func, insert, select

from .database import Database, audit_logs_table
from .models import AuditEvent, AuditFilters, AuditLogEntry, AuditStats, Pagination, RiskLevel

logger = logging.getLogger(__name__)

RETAINED_RISK_LEVELS = (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)


def _fit(column: str, value: Optional[str]) -> Optional[str]:
    """Truncate a value to the width of its audit_logs column"""
    length = getattr(audit_logs_table.c[column].type, "length", None)
    if value is None or length is None or len(value) <= length:
        return value
    return value[:length]


class DatabaseAuditSink:
    """Audit sink that inserts each event into audit_logs"""

    def __init__(self, db: Database):
        self.db = db

    async def write(self, event: AuditEvent) -> None:
        await self.db.execute(
            insert(audit_logs_table).values(
                user_id=_fit("user_id", event.user_id),
                action=_fit("action", event.action),
                resource=_fit("resource", event.resource),
                resource_id=_fit("resource_id", event.resource_id),
                details=event.details,
                ip_address=_fit("ip_address", event.ip_address),
                user_agent=_fit("user_agent", event.user_agent),
                risk_level=event.risk_level.value,
                success=event.success,
                error_message=event.error_message,
                timestamp=event.timestamp,
            )
        )


class AuditRepository:
    """Read-side aggregation and retention over audit_logs"""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _conditions(filters: Optional[AuditFilters]) -> List[Any]:
        t = audit_logs_table.c
        conditions: List[Any] = []
        if not filters:
            return conditions

        if filters.user_id:
            conditions.append(t.user_id == filters.user_id)
        if filters.action:
            conditions.append(t.action == filters.action)
        if filters.resource:
            conditions.append(t.resource == filters.resource)
        if filters.risk_level:
            conditions.append(t.risk_level == filters.risk_level.value)
        if filters.success is not None:
            conditions.append(t.success == filters.success)
        if filters.start_date:
            conditions.append(t.timestamp >= filters.start_date)
        if filters.end_date:
            conditions.append(t.timestamp <= filters.end_date)
        return conditions

    async def get_audit_logs(
        self, filters: Optional[AuditFilters] = None, pagination: Optional[Pagination] = None
    ) -> List[AuditLogEntry]:
        """Return matching events, newest first"""
        pagination = pagination or Pagination()
        stmt = (
            select(audit_logs_table)
            .where(and_(True, *self._conditions(filters)))
            .order_by(audit_logs_table.c.timestamp.desc(), audit_logs_table.c.id.desc())
            .limit(pagination.limit)
            .offset(pagination.offset)
        )
        rows = await self.db.query(stmt)
        return [AuditLogEntry(**{**row, "details": row.get("details") or {}}) for row in rows]

    async def count_audit_logs(self, filters: Optional[AuditFilters] = None) -> int:
        stmt = (
            select(func.count().label("total"))
            .select_from(audit_logs_table)
            .where(and_(True, *self._conditions(filters)))
        )
        rows = await self.db.query(stmt)
        return int(rows[0]["total"]) if rows else 0

    async def get_audit_stats(self, filters: Optional[AuditFilters] = None) -> AuditStats:
        t = audit_logs_table.c
        stmt = (
            select(
                func.count().label("total_events"),
                func.sum(case((t.success.is_(True), 1), else_=0)).label("successful_events"),
                func.sum(case((t.success.is_(False), 1), else_=0)).label("failed_events"),
                func.sum(case((t.risk_level == RiskLevel.HIGH.value, 1), else_=0)).label("high_risk_events"),
                func.sum(case((t.risk_level == RiskLevel.CRITICAL.value, 1), else_=0)).label("critical_events"),
                func.count(t.user_id.distinct()).label("unique_users"),
                func.count(t.action.distinct()).label("unique_actions"),
            )
            .select_from(audit_logs_table)
            .where(and_(True, *self._conditions(filters)))
        )

        rows = await self.db.query(stmt)
        if not rows:
            return AuditStats()
        return AuditStats(**{key: int(value or 0) for key, value in rows[0].items()})

    async def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete events older than the retention horizon.

        High and critical events are kept regardless of age.

        Returns:
            int: Number of rows deleted
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        t = audit_logs_table.c
        deleted = await self.db.execute(
            delete(audit_logs_table).where(t.timestamp < cutoff, t.risk_level.notin_(RETAINED_RISK_LEVELS))
        )
        logger.info(f"Audit retention sweep deleted {deleted} events older than {retention_days} days")
        return deleted
