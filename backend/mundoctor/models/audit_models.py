"""
Mundoctor Audit Models
Audit events as emitted by the core, plus read-side filter and stats shapes
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import ELEVATED_RISK_LEVELS, RiskLevel


class AuditEvent(BaseModel):
    """A single audit record, immutable once written"""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    success: bool = True
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("action", "resource", mode="before")
    @classmethod
    def enum_to_value(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            return v.value
        return v

    @property
    def is_elevated(self) -> bool:
        return self.risk_level in ELEVATED_RISK_LEVELS


class AuditLogEntry(AuditEvent):
    """Stored audit event as returned by the read side"""

    id: int


class AuditFilters(BaseModel):
    """Filters accepted by the audit log queries"""

    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    success: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class Pagination(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class AuditStats(BaseModel):
    """Aggregate counters over a filtered audit window"""

    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    high_risk_events: int = 0
    critical_events: int = 0
    unique_users: int = 0
    unique_actions: int = 0
