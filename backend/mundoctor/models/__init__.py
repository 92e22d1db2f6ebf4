"""
Mundoctor Models Package
Pydantic models and enums shared by the auth, sync, audit and webhook modules
"""

from .audit_models import AuditEvent, AuditFilters, AuditLogEntry, AuditStats, Pagination  # noqa: F401
from .enums import ELEVATED_RISK_LEVELS, AuditAction, RiskLevel, UserStatus  # noqa: F401
from .user_models import LocalUser, RequestContext  # noqa: F401
