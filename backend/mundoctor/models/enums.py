"""
Shared Enums

Enumeration types used across the auth, sync, audit and webhook modules.
These are kept separate to avoid circular imports between routes,
services and middleware.
"""

from enum import Enum


class UserStatus(str, Enum):
    """
    Lifecycle status of a local user.

    PENDING_VALIDATION marks a professional whose credentials are still being
    reviewed; provider sync must not reset it.
    """

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_VALIDATION = "pending_validation"
    SUSPENDED = "suspended"


class RiskLevel(str, Enum):
    """
    Severity attached to an audit event by the component that emits it.

    HIGH and CRITICAL events raise an alert log line and survive the
    retention sweep indefinitely.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ELEVATED_RISK_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


class AuditAction(str, Enum):
    """Known audit actions"""

    # Authentication
    LOGIN_FAILED = "LOGIN_FAILED"
    USER_ACCESS = "USER_ACCESS"

    # User lifecycle
    USER_AUTO_SYNCED = "USER_AUTO_SYNCED"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    USER_ROLLED_BACK = "USER_ROLLED_BACK"
    ROLE_CHANGED = "ROLE_CHANGED"

    # Authorization
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RELATIONSHIP_ACCESS = "RELATIONSHIP_ACCESS"
    STATUS_BLOCKED = "STATUS_BLOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

    # Sessions and contact details (provider callbacks)
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_ENDED = "SESSION_ENDED"
    EMAIL_CREATED = "EMAIL_CREATED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    SMS_CREATED = "SMS_CREATED"

    # Webhooks
    WEBHOOK_PROCESSED = "WEBHOOK_PROCESSED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"
    WEBHOOK_VERIFICATION_FAILED = "WEBHOOK_VERIFICATION_FAILED"

    # Administration
    AUDIT_LOGS_VIEWED = "AUDIT_LOGS_VIEWED"
    AUDIT_CLEANUP = "AUDIT_CLEANUP"
