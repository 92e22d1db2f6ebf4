"""
Mundoctor Exceptions

Error taxonomy shared by the identity verifier, sync engine, permission
policies and webhook handling. Every subclass of AppError carries the HTTP
status and machine-readable code it is rendered with.
"""

from typing import Any, Dict, List, Optional


class AppError(Exception):
    """Base class for errors that are reported to API callers.

    Attributes:
        message: Human-readable message returned to the caller
        status_code: HTTP status the error is rendered with
        code: Stable machine-readable error code
        metadata: Extra fields merged into the JSON error body
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.metadata = metadata or {}
        super().__init__(self.message)


class AuthenticationError(AppError):
    """Raised when a credential is missing, invalid or expired.

    Also raised when a verified principal cannot be resolved to a local user
    after an auto-sync attempt. Never retried automatically.
    """

    status_code = 401
    code = "AUTHENTICATION_ERROR"
    default_message = "Authentication required"


class AuthorizationError(AppError):
    """Raised when a resolved user lacks a required role, permission or ownership.

    Attributes:
        required_permissions: Permissions that would have granted access
        required_roles: Roles that would have granted access

    Example:
        raise AuthorizationError(
            "Insufficient permissions. Required: users:read",
            required_permissions=["users:read"],
        )
    """

    status_code = 403
    code = "AUTHORIZATION_ERROR"
    default_message = "Insufficient permissions"

    def __init__(
        self,
        message: Optional[str] = None,
        required_permissions: Optional[List[str]] = None,
        required_roles: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.required_permissions = list(required_permissions or [])
        self.required_roles = list(required_roles or [])
        extra = dict(metadata or {})
        if self.required_permissions:
            extra["required_permissions"] = self.required_permissions
        if self.required_roles:
            extra["required_roles"] = self.required_roles
        super().__init__(message, metadata=extra)


class ValidationError(AppError):
    """Raised when request or profile data fails business validation."""

    status_code = 422
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class NotFoundError(AppError):
    """Raised when a user or profile does not exist."""

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    """Raised when a record already exists or conflicts with current state."""

    status_code = 409
    code = "CONFLICT"
    default_message = "Resource already exists"


class RateLimitError(AppError):
    """Raised when a user exceeds the per-user request budget.

    Attributes:
        retry_after: Seconds until the window resets
    """

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        self.retry_after = retry_after
        super().__init__(message, metadata={"retry_after": retry_after})


class ProviderError(AppError):
    """Raised when a call to the identity provider's backend API fails.

    Attributes:
        upstream_status: Status code returned by the provider, if any
    """

    status_code = 502
    code = "PROVIDER_ERROR"
    default_message = "Identity provider request failed"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        if upstream_status == 404:
            message = message or "User not found in identity provider"
        super().__init__(message)


class WebhookVerificationError(AppError):
    """Raised when a provider webhook fails signature or timestamp checks."""

    status_code = 400
    code = "WEBHOOK_VERIFICATION_FAILED"
    default_message = "Invalid webhook signature"


class WebhookProcessingError(AppError):
    """Raised when a webhook handler keeps failing after every retry.

    Attributes:
        event_id: Provider event id
        attempts: Number of attempts made
        original: The handler's last exception
    """

    status_code = 500
    code = "WEBHOOK_PROCESSING_FAILED"
    default_message = "Webhook processing failed"

    def __init__(self, event_id: str, attempts: int, original: BaseException):
        self.event_id = event_id
        self.attempts = attempts
        self.original = original
        super().__init__(metadata={"event_id": event_id, "attempts": attempts})
