"""
Authorization policies for FastAPI routes

Each policy is a small callable object used as a route dependency. Policies
depend on ``current_user`` so they always see the resolved local user, and
return it so a route can take the policy as its user parameter:

    @router.get("/api/users")
    async def list_users(user: LocalUser = Depends(RequirePermission(["users:read"]))):
        ...
"""

import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from fastapi import Depends, Request

from ..auth.dependencies import current_user, get_container
from ..exceptions import AuthorizationError
from ..models import AuditAction, LocalUser, RiskLevel, UserStatus
from ..rbac import Permission, UserRole
from ..utils.logging_security import sanitize_error_message_for_log, sanitize_id_for_log
from ..utils.request import build_request_context, route_template

logger = logging.getLogger(__name__)

PermissionLike = Union[Permission, str]
CustomCheck = Callable[[LocalUser, List[str], Request], Union[bool, Awaitable[bool]]]
RelationshipCheck = Callable[[LocalUser, str, Request], Union[bool, Awaitable[bool]]]
PermissionResolver = Callable[
    [Request, LocalUser], Union[Iterable[PermissionLike], Awaitable[Iterable[PermissionLike]]]
]

STATUS_MESSAGES = {
    UserStatus.PENDING_VALIDATION.value: (
        "Your professional profile is under review. You will be notified once it is approved."
    ),
    UserStatus.INACTIVE.value: "Your account is inactive",
    UserStatus.SUSPENDED.value: "Your account has been suspended",
}


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _as_values(items: Iterable[Any]) -> List[str]:
    return [getattr(item, "value", item) for item in items]


async def enforce_permissions(
    request: Request,
    user: LocalUser,
    permissions: Sequence[PermissionLike],
    strict: bool = False,
    custom_check: Optional[CustomCheck] = None,
    log_access: bool = True,
) -> None:
    """
    Raise AuthorizationError unless ``user`` holds the permissions.

    ``strict`` requires every permission, otherwise any one suffices. A
    custom check runs first and fails closed, including when it raises.
    """
    container = get_container(request)
    rbac = container.rbac
    required = _as_values(permissions)

    if custom_check is not None:
        try:
            allowed = bool(await _resolve(custom_check(user, required, request)))
        except Exception as e:
            logger.error(f"Custom permission check raised: {sanitize_error_message_for_log(e)}")
            allowed = False
        if not allowed:
            _audit_permission_denied(request, user, required, strict, reason="custom_check")
            raise AuthorizationError("Custom permission check failed", required_permissions=required)

    if strict:
        granted = rbac.has_all_permissions(user.role, required)
    else:
        granted = rbac.has_any_permission(user.role, required)

    if not granted:
        logger.warning(
            f"Permission denied for {sanitize_id_for_log(user.id)} ({user.role}) "
            f"on {request.method} {request.url.path}",
            extra={"required_permissions": required, "strict": strict},
        )
        _audit_permission_denied(request, user, required, strict)
        raise AuthorizationError(
            f"Insufficient permissions. Required: {', '.join(required)}", required_permissions=required
        )

    if log_access:
        logger.info(
            f"Permission granted for {sanitize_id_for_log(user.id)} on {request.method} {request.url.path}",
            extra={"required_permissions": required},
        )


def _audit_denial(
    request: Request,
    user: LocalUser,
    reason: str,
    details: Optional[Dict[str, Any]] = None,
    action: AuditAction = AuditAction.AUTHORIZATION_FAILED,
) -> None:
    """Every authorization denial is recorded as a failed event at medium risk"""
    get_container(request).audit.log(
        action,
        "endpoint",
        user_id=user.id,
        resource_id=request.url.path,
        details={"user_role": user.role, "method": request.method, "reason": reason, **(details or {})},
        risk_level=RiskLevel.MEDIUM,
        success=False,
        context=build_request_context(request),
    )


def _audit_permission_denied(
    request: Request, user: LocalUser, required: List[str], strict: bool, reason: str = "missing_permission"
) -> None:
    _audit_denial(
        request,
        user,
        reason,
        {"required_permissions": required, "strict": strict},
        action=AuditAction.PERMISSION_DENIED,
    )


class RequirePermission:
    """Require any (or with ``strict``, all) of the given permissions"""

    def __init__(
        self,
        permissions: Union[PermissionLike, Sequence[PermissionLike]],
        strict: bool = False,
        custom_check: Optional[CustomCheck] = None,
        log_access: bool = True,
    ):
        if isinstance(permissions, (str, Permission)):
            permissions = [permissions]
        self.permissions = _as_values(permissions)
        self.strict = strict
        self.custom_check = custom_check
        self.log_access = log_access

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        await enforce_permissions(
            request,
            user,
            self.permissions,
            strict=self.strict,
            custom_check=self.custom_check,
            log_access=self.log_access,
        )
        return user


class RequireRole:
    """
    Require one of the given roles.

    Unless ``strict``, an admin passes every role check; that path is audited
    as ADMIN_ACCESS with ``override: true``. Roles in the allowed list are
    audited as ACCESS_GRANTED with ``override: false``.
    """

    def __init__(
        self,
        roles: Union[UserRole, str, Sequence[Union[UserRole, str]]],
        strict: bool = False,
        admin_override: bool = True,
    ):
        if isinstance(roles, (str, UserRole)):
            roles = [roles]
        self.roles = _as_values(roles)
        self.strict = strict
        self.admin_override = admin_override

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        audit = get_container(request).audit
        context = build_request_context(request)
        details = {"user_role": user.role, "required_roles": self.roles, "method": request.method}

        if user.role in self.roles:
            audit.log(
                AuditAction.ACCESS_GRANTED,
                "endpoint",
                user_id=user.id,
                resource_id=request.url.path,
                details={**details, "override": False},
                context=context,
            )
            return user

        if not self.strict and self.admin_override and user.role == UserRole.ADMIN.value:
            logger.info(
                f"Admin override granted {sanitize_id_for_log(user.id)} access to {request.method} {request.url.path}"
            )
            audit.log(
                AuditAction.ADMIN_ACCESS,
                "endpoint",
                user_id=user.id,
                resource_id=request.url.path,
                details={**details, "override": True},
                risk_level=RiskLevel.MEDIUM,
                context=context,
            )
            return user

        logger.warning(
            f"Role check failed for {sanitize_id_for_log(user.id)} ({user.role}) "
            f"on {request.method} {request.url.path}",
            extra={"required_roles": self.roles, "strict": self.strict},
        )
        _audit_denial(
            request,
            user,
            "role_mismatch",
            {"required_roles": self.roles, "strict": self.strict, "admin_override": self.admin_override},
        )
        raise AuthorizationError(f"Access denied. Required roles: {', '.join(self.roles)}", required_roles=self.roles)


class AutoPermission:
    """
    Look up the route's required permissions in the endpoint map.

    With no mapping the fallback permissions apply; with no fallback either,
    ``default_policy`` (or the configured endpoint default) decides.
    """

    def __init__(
        self,
        fallback_permissions: Optional[Sequence[PermissionLike]] = None,
        default_policy: Optional[str] = None,
        strict: bool = False,
    ):
        self.fallback_permissions = _as_values(fallback_permissions or [])
        self.default_policy = default_policy
        self.strict = strict

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        container = get_container(request)
        path = route_template(request)
        required = container.rbac.get_endpoint_permissions(request.method, path)

        if not required:
            if self.fallback_permissions:
                logger.warning(f"No permissions mapped for {request.method} {path}, using fallback")
                required = self.fallback_permissions
            else:
                policy = self.default_policy or container.settings.endpoint_default_policy
                if policy == "allow":
                    logger.warning(f"No permissions mapped for {request.method} {path}, allowing by default policy")
                    return user
                logger.warning(f"No permissions mapped for {request.method} {path}, denying by default policy")
                _audit_permission_denied(request, user, [], self.strict, reason="unmapped_endpoint")
                raise AuthorizationError("No permissions defined for this endpoint")

        await enforce_permissions(request, user, required, strict=self.strict)
        return user


class RequireOwnershipOrPermission:
    """
    Allow the resource owner, holders of an override permission, admins, or
    callers the relationship check vouches for.

    The owner id is read from path parameters, then query parameters.
    """

    def __init__(
        self,
        resource_field: str,
        override_permissions: Optional[Sequence[PermissionLike]] = None,
        allow_admin: bool = True,
        relationship_check: Optional[RelationshipCheck] = None,
    ):
        self.resource_field = resource_field
        self.override_permissions = _as_values(override_permissions or [])
        self.allow_admin = allow_admin
        self.relationship_check = relationship_check

    def _owner_id(self, request: Request) -> Optional[str]:
        return request.path_params.get(self.resource_field) or request.query_params.get(self.resource_field)

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        container = get_container(request)

        if self.allow_admin and user.role == UserRole.ADMIN.value:
            logger.info(f"Admin ownership override for {sanitize_id_for_log(user.id)} on {request.url.path}")
            return user

        if self.override_permissions and container.rbac.has_any_permission(user.role, self.override_permissions):
            logger.info(f"Resource access granted to {sanitize_id_for_log(user.id)} via permission override")
            return user

        owner_id = self._owner_id(request)
        if owner_id is None:
            _audit_denial(request, user, "missing_owner_id", {"resource_field": self.resource_field})
            raise AuthorizationError(f"{self.resource_field} is required for this operation")

        if owner_id == user.id:
            return user

        if self.relationship_check is not None:
            try:
                related = bool(await _resolve(self.relationship_check(user, owner_id, request)))
            except Exception as e:
                logger.error(f"Relationship check raised: {sanitize_error_message_for_log(e)}")
                related = False
            if related:
                logger.warning(
                    f"{user.role} {sanitize_id_for_log(user.id)} accessing resources of "
                    f"{sanitize_id_for_log(owner_id)} through a verified relationship"
                )
                container.audit.log(
                    AuditAction.RELATIONSHIP_ACCESS,
                    "endpoint",
                    user_id=user.id,
                    resource_id=owner_id,
                    details={"user_role": user.role, "resource_field": self.resource_field, "path": request.url.path},
                    risk_level=RiskLevel.MEDIUM,
                    context=build_request_context(request),
                )
                return user

        logger.warning(
            f"Ownership check failed: {sanitize_id_for_log(user.id)} -> {sanitize_id_for_log(owner_id)}",
            extra={"resource_field": self.resource_field},
        )
        _audit_denial(
            request,
            user,
            "not_owner",
            {"owner_id": owner_id, "resource_field": self.resource_field},
        )
        raise AuthorizationError(
            "You can only access your own resources", required_permissions=self.override_permissions
        )


class RequireTimeBasedPermission:
    """
    Gate a permission check by time of day and day of week (server local time).

    ``allowed_hours`` is a half-open ``(start, end)`` hour window;
    ``allowed_days`` is an inclusive ``(first, last)`` weekday window with
    Sunday as 0.
    """

    def __init__(
        self,
        permissions: Union[PermissionLike, Sequence[PermissionLike]],
        allowed_hours: Optional[Tuple[int, int]] = None,
        allowed_days: Optional[Tuple[int, int]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if isinstance(permissions, (str, Permission)):
            permissions = [permissions]
        self.permissions = _as_values(permissions)
        self.allowed_hours = allowed_hours
        self.allowed_days = allowed_days
        self.clock = clock

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        now = self.clock()
        hour = now.hour
        day = (now.weekday() + 1) % 7  # Sunday = 0

        if self.allowed_hours and not (self.allowed_hours[0] <= hour < self.allowed_hours[1]):
            logger.warning(f"Access by {sanitize_id_for_log(user.id)} outside allowed hours ({hour}h)")
            _audit_denial(
                request, user, "outside_allowed_hours", {"hour": hour, "allowed_hours": list(self.allowed_hours)}
            )
            raise AuthorizationError(
                f"Access only allowed between {self.allowed_hours[0]}:00 and {self.allowed_hours[1]}:00"
            )

        if self.allowed_days and not (self.allowed_days[0] <= day <= self.allowed_days[1]):
            logger.warning(f"Access by {sanitize_id_for_log(user.id)} outside allowed days (day {day})")
            _audit_denial(request, user, "outside_allowed_days", {"day": day, "allowed_days": list(self.allowed_days)})
            raise AuthorizationError("Access only allowed on specified days")

        await enforce_permissions(request, user, self.permissions)
        return user


class RequireContextualPermission:
    """Require permissions computed from the request; an empty result lets the request through"""

    def __init__(self, resolver: PermissionResolver):
        self.resolver = resolver

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        required = list(await _resolve(self.resolver(request, user)) or [])
        if not required:
            logger.warning(f"No contextual permissions determined for {request.method} {request.url.path}")
            return user

        await enforce_permissions(request, user, required)
        return user


class RequireActiveStatus:
    """Reject users whose account status is not active"""

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        if user.is_active:
            return user

        logger.warning(f"Blocked {sanitize_id_for_log(user.id)} with status {user.status}")
        _audit_denial(request, user, "inactive_status", {"status": user.status}, action=AuditAction.STATUS_BLOCKED)
        raise AuthorizationError(
            STATUS_MESSAGES.get(user.status, "Account not fully active"),
            metadata={"status": user.status},
        )


class RequireCompleteProfile:
    """Professionals must have a completed and verified profile; other roles pass"""

    async def __call__(self, request: Request, user: LocalUser = Depends(current_user)) -> LocalUser:
        if user.role != UserRole.PROFESSIONAL.value:
            return user

        if user.profile_completed is None:
            logger.warning(f"Professional profile not found for {sanitize_id_for_log(user.id)}")
            _audit_denial(request, user, "profile_missing")
            raise AuthorizationError("Professional profile not found")

        if not user.profile_completed:
            _audit_denial(request, user, "profile_incomplete")
            raise AuthorizationError("Profile incomplete. Please complete your professional profile.")

        if not user.professional_verified:
            _audit_denial(request, user, "profile_unverified")
            raise AuthorizationError("Profile not verified. Please wait for admin approval.")

        return user
