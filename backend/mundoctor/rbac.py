"""
Role-Based Access Control (RBAC) System for Mundoctor
Defines permissions, the role hierarchy and endpoint permission mappings
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Set, Tuple, Union

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    """System permissions"""

    # User Management
    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    USERS_DELETE = "users:delete"
    USERS_IMPERSONATE = "users:impersonate"

    # Profile Management
    PROFILE_READ = "profile:read"
    PROFILE_WRITE = "profile:write"
    PROFILE_VALIDATE = "profile:validate"

    # Appointments
    APPOINTMENTS_READ = "appointments:read"
    APPOINTMENTS_WRITE = "appointments:write"
    APPOINTMENTS_DELETE = "appointments:delete"
    APPOINTMENTS_MANAGE_ALL = "appointments:manage_all"

    # Schedules
    SCHEDULES_READ = "schedules:read"
    SCHEDULES_WRITE = "schedules:write"
    SCHEDULES_DELETE = "schedules:delete"

    # Services
    SERVICES_READ = "services:read"
    SERVICES_WRITE = "services:write"
    SERVICES_DELETE = "services:delete"

    # Reviews
    REVIEWS_READ = "reviews:read"
    REVIEWS_WRITE = "reviews:write"
    REVIEWS_DELETE = "reviews:delete"
    REVIEWS_MODERATE = "reviews:moderate"

    # Payments
    PAYMENTS_READ = "payments:read"
    PAYMENTS_WRITE = "payments:write"
    PAYMENTS_REFUND = "payments:refund"
    PAYMENTS_ADMIN = "payments:admin"

    # Notifications
    NOTIFICATIONS_READ = "notifications:read"
    NOTIFICATIONS_WRITE = "notifications:write"
    NOTIFICATIONS_SEND = "notifications:send"
    NOTIFICATIONS_ADMIN = "notifications:admin"

    # Support Tickets
    TICKETS_READ = "tickets:read"
    TICKETS_WRITE = "tickets:write"
    TICKETS_ASSIGN = "tickets:assign"
    TICKETS_ESCALATE = "tickets:escalate"

    # System Administration
    ADMIN_USERS = "admin:users"
    ADMIN_SYSTEM = "admin:system"
    ADMIN_ANALYTICS = "admin:analytics"
    ADMIN_SETTINGS = "admin:settings"
    ADMIN_AUDIT = "admin:audit"

    # Grants every permission
    SUPER_ALL = "super:all"


PERMISSION_DESCRIPTIONS: Dict[Permission, str] = {
    Permission.USERS_READ: "Read user information",
    Permission.USERS_WRITE: "Create and update users",
    Permission.USERS_DELETE: "Delete users",
    Permission.USERS_IMPERSONATE: "Act on behalf of another user",
    Permission.PROFILE_READ: "Read own profile",
    Permission.PROFILE_WRITE: "Update own profile",
    Permission.PROFILE_VALIDATE: "Validate professional profiles",
    Permission.APPOINTMENTS_READ: "Read appointments",
    Permission.APPOINTMENTS_WRITE: "Create and update appointments",
    Permission.APPOINTMENTS_DELETE: "Cancel appointments",
    Permission.APPOINTMENTS_MANAGE_ALL: "Manage appointments of any user",
    Permission.SCHEDULES_READ: "Read schedules",
    Permission.SCHEDULES_WRITE: "Create and update schedules",
    Permission.SCHEDULES_DELETE: "Delete schedules",
    Permission.SERVICES_READ: "Read offered services",
    Permission.SERVICES_WRITE: "Create and update offered services",
    Permission.SERVICES_DELETE: "Delete offered services",
    Permission.REVIEWS_READ: "Read reviews",
    Permission.REVIEWS_WRITE: "Write reviews",
    Permission.REVIEWS_DELETE: "Delete reviews",
    Permission.REVIEWS_MODERATE: "Moderate reviews",
    Permission.PAYMENTS_READ: "Read payment information",
    Permission.PAYMENTS_WRITE: "Process payments",
    Permission.PAYMENTS_REFUND: "Issue refunds",
    Permission.PAYMENTS_ADMIN: "Administer payments",
    Permission.NOTIFICATIONS_READ: "Read notifications",
    Permission.NOTIFICATIONS_WRITE: "Create notifications",
    Permission.NOTIFICATIONS_SEND: "Send notifications",
    Permission.NOTIFICATIONS_ADMIN: "Administer notifications",
    Permission.TICKETS_READ: "Read support tickets",
    Permission.TICKETS_WRITE: "Create and update support tickets",
    Permission.TICKETS_ASSIGN: "Assign support tickets",
    Permission.TICKETS_ESCALATE: "Escalate support tickets",
    Permission.ADMIN_USERS: "User administration",
    Permission.ADMIN_SYSTEM: "System administration",
    Permission.ADMIN_ANALYTICS: "View analytics",
    Permission.ADMIN_SETTINGS: "Change system settings",
    Permission.ADMIN_AUDIT: "Read and maintain audit logs",
    Permission.SUPER_ALL: "All permissions",
}


class UserRole(str, Enum):
    """User roles in the system"""

    PATIENT = "patient"
    PROFESSIONAL = "professional"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def values(cls) -> List[str]:
        return [role.value for role in cls]


@dataclass
class RoleDefinition:
    """A role's direct permissions and the roles it inherits from"""

    permissions: List[str] = field(default_factory=list)
    inherits: List[str] = field(default_factory=list)


# Role hierarchy: each role inherits every permission of the roles it names
ROLE_HIERARCHY: Dict[UserRole, RoleDefinition] = {
    UserRole.PATIENT: RoleDefinition(
        permissions=[
            Permission.PROFILE_READ, Permission.PROFILE_WRITE,
            Permission.APPOINTMENTS_READ, Permission.APPOINTMENTS_WRITE,
            Permission.REVIEWS_READ, Permission.REVIEWS_WRITE,
            Permission.NOTIFICATIONS_READ,
            Permission.TICKETS_READ, Permission.TICKETS_WRITE,
        ],
    ),
    UserRole.PROFESSIONAL: RoleDefinition(
        permissions=[
            Permission.SCHEDULES_READ, Permission.SCHEDULES_WRITE, Permission.SCHEDULES_DELETE,
            Permission.SERVICES_READ, Permission.SERVICES_WRITE, Permission.SERVICES_DELETE,
            Permission.APPOINTMENTS_MANAGE_ALL,
            Permission.REVIEWS_MODERATE,
            Permission.PAYMENTS_READ,
            Permission.NOTIFICATIONS_WRITE,
        ],
        inherits=[UserRole.PATIENT],
    ),
    UserRole.ADMIN: RoleDefinition(
        permissions=[
            Permission.USERS_READ, Permission.USERS_WRITE, Permission.USERS_DELETE,
            Permission.PROFILE_VALIDATE,
            Permission.APPOINTMENTS_MANAGE_ALL,
            Permission.REVIEWS_MODERATE,
            Permission.PAYMENTS_ADMIN,
            Permission.NOTIFICATIONS_ADMIN,
            Permission.TICKETS_ASSIGN, Permission.TICKETS_ESCALATE,
            Permission.ADMIN_USERS, Permission.ADMIN_SYSTEM, Permission.ADMIN_ANALYTICS,
            Permission.ADMIN_SETTINGS, Permission.ADMIN_AUDIT,
        ],
        inherits=[UserRole.PROFESSIONAL],
    ),
    UserRole.SUPER_ADMIN: RoleDefinition(
        permissions=[Permission.USERS_IMPERSONATE, Permission.PAYMENTS_REFUND, Permission.SUPER_ALL],
        inherits=[UserRole.ADMIN],
    ),
}


# Endpoint permission mappings, keyed by "METHOD:path"
ENDPOINT_PERMISSIONS: Dict[str, List[Permission]] = {
    "GET:/api/users": [Permission.USERS_READ],
    "POST:/api/users": [Permission.USERS_WRITE],
    "PUT:/api/users/:id": [Permission.USERS_WRITE],
    "DELETE:/api/users/:id": [Permission.USERS_DELETE],
    "GET:/api/appointments": [Permission.APPOINTMENTS_READ],
    "POST:/api/appointments": [Permission.APPOINTMENTS_WRITE],
    "PUT:/api/appointments/:id": [Permission.APPOINTMENTS_WRITE],
    "DELETE:/api/appointments/:id": [Permission.APPOINTMENTS_DELETE],
    "GET:/api/admin/*": [Permission.ADMIN_USERS],
    "POST:/api/admin/*": [Permission.ADMIN_USERS],
    "PUT:/api/admin/*": [Permission.ADMIN_USERS],
    "DELETE:/api/admin/*": [Permission.ADMIN_USERS],
}

_PARAM_RE = re.compile(r":\w+|\{[^/}]+\}")


def _value(item: Union[Enum, str]) -> str:
    return item.value if isinstance(item, Enum) else item


def compile_endpoint_pattern(key: str) -> Pattern[str]:
    """
    Compile an endpoint key into a regex.

    ``*`` matches anything, ``:param`` and ``{param}`` match one path segment.
    """
    parts = []
    position = 0
    for match in _PARAM_RE.finditer(key):
        parts.append(re.escape(key[position : match.start()]).replace(r"\*", ".*"))
        parts.append("[^/]+")
        position = match.end()
    parts.append(re.escape(key[position:]).replace(r"\*", ".*"))
    return re.compile("^" + "".join(parts) + "$")


class RBACManager:
    """
    Role-based access control manager.

    Effective permissions are the union of a role's own permissions and those
    of every role it inherits from, computed once per role and memoised until
    the registry changes. Cycles in the inheritance graph are tolerated.
    """

    def __init__(
        self,
        roles: Optional[Dict[UserRole, RoleDefinition]] = None,
        endpoints: Optional[Dict[str, List[Permission]]] = None,
    ):
        self._permissions: Dict[str, str] = {p.value: PERMISSION_DESCRIPTIONS.get(p, "") for p in Permission}
        self._roles: Dict[str, RoleDefinition] = {}
        for role, definition in (roles if roles is not None else ROLE_HIERARCHY).items():
            self.add_role(_value(role), definition.permissions, definition.inherits)

        self._endpoints: Dict[str, List[str]] = {}
        self._endpoint_patterns: List[Tuple[str, Pattern[str]]] = []
        for key, permissions in (endpoints if endpoints is not None else ENDPOINT_PERMISSIONS).items():
            method, _, path = key.partition(":")
            self.add_endpoint_permission(method, path, permissions)

        self._effective_cache: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_permission(self, key: str, description: str = "") -> None:
        self._permissions[key] = description

    def add_role(
        self,
        role: str,
        permissions: Iterable[Union[Permission, str]],
        inherits: Optional[Iterable[Union[UserRole, str]]] = None,
    ) -> None:
        """Register or replace a role definition"""
        self._roles[_value(role)] = RoleDefinition(
            permissions=[_value(p) for p in permissions],
            inherits=[_value(r) for r in (inherits or [])],
        )
        self._effective_cache = {}

    def add_endpoint_permission(self, method: str, path: str, permissions: Iterable[Union[Permission, str]]) -> None:
        key = f"{method.upper()}:{path}"
        self._endpoints[key] = [_value(p) for p in permissions]
        self._endpoint_patterns = [(k, compile_endpoint_pattern(k)) for k in self._endpoints]

    @property
    def permissions(self) -> Dict[str, str]:
        return dict(self._permissions)

    @property
    def roles(self) -> List[str]:
        return list(self._roles)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def get_effective_permissions(self, role: Optional[str]) -> Set[str]:
        """All permissions of a role, including inherited ones. Unknown roles have none."""
        if not role:
            return set()
        role = _value(role)
        cached = self._effective_cache.get(role)
        if cached is not None:
            return set(cached)

        effective: Set[str] = set()
        visited: Set[str] = set()
        stack = [role]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            definition = self._roles.get(current)
            if definition is None:
                continue
            effective.update(definition.permissions)
            stack.extend(definition.inherits)

        self._effective_cache[role] = effective
        return set(effective)

    def has_permission(self, role: Optional[str], permission: Union[Permission, str]) -> bool:
        effective = self.get_effective_permissions(role)
        return Permission.SUPER_ALL.value in effective or _value(permission) in effective

    def has_any_permission(self, role: Optional[str], permissions: Iterable[Union[Permission, str]]) -> bool:
        return any(self.has_permission(role, p) for p in permissions)

    def has_all_permissions(self, role: Optional[str], permissions: Iterable[Union[Permission, str]]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def get_endpoint_permissions(self, method: str, path: str) -> Optional[List[str]]:
        """
        Permissions required for an endpoint.

        An exact ``METHOD:path`` mapping wins over pattern mappings; among
        patterns the first registered match wins. Returns None when nothing
        matches so callers can apply their default policy.
        """
        key = f"{method.upper()}:{path}"
        exact = self._endpoints.get(key)
        if exact is not None:
            return list(exact)

        for pattern_key, pattern in self._endpoint_patterns:
            if pattern.match(key):
                return list(self._endpoints[pattern_key])
        return None

    def describe_hierarchy(self) -> Dict[str, Dict[str, List[str]]]:
        """Role hierarchy with effective permissions, for debugging"""
        return {
            role: {
                "permissions": list(definition.permissions),
                "inherits": list(definition.inherits),
                "effective_permissions": sorted(self.get_effective_permissions(role)),
            }
            for role, definition in self._roles.items()
        }
