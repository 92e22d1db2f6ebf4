"""
Unit tests for the RBAC manager.

Covers role inheritance, the super:all sentinel, endpoint mapping lookup
and registry changes.
"""

import pytest

from mundoctor.rbac import (
    ROLE_HIERARCHY,
    Permission,
    RBACManager,
    RoleDefinition,
    UserRole,
    compile_endpoint_pattern,
)


@pytest.fixture
def rbac() -> RBACManager:
    """Manager with the default role hierarchy and endpoint map."""
    return RBACManager()


@pytest.mark.unit
class TestRoleInheritance:
    """Test effective permission computation."""

    @pytest.mark.parametrize(
        "lower,higher",
        [
            (UserRole.PATIENT, UserRole.PROFESSIONAL),
            (UserRole.PROFESSIONAL, UserRole.ADMIN),
            (UserRole.ADMIN, UserRole.SUPER_ADMIN),
        ],
    )
    def test_higher_role_includes_lower_role(self, rbac: RBACManager, lower: UserRole, higher: UserRole) -> None:
        """Every permission of an inherited role is also held by the inheriting role."""
        assert rbac.get_effective_permissions(lower.value) <= rbac.get_effective_permissions(higher.value)

    def test_professional_inherits_patient_permissions(self, rbac: RBACManager) -> None:
        """A professional can book appointments like a patient."""
        assert rbac.has_permission("professional", Permission.APPOINTMENTS_WRITE)

    def test_patient_lacks_professional_permissions(self, rbac: RBACManager) -> None:
        """Inheritance does not flow downwards."""
        assert not rbac.has_permission("patient", Permission.SCHEDULES_WRITE)

    def test_unknown_role_has_no_permissions(self, rbac: RBACManager) -> None:
        """Unregistered roles and None resolve to the empty set."""
        assert rbac.get_effective_permissions("ghost") == set()
        assert rbac.get_effective_permissions(None) == set()
        assert not rbac.has_permission("ghost", Permission.PROFILE_READ)

    def test_effective_permissions_returns_a_copy(self, rbac: RBACManager) -> None:
        """Mutating a returned set does not leak into later lookups."""
        perms = rbac.get_effective_permissions("patient")
        perms.add("admin:system")
        assert "admin:system" not in rbac.get_effective_permissions("patient")

    def test_cyclic_inheritance_terminates(self) -> None:
        """A cycle in the hierarchy yields the union of the cycle's permissions."""
        manager = RBACManager(
            roles={
                "a": RoleDefinition(permissions=["x:read"], inherits=["b"]),
                "b": RoleDefinition(permissions=["y:read"], inherits=["a"]),
            },
            endpoints={},
        )
        assert manager.get_effective_permissions("a") == {"x:read", "y:read"}
        assert manager.get_effective_permissions("b") == {"x:read", "y:read"}

    def test_add_role_invalidates_memo(self, rbac: RBACManager) -> None:
        """Redefining a role is visible to roles that inherit from it."""
        assert not rbac.has_permission("professional", "tickets:close")
        patient = ROLE_HIERARCHY[UserRole.PATIENT]
        rbac.add_role("patient", [*patient.permissions, "tickets:close"])
        assert rbac.has_permission("professional", "tickets:close")

    def test_describe_hierarchy_lists_every_role(self, rbac: RBACManager) -> None:
        """The debug view has one entry per role with sorted effective permissions."""
        description = rbac.describe_hierarchy()
        assert set(description) == set(UserRole.values())
        effective = description["admin"]["effective_permissions"]
        assert effective == sorted(effective)
        assert description["professional"]["inherits"] == ["patient"]


@pytest.mark.unit
class TestPermissionChecks:
    """Test has_permission and its any/all variants."""

    def test_super_all_grants_everything(self, rbac: RBACManager) -> None:
        """super_admin holds permissions that are not even registered."""
        assert rbac.has_permission("super_admin", "anything:at_all")
        assert rbac.has_all_permissions("super_admin", [p.value for p in Permission])

    def test_admin_does_not_hold_super_only_permissions(self, rbac: RBACManager) -> None:
        """Permissions granted only to super_admin are not inherited downwards."""
        assert not rbac.has_permission("admin", Permission.USERS_IMPERSONATE)

    def test_has_any_permission(self, rbac: RBACManager) -> None:
        """One matching permission is enough."""
        assert rbac.has_any_permission("patient", [Permission.ADMIN_SYSTEM, Permission.PROFILE_READ])
        assert not rbac.has_any_permission("patient", [Permission.ADMIN_SYSTEM, Permission.USERS_DELETE])

    def test_has_all_permissions(self, rbac: RBACManager) -> None:
        """Every permission must match."""
        assert rbac.has_all_permissions("admin", [Permission.ADMIN_USERS, Permission.USERS_WRITE])
        assert not rbac.has_all_permissions("professional", [Permission.SCHEDULES_READ, Permission.ADMIN_USERS])

    def test_empty_requirement_lists(self, rbac: RBACManager) -> None:
        """An empty any-list grants nothing; an empty all-list is vacuously satisfied."""
        assert not rbac.has_any_permission("admin", [])
        assert rbac.has_all_permissions("patient", [])


@pytest.mark.unit
class TestEndpointPermissions:
    """Test endpoint map lookup."""

    def test_exact_match(self, rbac: RBACManager) -> None:
        """A literal METHOD:path key is found."""
        assert rbac.get_endpoint_permissions("GET", "/api/users") == ["users:read"]

    def test_method_is_case_insensitive(self, rbac: RBACManager) -> None:
        """Methods are upper-cased before lookup."""
        assert rbac.get_endpoint_permissions("post", "/api/users") == ["users:write"]

    def test_path_parameter_pattern(self, rbac: RBACManager) -> None:
        """``:id`` matches a single path segment."""
        assert rbac.get_endpoint_permissions("DELETE", "/api/users/user_123") == ["users:delete"]
        assert rbac.get_endpoint_permissions("DELETE", "/api/users/user_123/extra") is None

    def test_wildcard_pattern(self, rbac: RBACManager) -> None:
        """``*`` matches any remainder, including nested segments."""
        assert rbac.get_endpoint_permissions("GET", "/api/admin/audit-logs/stats") == ["admin:users"]

    def test_exact_match_beats_pattern(self, rbac: RBACManager) -> None:
        """A literal mapping wins over a wildcard covering the same path."""
        rbac.add_endpoint_permission("GET", "/api/admin/audit-logs", [Permission.ADMIN_AUDIT])
        assert rbac.get_endpoint_permissions("GET", "/api/admin/audit-logs") == ["admin:audit"]
        assert rbac.get_endpoint_permissions("GET", "/api/admin/other") == ["admin:users"]

    def test_unmapped_endpoint_returns_none(self, rbac: RBACManager) -> None:
        """No mapping means None, not an empty list."""
        assert rbac.get_endpoint_permissions("GET", "/api/unknown") is None
        assert rbac.get_endpoint_permissions("PATCH", "/api/users") is None

    def test_template_paths_match_parameter_patterns(self, rbac: RBACManager) -> None:
        """FastAPI style ``{id}`` templates resolve against ``:id`` mappings."""
        assert rbac.get_endpoint_permissions("PUT", "/api/appointments/{id}") == ["appointments:write"]

    def test_compile_endpoint_pattern_escapes_literals(self) -> None:
        """Regex metacharacters in a path are taken literally."""
        pattern = compile_endpoint_pattern("GET:/api/v1.0/items/{item_id}")
        assert pattern.match("GET:/api/v1.0/items/42")
        assert not pattern.match("GET:/api/v1x0/items/42")
