"""
Tests for permissions and RBAC resolution.

Tests cover:
- The satisfies predicate and wildcard
- Effective permissions from roles
- Administrator wildcard
- The require_permission decorator
"""
import pytest

from faers_core.auth.authorization import PermissionResolver, require_permission
from faers_core.database.repositories import RoleRepository
from faers_core.exceptions import PermissionDenied
from faers_core.models import AuthContext
from faers_core.permissions import BUILTIN_ROLES, WILDCARD, Permission, satisfies


@pytest.fixture
def resolver(db):
    return PermissionResolver(RoleRepository(db))


class TestSatisfies:
    """Tests for satisfies."""

    def test_exact_permission(self):
        """Should grant a held permission."""
        assert satisfies({"case.create"}, Permission.CASE_CREATE)

    def test_missing_permission(self):
        """Should refuse a permission that is not held."""
        assert not satisfies({"case.create"}, "workflow.approve")

    def test_wildcard_grants_everything(self):
        """Should grant any permission to a wildcard holder."""
        assert satisfies({WILDCARD}, Permission.WORKFLOW_SUBMIT_FDA)
        assert satisfies([Permission.ALL], "anything.at.all")

    def test_mixed_enum_and_string(self):
        """Should compare enum members and plain strings alike."""
        assert satisfies([Permission.USER_VIEW], "user.view")
        assert satisfies(["user.view"], Permission.USER_VIEW)


class TestPermissionResolver:
    """Tests for PermissionResolver."""

    def test_union_of_role_permissions(self, resolver, make_user):
        """Should union permissions across all roles."""
        user = make_user("jdoe", roles=["data_entry", "read_only"])
        permissions = resolver.effective_permissions(user.id)
        assert "case.create" in permissions
        assert "workflow.submit_review" in permissions
        assert "case.view.all" in permissions
        assert WILDCARD not in permissions

    def test_user_without_roles(self, resolver, make_user):
        """Should resolve an empty set for a user with no roles."""
        user = make_user("jdoe")
        assert resolver.effective_permissions(user.id) == frozenset()

    def test_admin_gets_wildcard(self, resolver, make_user):
        """Should add the wildcard for administrator role holders."""
        user = make_user("boss", roles=["admin"])
        permissions = resolver.effective_permissions(user.id)
        assert WILDCARD in permissions
        assert resolver.is_administrator(user.id)
        assert resolver.check_permission(user.id, "system.configure")

    def test_builtin_roles_match_catalog(self, db):
        """Should seed every built-in role with its declared permissions."""
        roles = {role.id: role for role in RoleRepository(db).find_all()}
        for role_id, (_, _, granted) in BUILTIN_ROLES.items():
            assert set(roles[role_id].permissions) == {p.value for p in granted}

    def test_check_permission_for_unknown_user(self, resolver):
        """Should deny permissions to an unknown user id."""
        assert not resolver.check_permission("no-such-user", Permission.CASE_CREATE)


class _Guarded:
    def __init__(self):
        self.denials = []

    def _permission_denied(self, context, required, action):
        self.denials.append((required, action))
        raise PermissionDenied(required_permission=required)

    @require_permission(Permission.USER_CREATE)
    def create(self, context, value):
        return value * 2


class TestRequirePermission:
    """Tests for the require_permission decorator."""

    def _context(self, make_user, permissions):
        return AuthContext(user=make_user("jdoe"), session_id="s1", permissions=frozenset(permissions))

    def test_allows_holder(self, make_user):
        """Should call the method when the permission is held."""
        guarded = _Guarded()
        assert guarded.create(self._context(make_user, {"user.create"}), 21) == 42
        assert guarded.denials == []

    def test_denies_non_holder(self, make_user):
        """Should route a denial through the owner's hook."""
        guarded = _Guarded()
        with pytest.raises(PermissionDenied) as exc:
            guarded.create(self._context(make_user, {"user.view"}), 21)
        assert exc.value.required_permission == "user.create"
        assert guarded.denials == [("user.create", "create")]
