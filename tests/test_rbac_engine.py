"""Unit tests for role/permission resolution, guards and catalogue changes."""

import pytest

from iamcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from iamcore.service.rbac import DEFAULT_PERMISSIONS, RBACEngine
from iamcore.storage.memory import MemoryStore


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, title, message, category="info"):
        self.sent.append((user_id, title, message, category))
        return True


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rbac(memory_store, notifier):
    return RBACEngine(memory_store, notifier=notifier)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        email="alice@example.com", name="Alice", password_hash="$argon2id$placeholder"
    )


@pytest.fixture
def two_roles(rbac):
    r1 = rbac.create_role("R1", permissions=["p1", "p2"])
    r2 = rbac.create_role("R2", permissions=["p2", "p3"])
    return r1, r2


class TestResolution:
    """Tests for effective permission computation."""

    async def test_union_across_roles(self, rbac, memory_store, user, two_roles):
        r1, r2 = two_roles
        await rbac.assign_role(user.id, r1.id)
        await rbac.assign_role(user.id, r2.id)

        current = memory_store.get_user(user.id)

        assert rbac.resolve_permissions(current) == {"p1", "p2", "p3"}
        assert rbac.role_names(current) == ["R1", "R2"]

    def test_no_roles_no_permissions(self, rbac, user):
        assert rbac.resolve_permissions(user) == set()
        assert rbac.role_names(user) == []

    async def test_dangling_role_ids_ignored(self, rbac, memory_store, user):
        user.roles = ["deleted-role-id"]
        memory_store.save_user(user)

        assert rbac.resolve_permissions(memory_store.get_user(user.id)) == set()

    async def test_role_update_changes_access_immediately(self, rbac, memory_store, user, two_roles):
        r1, _ = two_roles
        await rbac.assign_role(user.id, r1.id)

        rbac.update_role(r1.id, permissions=["p9"])

        assert rbac.resolve_permissions(memory_store.get_user(user.id)) == {"p9"}


class TestGuards:
    """Tests for request guards."""

    async def test_permission_guard(self, rbac, memory_store, user, two_roles):
        r1, r2 = two_roles
        await rbac.assign_role(user.id, r1.id)
        await rbac.assign_role(user.id, r2.id)
        current = memory_store.get_user(user.id)

        assert rbac.require_permission("p3")(current).id == user.id
        with pytest.raises(ForbiddenError) as exc_info:
            rbac.require_permission("p4")(current)
        assert exc_info.value.detail == {"required_permission": "p4"}

    async def test_role_guard_any_of(self, rbac, memory_store, user, two_roles):
        r1, _ = two_roles
        await rbac.assign_role(user.id, r1.id)
        current = memory_store.get_user(user.id)

        assert rbac.require_role(["R1", "admin"])(current).id == user.id
        with pytest.raises(ForbiddenError):
            rbac.require_role(["R2"])(current)

    def test_guards_require_a_user(self, rbac):
        """Test that an absent caller is unauthorized rather than forbidden."""
        with pytest.raises(AuthenticationError):
            rbac.require_role(["admin"])(None)
        with pytest.raises(AuthenticationError):
            rbac.require_permission("p1")(None)

    def test_empty_role_list_admits_any_user(self, rbac, user):
        assert rbac.require_role([])(user) is user


class TestCatalogue:
    """Tests for role and permission management."""

    def test_duplicate_role_name(self, rbac, two_roles):
        with pytest.raises(ConflictError):
            rbac.create_role("R1")

    def test_blank_role_name(self, rbac):
        with pytest.raises(ValidationError):
            rbac.create_role("   ")

    def test_rename_collision(self, rbac, two_roles):
        r1, _ = two_roles
        with pytest.raises(ConflictError):
            rbac.update_role(r1.id, name="R2")

    def test_update_fields(self, rbac, two_roles):
        r1, _ = two_roles

        updated = rbac.update_role(
            r1.id, name="Reviewers", description="Reviews things", is_default=True
        )

        assert updated.name == "Reviewers"
        assert updated.description == "Reviews things"
        assert updated.is_default is True
        assert updated.permissions == ["p1", "p2"]
        assert rbac.default_role_ids() == [r1.id]

    def test_update_unknown_role(self, rbac):
        with pytest.raises(NotFoundError):
            rbac.update_role("missing", name="x")

    def test_permissions_deduplicated(self, rbac):
        role = rbac.create_role("dupes", permissions=["a", "b", "a"])

        assert role.permissions == ["a", "b"]

    async def test_delete_referenced_role_conflicts(self, rbac, user, two_roles):
        """Test that a held role survives deletion until it is removed from everyone."""
        r1, _ = two_roles
        await rbac.assign_role(user.id, r1.id)

        with pytest.raises(ConflictError):
            rbac.delete_role(r1.id)
        assert rbac.get_role(r1.id).name == "R1"

        await rbac.remove_role(user.id, r1.id)
        rbac.delete_role(r1.id)

        with pytest.raises(NotFoundError):
            rbac.get_role(r1.id)

    def test_delete_unknown_role(self, rbac):
        with pytest.raises(NotFoundError):
            rbac.delete_role("missing")

    def test_create_permission(self, rbac):
        permission = rbac.create_permission("export_reports", "Export", "reports", "export")

        assert permission.resource == "reports"
        assert permission.action == "export"
        assert [p.name for p in rbac.list_permissions()] == ["export_reports"]

    def test_duplicate_permission(self, rbac):
        rbac.create_permission("export_reports")
        with pytest.raises(ConflictError):
            rbac.create_permission("export_reports")


class TestAssignments:
    async def test_assign_duplicate_conflicts(self, rbac, user, two_roles):
        r1, _ = two_roles
        await rbac.assign_role(user.id, r1.id)

        with pytest.raises(ConflictError):
            await rbac.assign_role(user.id, r1.id)

    async def test_assign_unknown_role(self, rbac, user):
        with pytest.raises(NotFoundError):
            await rbac.assign_role(user.id, "missing")

    async def test_assign_unknown_user(self, rbac, two_roles):
        r1, _ = two_roles
        with pytest.raises(NotFoundError):
            await rbac.assign_role("missing", r1.id)

    async def test_remove_unheld_role(self, rbac, user, two_roles):
        r1, _ = two_roles
        with pytest.raises(NotFoundError):
            await rbac.remove_role(user.id, r1.id)

    async def test_assignment_notifies_user(self, rbac, notifier, user, two_roles):
        r1, _ = two_roles

        await rbac.assign_role(user.id, r1.id)
        await rbac.remove_role(user.id, r1.id)

        assert [(t, c) for _, t, _, c in notifier.sent] == [
            ("Role Assigned", "account"),
            ("Role Removed", "account"),
        ]
        assert "R1" in notifier.sent[0][2]


class TestSeeding:
    def test_seed_creates_defaults(self, rbac):
        created = rbac.seed_defaults()

        assert created["roles"] == ["admin", "manager", "editor", "user"]
        assert len(created["permissions"]) == len(DEFAULT_PERMISSIONS)
        admin = next(r for r in rbac.list_roles() if r.name == "admin")
        assert set(admin.permissions) == {name for name, *_ in DEFAULT_PERMISSIONS}
        assert [rbac.get_role(rid).name for rid in rbac.default_role_ids()] == ["user"]

    def test_seed_is_idempotent(self, rbac):
        rbac.seed_defaults()

        again = rbac.seed_defaults()

        assert again == {"permissions": [], "roles": []}
        assert len(rbac.list_roles()) == 4

    async def test_grant_role_by_name_is_idempotent(self, rbac, memory_store, user, notifier):
        rbac.seed_defaults()

        await rbac.grant_role_by_name(user.id, "admin")
        await rbac.grant_role_by_name(user.id, "admin")

        assert rbac.role_names(memory_store.get_user(user.id)) == ["admin"]
        assert len(notifier.sent) == 1

    async def test_grant_unknown_role(self, rbac, user):
        with pytest.raises(NotFoundError):
            await rbac.grant_role_by_name(user.id, "superuser")
