from __future__ import annotations

import uuid
from typing import Callable, Iterable, List, Optional, Sequence, Set

from iamcore.logging import get_logger
from iamcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from iamcore.storage.models import Permission, Role, User

logger = get_logger(__name__)

Guard = Callable[[Optional[User]], User]

# name, description, resource, action
DEFAULT_PERMISSIONS = [
    ("view_users", "View users", "users", "read"),
    ("create_user", "Create users", "users", "create"),
    ("update_user", "Update users", "users", "update"),
    ("delete_user", "Delete users", "users", "delete"),
    ("view_roles", "View roles", "roles", "read"),
    ("create_role", "Create roles", "roles", "create"),
    ("update_role", "Update roles", "roles", "update"),
    ("delete_role", "Delete roles", "roles", "delete"),
    ("view_dashboard", "View dashboard", "dashboard", "read"),
    ("manage_system", "Manage system settings", "system", "manage"),
]

# name, description, permissions (None = all), is_default
DEFAULT_ROLES = [
    ("admin", "Administrator with full access", None, False),
    (
        "manager",
        "Manager with user management access",
        ["view_users", "create_user", "update_user", "view_dashboard"],
        False,
    ),
    ("editor", "Editor with content access", ["view_dashboard"], False),
    ("user", "Regular user", ["view_dashboard"], True),
]


def _clean_name(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", detail={"field": field})
    if len(cleaned) > 64:
        raise ValidationError(f"{field} must be at most 64 characters", detail={"field": field})
    return cleaned


def _clean_permissions(values: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("permission names must be non-empty strings")
        cleaned.append(value.strip())
    return list(dict.fromkeys(cleaned))


class RBACEngine:
    """Role/permission resolution, request guards and catalogue mutations."""

    def __init__(self, store, notifier=None) -> None:
        self.store = store
        self.notifier = notifier
        self.logger = logger

    # Resolution

    def _roles_for(self, user: User) -> List[Role]:
        roles: List[Role] = []
        with translate_store_errors("role"):
            for role_id in user.roles:
                role = self.store.find_role_by_id(role_id)
                if role:
                    roles.append(role)
        return roles

    def role_names(self, user: User) -> List[str]:
        return sorted(role.name for role in self._roles_for(user))

    def resolve_permissions(self, user: User) -> Set[str]:
        permissions: Set[str] = set()
        for role in self._roles_for(user):
            permissions.update(role.permissions)
        return permissions

    def has_role(self, user: User, names: Sequence[str]) -> bool:
        if not names:
            return True
        return bool(set(self.role_names(user)) & set(names))

    def has_permission(self, user: User, name: str) -> bool:
        return name in self.resolve_permissions(user)

    # Guards

    def require_role(self, names: Sequence[str]) -> Guard:
        wanted = list(names)

        def guard(user: Optional[User]) -> User:
            if user is None:
                raise AuthenticationError("authentication required")
            if not self.has_role(user, wanted):
                self.logger.info("rbac_role_denied", user_id=user.id, required=wanted)
                raise ForbiddenError(
                    "insufficient role", detail={"required_roles": wanted}
                )
            return user

        return guard

    def require_permission(self, name: str) -> Guard:
        def guard(user: Optional[User]) -> User:
            if user is None:
                raise AuthenticationError("authentication required")
            if not self.has_permission(user, name):
                self.logger.info("rbac_permission_denied", user_id=user.id, required=name)
                raise ForbiddenError(
                    "insufficient permissions", detail={"required_permission": name}
                )
            return user

        return guard

    # Catalogue

    def list_roles(self) -> List[Role]:
        with translate_store_errors("role"):
            return self.store.list_roles()

    def list_permissions(self) -> List[Permission]:
        with translate_store_errors("permission"):
            return self.store.list_permissions()

    def default_role_ids(self) -> List[str]:
        return [role.id for role in self.list_roles() if role.is_default]

    def get_role(self, role_id: str) -> Role:
        with translate_store_errors("role"):
            role = self.store.find_role_by_id(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def create_role(
        self,
        name: str,
        description: str = "",
        permissions: Iterable[str] = (),
        *,
        is_default: bool = False,
    ) -> Role:
        name = _clean_name(name, "name")
        with translate_store_errors("role"):
            if self.store.find_role_by_name(name):
                raise ConflictError("role already exists", detail={"name": name})
            role = self.store.save_role(
                Role(
                    id=str(uuid.uuid4()),
                    name=name,
                    description=description or "",
                    permissions=_clean_permissions(permissions),
                    is_default=is_default,
                )
            )
        self.logger.info("role_created", role_id=role.id, name=role.name)
        return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        is_default: Optional[bool] = None,
    ) -> Role:
        role = self.get_role(role_id)
        with translate_store_errors("role"):
            if name is not None:
                new_name = _clean_name(name, "name")
                if new_name != role.name:
                    existing = self.store.find_role_by_name(new_name)
                    if existing and existing.id != role.id:
                        raise ConflictError("role name already exists", detail={"name": new_name})
                    role.name = new_name
            if description is not None:
                role.description = description
            if permissions is not None:
                role.permissions = _clean_permissions(permissions)
            if is_default is not None:
                role.is_default = is_default
            role = self.store.save_role(role)
        self.logger.info("role_updated", role_id=role.id, name=role.name)
        return role

    def delete_role(self, role_id: str) -> None:
        with translate_store_errors("role"):
            deleted = self.store.delete_role_if_unreferenced(role_id)
        if not deleted:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self.logger.info("role_deleted", role_id=role_id)

    def create_permission(
        self,
        name: str,
        description: str = "",
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Permission:
        name = _clean_name(name, "name")
        with translate_store_errors("permission"):
            if self.store.find_permission_by_name(name):
                raise ConflictError("permission already exists", detail={"name": name})
            permission = self.store.save_permission(
                Permission(
                    id=str(uuid.uuid4()),
                    name=name,
                    description=description or "",
                    resource=resource,
                    action=action,
                )
            )
        self.logger.info("permission_created", permission_id=permission.id, name=name)
        return permission

    # Assignments

    def _load_user(self, user_id: str) -> User:
        with translate_store_errors("user"):
            user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def assign_role(self, user_id: str, role_id: str) -> User:
        user = self._load_user(user_id)
        role = self.get_role(role_id)
        if role.id in user.roles:
            raise ConflictError(
                "user already has this role", detail={"user_id": user_id, "role_id": role_id}
            )
        user.roles.append(role.id)
        with translate_store_errors("user"):
            user = self.store.save_user(user)
        self.logger.info("role_assigned", user_id=user_id, role_id=role.id, role=role.name)
        await self._notify(
            user.id, "Role Assigned", f"You have been assigned the {role.name} role."
        )
        return user

    async def remove_role(self, user_id: str, role_id: str) -> User:
        user = self._load_user(user_id)
        if role_id not in user.roles:
            raise NotFoundError(
                "user does not have this role", detail={"user_id": user_id, "role_id": role_id}
            )
        role = self.get_role(role_id)
        user.roles = [rid for rid in user.roles if rid != role_id]
        with translate_store_errors("user"):
            user = self.store.save_user(user)
        self.logger.info("role_removed", user_id=user_id, role_id=role_id, role=role.name)
        await self._notify(
            user.id, "Role Removed", f"The {role.name} role has been removed from your account."
        )
        return user

    async def _notify(self, user_id: str, title: str, message: str) -> None:
        if self.notifier:
            await self.notifier.send(user_id, title, message, "account")

    # Provisioning

    def seed_defaults(self) -> dict:
        """Create the default permission and role catalogue; safe to re-run."""
        created_permissions: List[str] = []
        created_roles: List[str] = []
        with translate_store_errors("permission"):
            for name, description, resource, action in DEFAULT_PERMISSIONS:
                if self.store.find_permission_by_name(name):
                    continue
                self.create_permission(name, description, resource, action)
                created_permissions.append(name)
        all_permissions = [name for name, *_ in DEFAULT_PERMISSIONS]
        with translate_store_errors("role"):
            for name, description, permissions, is_default in DEFAULT_ROLES:
                if self.store.find_role_by_name(name):
                    continue
                self.create_role(
                    name,
                    description,
                    all_permissions if permissions is None else permissions,
                    is_default=is_default,
                )
                created_roles.append(name)
        if created_permissions or created_roles:
            self.logger.info(
                "rbac_defaults_seeded",
                permissions=created_permissions,
                roles=created_roles,
            )
        return {"permissions": created_permissions, "roles": created_roles}

    async def grant_role_by_name(self, user_id: str, role_name: str) -> User:
        """Explicit grant used by provisioning; a no-op when already held."""
        with translate_store_errors("role"):
            role = self.store.find_role_by_name(role_name)
        if not role:
            raise NotFoundError("role not found", detail={"name": role_name})
        user = self._load_user(user_id)
        if role.id in user.roles:
            return user
        return await self.assign_role(user_id, role.id)
