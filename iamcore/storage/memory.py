from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from iamcore.logging import get_logger
from iamcore.storage.errors import ConstraintViolation, StoreUnavailable
from iamcore.storage.models import Permission, Role, User, utcnow


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process credential store with JSON persistence under ``fs_root``.

    Every accessor returns a copy; callers mutate the copy and hand it back
    through ``save_user``/``save_role`` so writes happen under the data lock.
    MFA secrets are Fernet-encrypted whenever they touch disk.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/iamcore",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "iam_store.json"

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise StoreUnavailable(f"state directory missing: {self.fs_root}")

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            secret_path = self.fs_root / ".mfa_key"
            if secret_path.exists():
                material = secret_path.read_text().strip()
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(material)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Key rotated underneath us; the secret is unusable
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    @staticmethod
    def _copy_user(user: User) -> User:
        return dataclasses.replace(user, roles=list(user.roles))

    @staticmethod
    def _copy_role(role: Role) -> Role:
        return dataclasses.replace(role, permissions=list(role.permissions))

    # Users

    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._copy_user(user) if user else None

    def find_user_by_provider_id(self, provider: str, external_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.social_provider == provider and u.social_id == external_id
                ),
                None,
            )
            return self._copy_user(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._copy_user(u) for u in ordered[:limit]]

    def create_user(
        self,
        *,
        email: str,
        name: str,
        password_hash: Optional[str] = None,
        avatar: Optional[str] = None,
        roles: Optional[List[str]] = None,
        social_provider: Optional[str] = None,
        social_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized = _normalize_email(email)
        user = User(
            id=str(uuid.uuid4()),
            email=normalized,
            name=name,
            password_hash=password_hash,
            avatar=avatar,
            roles=list(dict.fromkeys(roles or [])),
            is_active=is_active,
            social_provider=social_provider,
            social_id=social_id,
        )
        if not user.has_auth_means():
            raise ConstraintViolation(
                "user requires a password or a linked identity", {"field": "credentials"}
            )
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            self._persist_state()
            return self._copy_user(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            user.email = _normalize_email(user.email)
            if any(
                existing.email == user.email and existing.id != user.id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if not user.has_auth_means():
                raise ConstraintViolation(
                    "user requires a password or a linked identity", {"field": "credentials"}
                )
            stored = self._copy_user(user)
            stored.roles = list(dict.fromkeys(stored.roles))
            stored.updated_at = utcnow()
            self.users[user.id] = stored
            self._persist_state()
            return self._copy_user(stored)

    # Roles

    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return self._copy_role(role) if role else None

    def find_role_by_id(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._copy_role(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            ordered = sorted(self.roles.values(), key=lambda r: r.name)
            return [self._copy_role(r) for r in ordered]

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            if any(
                existing.name == role.name and existing.id != role.id
                for existing in self.roles.values()
            ):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            stored = self._copy_role(role)
            stored.permissions = list(dict.fromkeys(stored.permissions))
            stored.updated_at = utcnow()
            self.roles[role.id] = stored
            self._persist_state()
            return self._copy_role(stored)

    def delete_role_if_unreferenced(self, role_id: str) -> bool:
        """Delete a role nobody holds.

        Returns False when the role does not exist; raises ConstraintViolation
        when any user still references it.
        """
        with self._data_lock:
            if role_id not in self.roles:
                return False
            holders = sum(1 for u in self.users.values() if role_id in u.roles)
            if holders:
                raise ConstraintViolation(
                    "role is assigned to users", {"role_id": role_id, "holders": holders}
                )
            self.roles.pop(role_id, None)
            self._persist_state()
            return True

    # Permissions

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: p.name)
            return [dataclasses.replace(p) for p in ordered]

    def find_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            perm = next((p for p in self.permissions.values() if p.name == name), None)
            return dataclasses.replace(perm) if perm else None

    def save_permission(self, permission: Permission) -> Permission:
        with self._data_lock:
            if any(
                existing.name == permission.name and existing.id != permission.id
                for existing in self.permissions.values()
            ):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            self.permissions[permission.id] = dataclasses.replace(permission)
            self._persist_state()
            return dataclasses.replace(permission)

    # Persistence

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "permissions": [
                self._serialize_permission(p) for p in self.permissions.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"failed to load state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.permissions = {
            p["id"]: self._deserialize_permission(p) for p in data.get("permissions", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "avatar": user.avatar,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "social_provider": user.social_provider,
            "social_id": user.social_id,
            "mfa_enabled": user.mfa_enabled,
            "mfa_secret": self._encrypt_secret(user.mfa_secret),
            "mfa_pending_secret": self._encrypt_secret(user.mfa_pending_secret),
            "mfa_pending_created_at": self._serialize_datetime(user.mfa_pending_created_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or "",
            password_hash=data.get("password_hash"),
            avatar=data.get("avatar"),
            roles=list(data.get("roles", [])),
            is_active=data.get("is_active", True),
            social_provider=data.get("social_provider"),
            social_id=data.get("social_id"),
            mfa_enabled=data.get("mfa_enabled", False),
            mfa_secret=self._decrypt_secret(data.get("mfa_secret")),
            mfa_pending_secret=self._decrypt_secret(data.get("mfa_pending_secret")),
            mfa_pending_created_at=self._deserialize_datetime(
                data.get("mfa_pending_created_at")
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "description": role.description,
            "permissions": list(role.permissions),
            "is_default": role.is_default,
            "created_at": self._serialize_datetime(role.created_at),
            "updated_at": self._serialize_datetime(role.updated_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=str(data["id"]),
            name=data["name"],
            description=data.get("description", ""),
            permissions=list(data.get("permissions", [])),
            is_default=data.get("is_default", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_permission(self, permission: Permission) -> dict:
        return {
            "id": permission.id,
            "name": permission.name,
            "description": permission.description,
            "resource": permission.resource,
            "action": permission.action,
            "created_at": self._serialize_datetime(permission.created_at),
        }

    def _deserialize_permission(self, data: dict) -> Permission:
        return Permission(
            id=str(data["id"]),
            name=data["name"],
            description=data.get("description", ""),
            resource=data.get("resource"),
            action=data.get("action"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
