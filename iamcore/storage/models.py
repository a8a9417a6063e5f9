from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SSO_PROVIDER = "sso"


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    avatar: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    is_active: bool = True
    social_provider: Optional[str] = None
    social_id: Optional[str] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_pending_secret: Optional[str] = None
    mfa_pending_created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def has_auth_means(self) -> bool:
        """A password, a provider link, or an SSO origin."""
        return bool(self.password_hash or (self.social_provider and self.social_id))


@dataclass
class Role:
    id: str
    name: str
    description: str = ""
    permissions: List[str] = field(default_factory=list)
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    description: str = ""
    resource: Optional[str] = None
    action: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
