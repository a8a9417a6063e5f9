from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "external_failure",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    # Minimum length is configurable and enforced by the auth service
    if not value:
        raise ValueError("password is required")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_code(value: str) -> str:
    cleaned = value.strip().replace(" ", "")
    if not cleaned.isdigit():
        raise ValueError("code must be numeric")
    return cleaned


# Requests


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SecondFactorRequest(LoginRequest):
    code: str = Field(..., min_length=6, max_length=10)
    remember: bool = False

    @field_validator("code")
    @classmethod
    def _validate_second_factor_code(cls, value: str) -> str:
        return _validate_code(value)


class SocialProfileRequest(BaseModel):
    profile: Dict[str, Any]


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class SSORequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class OTPVerifyRequest(PasswordResetRequest):
    code: str = Field(..., min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def _validate_otp_code(cls, value: str) -> str:
        return _validate_code(value)


class PasswordResetConfirm(PasswordResetRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = None
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else value


class MFAConfirmRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)

    @field_validator("code")
    @classmethod
    def _validate_mfa_code(cls, value: str) -> str:
        return _validate_code(value)


class UserStatusRequest(BaseModel):
    is_active: bool


class AssignRoleRequest(BaseModel):
    role_id: str = Field(..., min_length=1, max_length=128)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: str = Field(default="", max_length=512)
    permissions: List[str] = Field(default_factory=list, max_length=256)
    is_default: bool = False


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    permissions: Optional[List[str]] = Field(default=None, max_length=256)
    is_default: Optional[bool] = None


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: str = Field(default="", max_length=512)
    resource: Optional[str] = Field(default=None, max_length=64)
    action: Optional[str] = Field(default=None, max_length=64)


# Responses


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    avatar: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    role_names: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    is_active: bool = True
    social_provider: Optional[str] = None
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class AuthResponse(BaseModel):
    mfa_required: bool = False
    user: Optional[UserResponse] = None
    token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class MFASetupResponse(BaseModel):
    provisioning_uri: str
    secret: str


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    permissions: List[str] = Field(default_factory=list)
    is_default: bool = False
    created_at: datetime
    updated_at: datetime


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


class PermissionResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    resource: Optional[str] = None
    action: Optional[str] = None
    created_at: datetime


class PermissionListResponse(BaseModel):
    items: List[PermissionResponse]
