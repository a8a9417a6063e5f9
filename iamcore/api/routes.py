from __future__ import annotations

from dataclasses import asdict
from typing import Optional, Sequence

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from iamcore.api.schemas import (
    AssignRoleRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    MFAConfirmRequest,
    MFASetupResponse,
    OAuthStartResponse,
    OTPVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCreateRequest,
    PermissionListResponse,
    PermissionResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleUpdateRequest,
    SecondFactorRequest,
    SocialProfileRequest,
    SSORequest,
    UserListResponse,
    UserResponse,
    UserStatusRequest,
)
from iamcore.logging import get_logger
from iamcore.service.auth import AuthOutcome, Principal
from iamcore.service.runtime import check_rate_limit, get_runtime
from iamcore.storage.models import Permission, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 once ``key`` exceeds ``limit`` requests per window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
        )
    return info


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    runtime = get_runtime()
    token = _bearer_token(authorization) or request.cookies.get(runtime.settings.cookie_name)
    if not token:
        raise _http_error(
            "unauthorized",
            "authentication required",
            status_code=401,
            details={"reason": "missing_token"},
        )
    return runtime.auth.authenticate(token)


def require_role(names: Sequence[str]):
    """Dependency passing when the caller currently holds any of ``names``."""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        get_runtime().rbac.require_role(names)(principal.user)
        return principal

    return dependency


def require_permission(name: str):
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        get_runtime().rbac.require_permission(name)(principal.user)
        return principal

    return dependency


def _apply_session_cookie(response: Response, token: str, max_age: int) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max_age,
        path="/",
    )


def _user_response(runtime, user) -> UserResponse:
    return UserResponse(**runtime.auth.public_user(user))


def _auth_envelope(runtime, outcome: AuthOutcome, response: Response) -> Envelope:
    if outcome.mfa_required:
        return Envelope(status="ok", data=AuthResponse(mfa_required=True))
    _apply_session_cookie(response, outcome.token, outcome.expires_in)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(runtime, outcome.user),
            token=outcome.token,
            token_type="bearer",
            expires_in=outcome.expires_in,
        ),
    )


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(**asdict(role))


def _permission_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(**asdict(permission))


# Authentication


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a local account and sign it in."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"signup:{body.email}", runtime.settings.signup_rate_limit_per_minute, 60
    )
    outcome = await runtime.auth.register(body.name, body.email, body.password)
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Accounts with MFA enabled get ``mfa_required: true`` and no token; the
    client then repeats the credentials with a code on ``/auth/mfa/verify``.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute, 60
    )
    outcome = await runtime.auth.login(body.email, body.password)
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_second_factor(body: SecondFactorRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:{body.email}", runtime.settings.mfa_rate_limit_per_minute, 60
    )
    outcome = await runtime.auth.verify_second_factor(
        body.email, body.password, body.code, remember=body.remember
    )
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/social/{provider}", response_model=Envelope, tags=["auth"])
async def social_callback(
    body: SocialProfileRequest,
    response: Response,
    provider: str = Path(..., max_length=32),
):
    """Sign in with a provider profile posted by a trusted front-end."""
    runtime = get_runtime()
    if not runtime.settings.allow_unverified_social_profiles:
        raise _http_error("not_found", "not found", status_code=404)
    await _enforce_rate_limit(
        runtime, f"social:{provider}", runtime.settings.login_rate_limit_per_minute, 60
    )
    outcome = await runtime.auth.social_callback(provider, body.profile)
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(provider: str = Path(..., max_length=32)):
    runtime = get_runtime()
    # Limits state churn
    await _enforce_rate_limit(runtime, f"oauth:start:{provider}", 20, 60)
    start = await runtime.auth.start_oauth(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    response: Response,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{provider}", 10, 60)
    outcome = await runtime.auth.complete_oauth(provider, code, state)
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/sso", response_model=Envelope, tags=["auth"])
async def sso_exchange(body: SSORequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "sso", 30, 60)
    outcome = await runtime.auth.sso_exchange(body.token)
    return _auth_envelope(runtime, outcome, response)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Email a one-time code; the response never reveals whether the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    result = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=result)


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OTPVerifyRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    result = await runtime.auth.verify_otp(body.email, body.code)
    return Envelope(status="ok", data=result)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:confirm:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    result = await runtime.auth.reset_password(body.email, body.new_password)
    return Envelope(status="ok", data=result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    response.delete_cookie(runtime.settings.cookie_name, path="/")
    logger.info("user_logged_out", user_id=principal.user.id)
    return Envelope(status="ok", data={"logged_out": True})


# Profile and MFA


@router.get("/me", response_model=Envelope, tags=["profile"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_response(runtime, principal.user))


@router.patch("/me", response_model=Envelope, tags=["profile"])
async def update_me(body: ProfileUpdateRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        principal.user.id, name=body.name, email=body.email, avatar=body.avatar
    )
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/me/password", response_model=Envelope, tags=["profile"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user.id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=result)


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.begin_mfa_setup(principal.user.id)
    return Envelope(status="ok", data=MFASetupResponse(**result))


@router.post("/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(body: MFAConfirmRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:setup:{principal.user.id}", runtime.settings.mfa_rate_limit_per_minute, 60
    )
    result = await runtime.auth.confirm_mfa_setup(principal.user.id, body.code)
    return Envelope(status="ok", data=result)


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.disable_mfa(principal.user.id)
    return Envelope(status="ok", data=result)


# Identity administration


@router.get("/iam/users", response_model=Envelope, tags=["iam"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(require_permission("view_users")),
):
    runtime = get_runtime()
    items = [UserResponse(**u) for u in runtime.auth.list_users_with_roles(limit=limit)]
    return Envelope(status="ok", data=UserListResponse(items=items))


@router.get("/iam/users/{user_id}", response_model=Envelope, tags=["iam"])
async def get_user(
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission("view_users")),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserResponse(**runtime.auth.get_user_with_roles(user_id)))


@router.patch("/iam/users/{user_id}/status", response_model=Envelope, tags=["iam"])
async def set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission("update_user")),
):
    runtime = get_runtime()
    if user_id == principal.user.id and not body.is_active:
        raise _http_error("validation_error", "cannot deactivate your own account", 400)
    user = runtime.auth.set_user_status(user_id, body.is_active)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/iam/users/{user_id}/roles", response_model=Envelope, tags=["iam"])
async def assign_role(
    body: AssignRoleRequest,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_role(["admin"])),
):
    runtime = get_runtime()
    user = await runtime.rbac.assign_role(user_id, body.role_id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.delete("/iam/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["iam"])
async def remove_role(
    user_id: str = Path(..., max_length=128),
    role_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_role(["admin"])),
):
    runtime = get_runtime()
    user = await runtime.rbac.remove_role(user_id, role_id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.get("/iam/roles", response_model=Envelope, tags=["iam"])
async def list_roles(principal: Principal = Depends(require_permission("view_roles"))):
    runtime = get_runtime()
    items = [_role_response(role) for role in runtime.rbac.list_roles()]
    return Envelope(status="ok", data=RoleListResponse(items=items))


@router.post("/iam/roles", response_model=Envelope, status_code=201, tags=["iam"])
async def create_role(
    body: RoleCreateRequest, principal: Principal = Depends(require_role(["admin"]))
):
    runtime = get_runtime()
    role = runtime.rbac.create_role(
        body.name, body.description, body.permissions, is_default=body.is_default
    )
    return Envelope(status="ok", data=_role_response(role))


@router.patch("/iam/roles/{role_id}", response_model=Envelope, tags=["iam"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_role(["admin"])),
):
    runtime = get_runtime()
    role = runtime.rbac.update_role(
        role_id,
        name=body.name,
        description=body.description,
        permissions=body.permissions,
        is_default=body.is_default,
    )
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/iam/roles/{role_id}", response_model=Envelope, tags=["iam"])
async def delete_role(
    role_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_role(["admin"])),
):
    runtime = get_runtime()
    runtime.rbac.delete_role(role_id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


@router.get("/iam/permissions", response_model=Envelope, tags=["iam"])
async def list_permissions(principal: Principal = Depends(require_permission("view_roles"))):
    runtime = get_runtime()
    items = [_permission_response(p) for p in runtime.rbac.list_permissions()]
    return Envelope(status="ok", data=PermissionListResponse(items=items))


@router.post("/iam/permissions", response_model=Envelope, status_code=201, tags=["iam"])
async def create_permission(
    body: PermissionCreateRequest, principal: Principal = Depends(require_role(["admin"]))
):
    runtime = get_runtime()
    permission = runtime.rbac.create_permission(
        body.name, body.description, body.resource, body.action
    )
    return Envelope(status="ok", data=_permission_response(permission))
