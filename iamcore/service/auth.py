from __future__ import annotations

import contextlib
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

from iamcore.config import Settings
from iamcore.logging import get_logger, hash_email
from iamcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from iamcore.service.identity import (
    ExternalIdentity,
    OAuthClient,
    SSOVerifier,
    get_resolver,
)
from iamcore.service.mfa import MFASecretService, MFASetupResult
from iamcore.service.notifications import NotificationDispatcher
from iamcore.service.otp import OTPRegistry, OTPVerification
from iamcore.service.passwords import PasswordHasher
from iamcore.service.rbac import RBACEngine
from iamcore.service.tokens import SessionClaims, SessionTokenService
from iamcore.storage.models import SSO_PROVIDER, User, utcnow

logger = get_logger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)
MAX_PASSWORD_LENGTH = 128


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass
class AuthOutcome:
    state: AuthState
    user: Optional[User] = None
    token: Optional[str] = None
    expires_in: Optional[int] = None

    @property
    def mfa_required(self) -> bool:
        return self.state == AuthState.AWAITING_SECOND_FACTOR


@dataclass
class Principal:
    """The caller behind a validated session token, with current access."""

    user: User
    claims: SessionClaims
    role_names: List[str] = field(default_factory=list)
    permissions: Set[str] = field(default_factory=set)


def normalize_email(email: Optional[str]) -> str:
    normalized = (email or "").strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or len(normalized) > 254:
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def default_avatar(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(name)}&background=random"


class AuthOrchestrator:
    """Local, social, SSO and second-factor sign-in over one canonical user.

    Every successful path ends in :meth:`_authenticated`, which stamps the
    last-login time and mints a session token from the user's current roles.
    Failed credential checks surface one generic ``invalid credentials``
    error; only a correct password on an inactive account yields Forbidden.
    """

    def __init__(
        self,
        store,
        *,
        settings: Settings,
        hasher: PasswordHasher,
        tokens: SessionTokenService,
        otp: OTPRegistry,
        mfa: MFASecretService,
        rbac: RBACEngine,
        notifier: Optional[NotificationDispatcher] = None,
        oauth: Optional[OAuthClient] = None,
        sso: Optional[SSOVerifier] = None,
        cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.otp = otp
        self.mfa = mfa
        self.rbac = rbac
        self.notifier = notifier
        self.oauth = oauth
        self.sso = sso
        self.cache = cache
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        self._oauth_states: Dict[str, Tuple[str, datetime]] = {}
        self.logger = logger

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    # Helpers

    def _validate_password(self, password: Optional[str]) -> str:
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    def _find_by_email(self, email: str) -> Optional[User]:
        with translate_store_errors("user"):
            return self.store.find_user_by_email(email)

    def _load_user(self, user_id: str) -> User:
        with translate_store_errors("user"):
            user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _save_user(self, user: User) -> User:
        with translate_store_errors("user"):
            return self.store.save_user(user)

    async def _notify(self, user_id: str, title: str, message: str, category: str) -> None:
        if self.notifier:
            await self.notifier.send(user_id, title, message, category)

    def _check_password(self, email: str, password: str) -> User:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            self.hasher.burn(password)
            raise AuthenticationError("invalid credentials")
        user = self._find_by_email(normalized)
        digest = user.password_hash if user else None
        if not self.hasher.verify(password or "", digest):
            self.logger.info("login_rejected", email_hash=hash_email(normalized))
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            self.logger.info("login_inactive_account", user_id=user.id)
            raise ForbiddenError("account is inactive", detail={"reason": "account_inactive"})
        if self.hasher.needs_rehash(user.password_hash):
            user.password_hash = self.hasher.hash(password)
            user = self._save_user(user)
            self.logger.info("password_rehashed", user_id=user.id)
        return user

    def _authenticated(self, user: User, *, ttl_minutes: Optional[int] = None) -> AuthOutcome:
        if not user.is_active:
            raise ForbiddenError("account is inactive", detail={"reason": "account_inactive"})
        user.last_login_at = self._clock()
        user = self._save_user(user)
        token = self.tokens.issue(
            user.id,
            user.email,
            user.roles,
            ttl_minutes,
            role_names=self.rbac.role_names(user),
        )
        self.logger.info("user_authenticated", user_id=user.id)
        return AuthOutcome(
            state=AuthState.AUTHENTICATED,
            user=user,
            token=token,
            expires_in=self.tokens.ttl_seconds(ttl_minutes),
        )

    # Local path

    async def register(self, name: str, email: str, password: str) -> AuthOutcome:
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        normalized = normalize_email(email)
        self._validate_password(password)
        if self._find_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})
        with translate_store_errors("user"):
            user = self.store.create_user(
                email=normalized,
                name=name,
                password_hash=self.hasher.hash(password),
                avatar=default_avatar(name),
                roles=self.rbac.default_role_ids(),
            )
        self.logger.info("user_registered", user_id=user.id, method="password")
        return self._authenticated(user)

    async def login(self, email: str, password: str) -> AuthOutcome:
        user = self._check_password(email, password)
        if user.mfa_enabled:
            self.logger.info("login_awaiting_second_factor", user_id=user.id)
            return AuthOutcome(state=AuthState.AWAITING_SECOND_FACTOR)
        return self._authenticated(user)

    async def verify_second_factor(
        self, email: str, password: str, code: str, remember: bool = False
    ) -> AuthOutcome:
        user = self._check_password(email, password)
        if not user.mfa_enabled:
            raise ValidationError("second factor is not enabled for this account")
        with translate_store_errors("mfa"):
            verified = await self.mfa.verify_login(user.id, code)
        if not verified:
            self.logger.info("second_factor_rejected", user_id=user.id)
            raise AuthenticationError("invalid second factor code")
        ttl = self.settings.remember_token_ttl_minutes if remember else None
        return self._authenticated(user, ttl_minutes=ttl)

    # External identities

    async def social_callback(self, provider: str, profile: dict) -> AuthOutcome:
        identity = get_resolver(provider).resolve(profile)
        return await self._sign_in_external(identity)

    async def sso_exchange(self, token: str) -> AuthOutcome:
        if not token or not token.strip():
            raise ValidationError("sso token is required", detail={"field": "token"})
        if self.sso is None:
            raise ValidationError("sso not configured")
        identity = await self.sso.verify(token.strip())
        return await self._sign_in_external(identity)

    async def _sign_in_external(self, identity: ExternalIdentity) -> AuthOutcome:
        email = normalize_email(identity.email)
        with translate_store_errors("user"):
            user = self.store.find_user_by_provider_id(identity.provider, identity.external_id)
            if user is None:
                user = self.store.find_user_by_email(email)
                # Only backfill a link onto users that have none yet
                if user is not None and not user.social_provider:
                    user.social_provider = identity.provider
                    user.social_id = identity.external_id
                    user = self.store.save_user(user)
                    self.logger.info(
                        "external_identity_linked", user_id=user.id, provider=identity.provider
                    )
            if user is None:
                label = "SSO" if identity.provider == SSO_PROVIDER else identity.provider.capitalize()
                name = identity.display_name or f"{label} User"
                user = self.store.create_user(
                    email=email,
                    name=name,
                    avatar=identity.avatar or default_avatar(name),
                    roles=self.rbac.default_role_ids(),
                    social_provider=identity.provider,
                    social_id=identity.external_id,
                )
                self.logger.info("user_registered", user_id=user.id, method=identity.provider)
        return self._authenticated(user)

    async def start_oauth(self, provider: str) -> dict:
        if self.oauth is None:
            raise ValidationError("oauth not configured")
        state = secrets.token_urlsafe(32)
        authorization_url = self.oauth.authorization_url(provider, state)
        expires_at = self._clock() + OAUTH_STATE_TTL
        if self.cache:
            with translate_store_errors("oauth_state"):
                await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            with self._with_state_lock():
                now = self._clock()
                for key in [k for k, (_, exp) in self._oauth_states.items() if exp <= now]:
                    self._oauth_states.pop(key, None)
                self._oauth_states[state] = (provider, expires_at)
        return {"authorization_url": authorization_url, "state": state, "provider": provider}

    async def complete_oauth(self, provider: str, code: str, state: str) -> AuthOutcome:
        if self.oauth is None:
            raise ValidationError("oauth not configured")
        if not code or not state:
            raise ValidationError("code and state are required")
        if self.cache:
            with translate_store_errors("oauth_state"):
                stored = await self.cache.pop_oauth_state(state)
        else:
            with self._with_state_lock():
                stored = self._oauth_states.pop(state, None)
        if not stored or stored[0] != provider or stored[1] <= self._clock():
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("invalid or expired oauth state")
        profile = await self.oauth.fetch_profile(provider, code)
        return await self.social_callback(provider, profile)

    # Password reset

    async def request_password_reset(self, email: str) -> dict:
        normalized = normalize_email(email)
        user = self._find_by_email(normalized)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(normalized))
            return {"otp_issued": True}
        with translate_store_errors("otp"):
            code = await self.otp.issue(normalized)
        await self._notify(
            user.id,
            "Password Reset",
            f"Your verification code is: {code}. "
            f"It will expire in {self.settings.otp_ttl_minutes} minutes.",
            "security",
        )
        return {"otp_issued": True}

    async def verify_otp(self, email: str, code: str) -> dict:
        normalized = normalize_email(email)
        if not code or not code.strip():
            raise ValidationError("code is required", detail={"field": "code"})
        with translate_store_errors("otp"):
            result = await self.otp.verify(normalized, code)
        if result == OTPVerification.EXPIRED:
            raise AuthenticationError("verification code expired", detail={"reason": "expired"})
        if result in (OTPVerification.MISMATCH, OTPVerification.NOT_FOUND):
            # Unknown emails never get a code; answer them like a wrong code
            if result == OTPVerification.NOT_FOUND:
                self.logger.info("otp_verify_no_record", email_hash=hash_email(normalized))
            raise AuthenticationError("invalid verification code", detail={"reason": "mismatch"})
        return {"verified": True}

    async def reset_password(self, email: str, new_password: str) -> dict:
        normalized = normalize_email(email)
        self._validate_password(new_password)
        with translate_store_errors("otp"):
            record = await self.otp.peek(normalized)
        if record is None or not record.verified:
            raise ForbiddenError("verification code has not been verified")
        user = self._find_by_email(normalized)
        if not user:
            raise NotFoundError("user not found")
        user.password_hash = self.hasher.hash(new_password)
        user = self._save_user(user)
        with translate_store_errors("otp"):
            await self.otp.consume(normalized)
        self.logger.info("password_reset_completed", user_id=user.id)
        await self._notify(
            user.id,
            "Password Changed",
            "Your password has been reset. If this wasn't you, contact support immediately.",
            "security",
        )
        return {"reset": True}

    # MFA management

    async def begin_mfa_setup(self, user_id: str) -> dict:
        with translate_store_errors("user"):
            setup = self.mfa.begin_setup(user_id)
        return {"provisioning_uri": setup.provisioning_uri, "secret": setup.secret}

    async def confirm_mfa_setup(self, user_id: str, code: str) -> dict:
        with translate_store_errors("user"):
            result = self.mfa.confirm_setup(user_id, code)
        if result == MFASetupResult.NO_PENDING_SETUP:
            raise ValidationError("no pending MFA setup")
        if result == MFASetupResult.INVALID_CODE:
            raise AuthenticationError("invalid verification code")
        await self._notify(
            user_id,
            "Two-factor authentication enabled",
            "Two-factor authentication has been enabled on your account.",
            "security",
        )
        return {"enabled": True}

    async def disable_mfa(self, user_id: str) -> dict:
        with translate_store_errors("user"):
            self.mfa.disable(user_id)
        await self._notify(
            user_id,
            "Two-factor authentication disabled",
            "Two-factor authentication has been disabled on your account.",
            "security",
        )
        return {"disabled": True}

    # Sessions and accounts

    def authenticate(self, token: Optional[str]) -> Principal:
        """Resolve a bearer token to the current user and their live access."""
        claims = self.tokens.validate(token)
        if claims is None:
            raise AuthenticationError(
                "invalid or expired session", detail={"reason": "invalid_token"}
            )
        with translate_store_errors("user"):
            user = self.store.get_user(claims.user_id)
        if user is None:
            raise AuthenticationError("user not found", detail={"reason": "user_not_found"})
        if not user.is_active:
            raise ForbiddenError("account is inactive", detail={"reason": "account_inactive"})
        return Principal(
            user=user,
            claims=claims,
            role_names=self.rbac.role_names(user),
            permissions=self.rbac.resolve_permissions(user),
        )

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> dict:
        user = self._load_user(user_id)
        self._validate_password(new_password)
        if not self.hasher.verify(current_password or "", user.password_hash):
            raise AuthenticationError("current password is incorrect")
        user.password_hash = self.hasher.hash(new_password)
        self._save_user(user)
        self.logger.info("password_changed", user_id=user_id)
        await self._notify(
            user_id, "Password Changed", "Your password has been changed.", "security"
        )
        return {"changed": True}

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        """Change display fields; omitted fields are left as they are."""
        user = self._load_user(user_id)
        changed = []
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("name is required", detail={"field": "name"})
            user.name = name
            changed.append("name")
        if email is not None:
            normalized = normalize_email(email)
            if normalized != user.email:
                existing = self._find_by_email(normalized)
                if existing and existing.id != user.id:
                    raise ConflictError("email already registered", detail={"field": "email"})
                user.email = normalized
                changed.append("email")
        if avatar is not None:
            user.avatar = avatar.strip() or default_avatar(user.name)
            changed.append("avatar")
        if not changed:
            return user
        user = self._save_user(user)
        self.logger.info("profile_updated", user_id=user_id, fields=changed)
        return user

    def set_user_status(self, user_id: str, is_active: bool) -> User:
        user = self._load_user(user_id)
        user.is_active = bool(is_active)
        user = self._save_user(user)
        self.logger.info("user_status_changed", user_id=user_id, is_active=user.is_active)
        return user

    def public_user(self, user: User) -> dict:
        """User fields safe to return to clients, with resolved access."""
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "avatar": user.avatar,
            "roles": list(user.roles),
            "role_names": self.rbac.role_names(user),
            "permissions": sorted(self.rbac.resolve_permissions(user)),
            "is_active": user.is_active,
            "social_provider": user.social_provider,
            "mfa_enabled": user.mfa_enabled,
            "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
            "created_at": user.created_at.isoformat(),
        }

    def list_users_with_roles(self, limit: int = 100) -> List[dict]:
        with translate_store_errors("user"):
            users = self.store.list_users(limit=limit)
        return [self.public_user(user) for user in users]

    def get_user_with_roles(self, user_id: str) -> dict:
        return self.public_user(self._load_user(user_id))
