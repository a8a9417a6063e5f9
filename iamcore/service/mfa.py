from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

from iamcore.logging import get_logger
from iamcore.service.errors import NotFoundError, translate_store_errors
from iamcore.storage.models import User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def new_secret() -> str:
    """160-bit base32 secret, the size authenticator apps expect."""
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, for_time: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``for_time``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(for_time // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{params}"


class MFASetupResult(str, Enum):
    ENABLED = "enabled"
    INVALID_CODE = "invalid_code"
    NO_PENDING_SETUP = "no_pending_setup"


@dataclass(frozen=True)
class MFASetup:
    provisioning_uri: str
    secret: str


class MFASecretService:
    """Two-phase TOTP enrolment and second-factor checks.

    Setup writes a pending secret; the first valid code promotes it to the
    confirmed secret. Login checks only ever consult the confirmed secret
    and are subject to a lockout after repeated failures.
    """

    def __init__(
        self,
        store,
        cache=None,
        *,
        issuer: str = "IAM Application",
        valid_window: int = 1,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.valid_window = valid_window
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._state_lock = threading.Lock()
        # In-memory lockout fallback when Redis is unavailable
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _load_user(self, user_id: str) -> User:
        with translate_store_errors("user"):
            user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _save_user(self, user: User) -> User:
        with translate_store_errors("user"):
            return self.store.save_user(user)

    def verify_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = self._clock()
        for offset in range(-self.valid_window, self.valid_window + 1):
            generated = generate_totp(secret, now + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def begin_setup(self, user_id: str) -> MFASetup:
        user = self._load_user(user_id)
        secret = new_secret()
        user.mfa_pending_secret = secret
        user.mfa_pending_created_at = self._now()
        self._save_user(user)
        logger.info("mfa_setup_started", user_id=user_id, already_enabled=user.mfa_enabled)
        return MFASetup(
            provisioning_uri=provisioning_uri(secret, user.email, self.issuer), secret=secret
        )

    def confirm_setup(self, user_id: str, code: str) -> MFASetupResult:
        user = self._load_user(user_id)
        if not user.mfa_pending_secret:
            return MFASetupResult.NO_PENDING_SETUP
        if not self.verify_code(user.mfa_pending_secret, code):
            logger.info("mfa_setup_code_rejected", user_id=user_id)
            return MFASetupResult.INVALID_CODE
        user.mfa_secret = user.mfa_pending_secret
        user.mfa_enabled = True
        user.mfa_pending_secret = None
        user.mfa_pending_created_at = None
        self._save_user(user)
        logger.info("mfa_enabled", user_id=user_id)
        return MFASetupResult.ENABLED

    def disable(self, user_id: str) -> None:
        user = self._load_user(user_id)
        user.mfa_secret = None
        user.mfa_pending_secret = None
        user.mfa_pending_created_at = None
        user.mfa_enabled = False
        self._save_user(user)
        with self._with_state_lock():
            self._attempts.pop(user_id, None)
            self._lockouts.pop(user_id, None)
        logger.info("mfa_disabled", user_id=user_id)

    async def verify_login(self, user_id: str, code: str) -> bool:
        user = self._load_user(user_id)
        if not user.mfa_enabled or not user.mfa_secret:
            return False
        if await self._is_locked_out(user_id):
            logger.warning("mfa_locked_out", user_id=user_id)
            return False
        if not self.verify_code(user.mfa_secret, code):
            await self._record_failure(user_id)
            return False
        await self._clear_failures(user_id)
        return True

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = self._now()
        with self._with_state_lock():
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str) -> None:
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=self.max_attempts, lockout_seconds=self.lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = self._now()
        window = timedelta(seconds=self.lockout_seconds)
        with self._with_state_lock():
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._with_state_lock():
            self._attempts.pop(user_id, None)
