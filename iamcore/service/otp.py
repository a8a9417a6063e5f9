from __future__ import annotations

import contextlib
import hashlib
import hmac
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Union

from iamcore.logging import get_logger, hash_email
from iamcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class OTPVerification(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


@dataclass
class OTPRecord:
    email: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    verified: bool = False

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "code_hash": self.code_hash,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OTPRecord":
        return cls(
            email=data["email"],
            code_hash=data["code_hash"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            verified=bool(data.get("verified", False)),
        )


class OTPRegistry:
    """Single live password-reset code per email, with absolute expiry.

    Records live in Redis when a cache is configured, otherwise in a
    lock-guarded dict. Expiry is checked lazily against ``clock`` at
    verify time; Redis TTLs only reclaim space.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_minutes: int = 15,
        length: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.ttl = timedelta(minutes=ttl_minutes)
        self.length = length
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state_lock = threading.Lock()
        self._records: Dict[str, OTPRecord] = {}

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    @staticmethod
    def _normalize(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def _hash_code(email: str, code: str) -> str:
        return hashlib.sha256(f"{email}:{code}".encode()).hexdigest()

    def _generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.length))

    async def _load(self, email: str) -> Optional[OTPRecord]:
        if self.cache:
            raw = await self.cache.get_otp(email)
            return OTPRecord.from_dict(raw) if raw else None
        with self._with_state_lock():
            return self._records.get(email)

    async def _store(self, record: OTPRecord) -> None:
        if self.cache:
            await self.cache.set_otp(record.email, record.to_dict(), record.expires_at)
            return
        with self._with_state_lock():
            self._records[record.email] = record

    async def _evict(self, email: str) -> None:
        if self.cache:
            await self.cache.delete_otp(email)
            return
        with self._with_state_lock():
            self._records.pop(email, None)

    def _is_expired(self, record: OTPRecord) -> bool:
        return self._clock() > record.expires_at

    async def issue(self, email: str) -> str:
        """Mint a fresh code, superseding any live code for the email."""
        normalized = self._normalize(email)
        code = self._generate_code()
        now = self._clock()
        record = OTPRecord(
            email=normalized,
            code_hash=self._hash_code(normalized, code),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await self._store(record)
        logger.info("otp_issued", email_hash=hash_email(normalized))
        return code

    async def verify(self, email: str, code: str) -> OTPVerification:
        normalized = self._normalize(email)
        record = await self._load(normalized)
        if record is None:
            return OTPVerification.NOT_FOUND
        if self._is_expired(record):
            await self._evict(normalized)
            logger.info("otp_expired", email_hash=hash_email(normalized))
            return OTPVerification.EXPIRED
        candidate = self._hash_code(normalized, (code or "").strip())
        if not hmac.compare_digest(candidate, record.code_hash):
            logger.info("otp_mismatch", email_hash=hash_email(normalized))
            return OTPVerification.MISMATCH
        if not record.verified:
            await self._mark_verified(record)
        return OTPVerification.VALID

    async def _mark_verified(self, record: OTPRecord) -> None:
        # Never resurrect a code that a concurrent issue() already superseded
        if self.cache:
            current = await self._load(record.email)
            if current and current.code_hash == record.code_hash:
                current.verified = True
                await self._store(current)
            return
        with self._with_state_lock():
            current = self._records.get(record.email)
            if current and current.code_hash == record.code_hash:
                current.verified = True

    async def peek(self, email: str) -> Optional[OTPRecord]:
        """Return the live record for an email, evicting it if expired."""
        normalized = self._normalize(email)
        record = await self._load(normalized)
        if record is None:
            return None
        if self._is_expired(record):
            await self._evict(normalized)
            return None
        return record

    async def consume(self, email: str) -> None:
        normalized = self._normalize(email)
        await self._evict(normalized)
        logger.info("otp_consumed", email_hash=hash_email(normalized))
