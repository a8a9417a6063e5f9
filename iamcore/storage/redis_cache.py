from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def _otp_key(email: str) -> str:
    return f"auth:otp:{hashlib.sha256(email.encode()).hexdigest()}"


def _ttl_seconds(expires_at: datetime) -> int:
    """Clamp a TTL derived from an absolute expiry to at least one second."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _normalize_rate_key(key: str) -> str:
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


def _decode_oauth_state(cached: Optional[str]) -> Optional[tuple[str, datetime]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
        expires_at = datetime.fromisoformat(data["expires_at"])
    except (ValueError, TypeError, KeyError):
        return None
    return data.get("provider"), expires_at


class RedisCache:
    """Redis wrapper for OTP records, OAuth state, MFA lockouts and rate limits."""

    # Atomic token bucket: refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_otp(self, email: str, record: dict, expires_at: datetime) -> None:
        """Store the live OTP record for an email, replacing any previous one."""
        await self.client.set(_otp_key(email), json.dumps(record), ex=_ttl_seconds(expires_at))

    async def get_otp(self, email: str) -> Optional[dict]:
        raw = await self.client.get(_otp_key(email))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            return None

    async def delete_otp(self, email: str) -> None:
        await self.client.delete(_otp_key(email))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically read and delete an OAuth state so it cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        return _decode_oauth_state(cached)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt and trigger the lockout in one round trip.

        Returns ``(is_locked_out, attempts)``; attempts is -1 when the user was
        already locked out.
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for test mode.

    Exposes the same awaitable interface as RedisCache but talks to Redis
    through a sync client so pytest event loops never own the connection.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(RedisCache._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_otp(self, email: str, record: dict, expires_at: datetime) -> None:
        self.client.set(_otp_key(email), json.dumps(record), ex=_ttl_seconds(expires_at))

    async def get_otp(self, email: str) -> Optional[dict]:
        raw = self.client.get(_otp_key(email))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            return None

    async def delete_otp(self, email: str) -> None:
        self.client.delete(_otp_key(email))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=_ttl_seconds(expires_at))

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        return _decode_oauth_state(self.client.getdel(f"auth:oauth:{state}"))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        self.client.delete(f"mfa:attempts:{user_id}")

    async def close(self) -> None:
        self.client.close()
