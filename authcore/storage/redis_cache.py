from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for the shared rate-limit, quota and cooldown state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window log: prune, count, always record, refresh the key TTL.
    # Scores are epoch milliseconds; the request is recorded even when rejected.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window / 1000) + 10)

local reset_at = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end

if count < limit then
  return {1, count, reset_at}
end
return {0, count, reset_at}
"""

    # Fixed window anchored at the first hit; rejected calls do not count
    _QUOTA_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  local ttl = redis.call('TTL', key)
  if ttl < 0 then
    redis.call('EXPIRE', key, window)
    ttl = window
  end
  return {0, current, ttl}
end

current = redis.call('INCR', key)
if current == 1 or redis.call('TTL', key) < 0 then
  redis.call('EXPIRE', key, window)
end
return {1, current, redis.call('TTL', key)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._quota = self.client.register_script(self._QUOTA_SCRIPT)

    @staticmethod
    def _normalize_rate_key(identity: str, role: str, endpoint: str) -> str:
        """Hash the (identity, role, endpoint) triple into a collision-free key.

        Identities come from client headers, so the raw triple could contain
        the delimiter.
        """

        digest = hashlib.sha256(f"{identity}:{role}:{endpoint}".encode()).hexdigest()
        return f"rate:sw:{digest}"

    @staticmethod
    def _window_args(
        limit: int, window_seconds: int, now: Optional[float]
    ) -> list:
        now_ms = int((time.time() if now is None else now) * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        return [now_ms, int(window_seconds * 1000), limit, member]

    @staticmethod
    def _window_result(raw) -> Tuple[bool, int, float]:
        allowed, count, reset_ms = raw
        return bool(int(allowed)), int(count), int(reset_ms) / 1000.0

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_sliding_window(
        self,
        identity: str,
        role: str,
        endpoint: str,
        *,
        limit: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, float]:
        """Record one request and report whether it fits the window.

        Returns ``(allowed, count_before_insert, reset_at_epoch_seconds)``.
        """

        raw = await self._sliding_window(
            keys=[self._normalize_rate_key(identity, role, endpoint)],
            args=self._window_args(limit, window_seconds, now),
        )
        return self._window_result(raw)

    async def consume_quota(
        self, key: str, *, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Atomically take one unit from a first-hit anchored quota.

        Returns ``(allowed, count, seconds_until_reset)``.
        """

        allowed, count, ttl = await self._quota(keys=[key], args=[limit, window_seconds])
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def acquire_cooldown(self, key: str, seconds: int) -> Tuple[bool, int]:
        """Claim a cooldown slot; returns ``(acquired, seconds_remaining)``."""
        if await self.client.set(key, "1", nx=True, ex=seconds):
            return True, seconds
        ttl = await self.client.ttl(key)
        return False, max(1, int(ttl))

    async def clear_quota(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same async methods as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )
        self._quota = self._sync_client.register_script(RedisCache._QUOTA_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def check_sliding_window(
        self,
        identity: str,
        role: str,
        endpoint: str,
        *,
        limit: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, float]:
        raw = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(identity, role, endpoint)],
            args=RedisCache._window_args(limit, window_seconds, now),
        )
        return RedisCache._window_result(raw)

    async def consume_quota(
        self, key: str, *, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        allowed, count, ttl = self._quota(keys=[key], args=[limit, window_seconds])
        return bool(int(allowed)), int(count), max(0, int(ttl))

    async def acquire_cooldown(self, key: str, seconds: int) -> Tuple[bool, int]:
        if self._sync_client.set(key, "1", nx=True, ex=seconds):
            return True, seconds
        return False, max(1, int(self._sync_client.ttl(key)))

    async def clear_quota(self, key: str) -> None:
        self._sync_client.delete(key)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
