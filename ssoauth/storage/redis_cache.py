from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for lockout counters and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic failure registration over a hash {count, window_start, locked_until}.
    # Times are epoch seconds supplied by the caller's clock.
    _LOCKOUT_FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local threshold = tonumber(ARGV[3])
local lock_seconds = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'window_start', 'locked_until')
local count = tonumber(data[1]) or 0
local window_start = tonumber(data[2])
local locked_until = tonumber(data[3])

-- still locked: nothing to count
if locked_until ~= nil and locked_until > now then
  return {count, tostring(locked_until)}
end

-- no record, expired lock, or elapsed window: open a fresh window
if window_start == nil or locked_until ~= nil or (now - window_start) >= window then
  count = 0
  window_start = now
  locked_until = nil
end

count = count + 1
local ttl = window
if count >= threshold then
  locked_until = now + lock_seconds
  redis.call('HSET', key, 'count', count, 'window_start', window_start, 'locked_until', locked_until)
  ttl = math.max(window, lock_seconds)
else
  redis.call('HDEL', key, 'locked_until')
  redis.call('HSET', key, 'count', count, 'window_start', window_start)
end
redis.call('EXPIRE', key, math.max(1, math.ceil(ttl)))

if locked_until == nil then
  return {count, ''}
end
return {count, tostring(locked_until)}
"""

    # Atomic token bucket: refill by elapsed time, then consume one request.
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._lockout_failure = self.client.register_script(self._LOCKOUT_FAILURE_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def lockout_key(subject: str) -> str:
        """Hash the subject so identities never appear in key names."""
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"auth:lockout:{digest}"

    async def register_lockout_failure(
        self,
        subject: str,
        *,
        now: float,
        window_seconds: float,
        threshold: int,
        lockout_seconds: float,
    ) -> Tuple[int, Optional[float]]:
        """Atomically count one failure.

        Returns:
            Tuple of (failures in the current window, locked_until epoch or None)
        """
        result = await self._lockout_failure(
            keys=[self.lockout_key(subject)],
            args=[now, window_seconds, threshold, lockout_seconds],
        )
        count = int(result[0])
        locked_until = float(result[1]) if result[1] not in (None, "") else None
        return count, locked_until

    @staticmethod
    def rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: float,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` from the bucket behind ``key``.

        Returns:
            Tuple of (allowed, remaining requests, seconds until one more is allowed)
        """
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self.rate_key(key)],
            args=[now, refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def get_lockout_state(self, subject: str) -> Optional[Dict[str, Any]]:
        data = await self.client.hgetall(self.lockout_key(subject))
        if not data:
            return None
        return {
            "count": int(data.get("count", 0)),
            "window_start": float(data["window_start"]) if data.get("window_start") else None,
            "locked_until": float(data["locked_until"]) if data.get("locked_until") else None,
        }

    async def clear_lockout(self, subject: str) -> None:
        await self.client.delete(self.lockout_key(subject))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
