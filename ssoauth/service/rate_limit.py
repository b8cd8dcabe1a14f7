from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from redis.exceptions import RedisError

from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.errors import RateLimited
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitInfo:
    """Rate limit state for one request, exposed as response headers."""

    limit: int
    remaining: int
    reset_seconds: int
    allowed: bool = True

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


@dataclass
class _Bucket:
    tokens: float
    updated_at: datetime
    capacity: int
    refill_rate: float

    def level(self, now: datetime) -> float:
        elapsed = max(0.0, (now - self.updated_at).total_seconds())
        return min(float(self.capacity), self.tokens + elapsed * self.refill_rate)


class RateLimiter:
    """Token bucket per key: ``limit`` requests refilled evenly over the window.

    Buckets live in Redis when a cache is configured. Without Redis they are
    kept in this process, so each node enforces its own budget.
    """

    def __init__(self, cache: Optional[RedisCache], *, clock: Optional[Clock] = None) -> None:
        self.cache = cache
        self.clock = clock or SystemClock()
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    async def check(self, key: str, limit: int, window_seconds: int, *, cost: int = 1) -> RateLimitInfo:
        if limit <= 0:
            return RateLimitInfo(limit, limit, 0)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
            window_seconds = DEFAULT_WINDOW_SECONDS
        now = self.clock.now()
        if self.cache is not None:
            try:
                allowed, remaining, reset = await self.cache.check_rate_limit(
                    key, limit, window_seconds, now=now.timestamp(), cost=cost
                )
            except RedisError as exc:
                logger.error("rate_limit_cache_unavailable", error=str(exc))
                raise StoreUnavailable("rate limit cache unavailable", {"error": str(exc)}) from exc
            return RateLimitInfo(limit, remaining, reset, allowed)

        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(limit), updated_at=now, capacity=limit, refill_rate=refill_rate)
                self._buckets[key] = bucket
            bucket.capacity = limit
            bucket.refill_rate = refill_rate
            tokens = bucket.level(now)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            bucket.tokens = tokens
            bucket.updated_at = now
        reset = 0 if allowed else math.ceil((cost - tokens) / refill_rate)
        return RateLimitInfo(limit, int(tokens), reset, allowed)

    async def enforce(
        self, key: str, limit: int, window_seconds: int, *, response=None
    ) -> RateLimitInfo:
        """Like :meth:`check` but raise ``RateLimited`` once the bucket is empty."""
        info = await self.check(key, limit, window_seconds)
        if response is not None:
            info.apply_headers(response)
        if not info.allowed:
            logger.warning("rate_limited", limit=limit, window_seconds=window_seconds)
            raise RateLimited(retry_after=info.reset_seconds)
        return info

    def prune_idle(self) -> int:
        """Drop in-process buckets that have refilled completely."""
        now = self.clock.now()
        with self._lock:
            idle = [key for key, bucket in self._buckets.items() if bucket.level(now) >= bucket.capacity]
            for key in idle:
                self._buckets.pop(key, None)
        return len(idle)
