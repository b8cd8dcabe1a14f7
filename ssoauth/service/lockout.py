from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from redis.exceptions import RedisError

from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.system_config import SystemConfigService
from ssoauth.storage.common import normalize_identity
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.models import LockoutRecord
from ssoauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    allowed: bool
    failures: int = 0
    locked_until: Optional[datetime] = None


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class LockoutTracker:
    """Per-identity failed-login counter with a fixed window.

    The window opens at the first failure. Reaching the threshold inside it
    locks the identity for the lockout duration. A failure after the window
    elapsed, or after a lock expired, starts a new window at one. Redis keeps
    the counters shared and atomic across nodes; without Redis the counters
    live in this process and are serialized by a lock.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        system_config: SystemConfigService,
        *,
        clock: Optional[Clock] = None,
        key_includes_ip: bool = False,
    ) -> None:
        self.cache = cache
        self.system_config = system_config
        self.clock = clock or SystemClock()
        self.key_includes_ip = key_includes_ip
        self._records: Dict[str, LockoutRecord] = {}
        self._state_lock = threading.Lock()

    def subject(self, identity: str, ip_addr: Optional[str] = None) -> str:
        key = normalize_identity(identity)
        if self.key_includes_ip and ip_addr:
            return f"{ip_addr}|{key}"
        return key

    async def check_allowed(self, identity: str, ip_addr: Optional[str] = None) -> LockoutStatus:
        subject = self.subject(identity, ip_addr)
        now = self.clock.now()
        if self.cache is not None:
            try:
                state = await self.cache.get_lockout_state(subject)
            except RedisError as exc:
                logger.error("lockout_cache_unavailable", error=str(exc))
                raise StoreUnavailable("lockout cache unavailable", {"error": str(exc)}) from exc
            if not state:
                return LockoutStatus(allowed=True)
            locked_until = _from_epoch(state.get("locked_until"))
            if locked_until is not None and now < locked_until:
                return LockoutStatus(False, state["count"], locked_until)
            return LockoutStatus(True, self._live_count(state, now))

        with self._state_lock:
            record = self._records.get(subject)
            if record is None:
                return LockoutStatus(allowed=True)
            if record.locked_until is not None and now < record.locked_until:
                return LockoutStatus(False, record.failures, record.locked_until)
            if record.locked_until is not None or now - record.window_start >= self.system_config.lockout_window():
                return LockoutStatus(allowed=True)
            return LockoutStatus(True, record.failures)

    def _live_count(self, state: dict, now: datetime) -> int:
        window_start = _from_epoch(state.get("window_start"))
        if state.get("locked_until") is not None or window_start is None:
            return 0
        if now - window_start >= self.system_config.lockout_window():
            return 0
        return int(state.get("count", 0))

    async def record_failure(self, identity: str, ip_addr: Optional[str] = None) -> int:
        """Count one failed attempt and return the failures in the current window."""
        subject = self.subject(identity, ip_addr)
        now = self.clock.now()
        threshold = self.system_config.max_login_attempts()
        window = self.system_config.lockout_window()
        duration = self.system_config.lockout_duration()

        if self.cache is not None:
            try:
                count, locked_until = await self.cache.register_lockout_failure(
                    subject,
                    now=now.timestamp(),
                    window_seconds=window.total_seconds(),
                    threshold=threshold,
                    lockout_seconds=duration.total_seconds(),
                )
            except RedisError as exc:
                logger.error("lockout_cache_unavailable", error=str(exc))
                raise StoreUnavailable("lockout cache unavailable", {"error": str(exc)}) from exc
            if locked_until is not None and count >= threshold:
                logger.warning("identity_locked", identity=subject, failures=count)
            return count

        with self._state_lock:
            record = self._records.get(subject)
            if record is not None and record.locked_until is not None and now < record.locked_until:
                return record.failures
            if (
                record is None
                or record.locked_until is not None
                or now - record.window_start >= window
            ):
                record = LockoutRecord(key=subject, failures=0, window_start=now)
                self._records[subject] = record
            record.failures += 1
            if record.failures >= threshold:
                record.locked_until = now + duration
                logger.warning("identity_locked", identity=subject, failures=record.failures)
            return record.failures

    async def record_success(self, identity: str, ip_addr: Optional[str] = None) -> None:
        subject = self.subject(identity, ip_addr)
        if self.cache is not None:
            try:
                await self.cache.clear_lockout(subject)
            except RedisError as exc:
                logger.error("lockout_cache_unavailable", error=str(exc))
                raise StoreUnavailable("lockout cache unavailable", {"error": str(exc)}) from exc
            return
        with self._state_lock:
            self._records.pop(subject, None)

    def prune_expired(self) -> int:
        """Drop in-process records whose window and lock have both lapsed.

        Redis-backed records expire through key TTLs.
        """
        now = self.clock.now()
        window = self.system_config.lockout_window()
        with self._state_lock:
            stale = [
                key
                for key, record in self._records.items()
                if (record.locked_until is None and now - record.window_start >= window)
                or (record.locked_until is not None and now >= record.locked_until)
            ]
            for key in stale:
                self._records.pop(key, None)
        return len(stale)
