from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional, Protocol

from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.lockout import LockoutTracker
from ssoauth.service.rate_limit import RateLimiter
from ssoauth.service.system_config import SystemConfigService
from ssoauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 300


class LineageStore(Protocol):
    def prune_lineages(self, now: datetime, *, revoked_before: Optional[datetime] = None) -> int: ...


class MaintenanceWorker:
    """Periodic sweep of state that only ever grows between restarts.

    Each run drops lapsed in-process lockout records, fully refilled
    in-process rate buckets, and refresh lineages that can no longer be
    presented. Revoked lineages are kept for one refresh lifetime so a late
    replay of one of their tokens is still reported as such.
    """

    def __init__(
        self,
        store: LineageStore,
        lockout: LockoutTracker,
        rate_limiter: RateLimiter,
        system_config: SystemConfigService,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.system_config = system_config
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as exc:
                logger.error(
                    "maintenance_run_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    def run_once(self) -> Dict[str, int]:
        """Run one sweep and return how many items each step removed."""
        now = self.clock.now()
        pruned = {
            "lockout_records": self.lockout.prune_expired(),
            "rate_buckets": self.rate_limiter.prune_idle(),
            "lineages": 0,
        }
        try:
            pruned["lineages"] = self.store.prune_lineages(
                now, revoked_before=now - self.system_config.refresh_token_ttl()
            )
        except StoreUnavailable as exc:
            logger.warning("maintenance_lineage_prune_failed", error=exc.message)
        if any(pruned.values()):
            logger.info("maintenance_run_completed", **pruned)
        return pruned
