from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from ssoauth.config import get_settings, reset_settings_cache
from ssoauth.logging import get_logger
from ssoauth.service.audit import AuditLog
from ssoauth.service.auth import Authenticator
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.lockout import LockoutTracker
from ssoauth.service.maintenance import MaintenanceWorker
from ssoauth.service.rate_limit import RateLimiter
from ssoauth.service.rbac import RBACResolver
from ssoauth.service.registry import HealthProber, HttpxHealthTransport, ServiceRegistry
from ssoauth.service.system_config import SystemConfigService
from ssoauth.service.tokens import TokenEngine, TokenSigner
from ssoauth.storage.memory import MemoryStore
from ssoauth.storage.postgres import PostgresStore
from ssoauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # key material is checked before any store connection is opened
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            self.settings.jwt_algorithm,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared lockout counters; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockout counters and rate limits are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )

        self.system_config = SystemConfigService(self.store, self.settings, clock=self.clock)
        self.audit = AuditLog(
            self.store,
            policy=self.settings.audit_failure_policy,
            clock=self.clock,
            system_config=self.system_config,
        )
        self.rbac = RBACResolver(
            self.store, ttl_seconds=self.settings.rbac_cache_ttl_seconds, clock=self.clock
        )
        self.tokens = TokenEngine(
            self.store,
            self.rbac,
            self.audit,
            self.signer,
            access_ttl=self.system_config.access_token_ttl,
            refresh_ttl=self.system_config.refresh_token_ttl,
            clock=self.clock,
        )
        self.lockout = LockoutTracker(
            self.cache,
            self.system_config,
            clock=self.clock,
            key_includes_ip=self.settings.lockout_key_includes_ip,
        )
        self.auth = Authenticator(
            self.store, self.lockout, self.tokens, self.rbac, self.audit, self.settings
        )
        self.registry = ServiceRegistry(self.store, self.audit, clock=self.clock)
        self.health_transport = HttpxHealthTransport()
        self.prober = HealthProber(
            self.store,
            self.health_transport,
            self.audit,
            self.system_config,
            timeout=self.settings.health_probe_timeout_seconds,
            retry_policy=self.settings.health_probe_retry_policy,
            max_backoff_seconds=self.settings.health_probe_max_backoff_seconds,
            clock=self.clock,
        )
        self.rate_limiter = RateLimiter(self.cache, clock=self.clock)
        self.maintenance = MaintenanceWorker(
            self.store,
            self.lockout,
            self.rate_limiter,
            self.system_config,
            interval_seconds=self.settings.maintenance_interval_seconds,
            clock=self.clock,
        )
        logger.info("runtime_init_completed", redis=bool(self.cache))

    async def shutdown(self) -> None:
        await self.prober.stop()
        await self.maintenance.stop()
        await self.health_transport.aclose()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
