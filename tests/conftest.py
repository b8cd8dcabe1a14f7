import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ssoauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Lockout counters stay in-process unless a test wires a cache explicitly
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("HEALTH_PROBER_ENABLED", "false")
# Cheap argon2 parameters keep the login tests fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ssoauth.config import Settings  # noqa: E402
from ssoauth.service.audit import AuditLog  # noqa: E402
from ssoauth.service.auth import Authenticator  # noqa: E402
from ssoauth.service.lockout import LockoutTracker  # noqa: E402
from ssoauth.service.maintenance import MaintenanceWorker  # noqa: E402
from ssoauth.service.rate_limit import RateLimiter  # noqa: E402
from ssoauth.service.rbac import RBACResolver  # noqa: E402
from ssoauth.service.registry import ServiceRegistry  # noqa: E402
from ssoauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from ssoauth.service.system_config import SystemConfigService  # noqa: E402
from ssoauth.service.tokens import TokenEngine, TokenSigner  # noqa: E402
from ssoauth.storage.memory import MemoryStore  # noqa: E402
from ssoauth.storage.redis_cache import RedisCache  # noqa: E402
from redis import Redis  # noqa: E402
from redis.exceptions import RedisError  # noqa: E402

TEST_SECRET = "unit-test-signing-key-0123456789-abcdefghij"

# Redis-backed tests run against this database and are skipped when it is unreachable
TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")

DEFAULT_ROLES = {
    "super_admin": [
        "users.create", "users.read", "users.update", "users.delete",
        "microservices.create", "system.logs",
    ],
    "admin": ["users.create", "users.read", "users.update", "microservices.read"],
    "user": ["profile.read", "profile.update", "dashboard.view"],
}


class FrozenClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own snapshot directory for the runtime's memory store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
        prober_enabled=False,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


def _flush_test_keys() -> None:
    client = Redis.from_url(TEST_REDIS_URL, decode_responses=True)
    try:
        for pattern in ("auth:lockout:*", "rate:*"):
            for key in client.scan_iter(pattern):
                client.delete(key)
    finally:
        client.close()


@pytest.fixture
def redis_cache():
    """A real RedisCache, so the Lua scripts themselves are exercised."""
    cache = RedisCache(TEST_REDIS_URL, socket_timeout=1.0)
    try:
        cache.verify_connection()
    except RedisError as exc:
        pytest.skip(f"redis not reachable at {TEST_REDIS_URL}: {exc}")
    _flush_test_keys()
    yield cache
    _flush_test_keys()


@pytest.fixture
def make_stack(settings, clock):
    """Build the service graph over a store, the way the runtime wires it."""

    def _build(store=None, *, cache=None, settings_override=None, seed_roles=True):
        cfg = settings_override or settings
        store = store if store is not None else MemoryStore()
        if seed_roles:
            for name, permissions in DEFAULT_ROLES.items():
                store.upsert_role(name, permissions, None)
        system_config = SystemConfigService(store, cfg, clock=clock)
        audit = AuditLog(store, policy=cfg.audit_failure_policy, clock=clock, system_config=system_config)
        rbac = RBACResolver(store, ttl_seconds=cfg.rbac_cache_ttl_seconds, clock=clock)
        signer = TokenSigner(
            cfg.jwt_secret, cfg.jwt_algorithm, issuer=cfg.jwt_issuer, audience=cfg.jwt_audience
        )
        tokens = TokenEngine(
            store,
            rbac,
            audit,
            signer,
            access_ttl=system_config.access_token_ttl,
            refresh_ttl=system_config.refresh_token_ttl,
            clock=clock,
        )
        lockout = LockoutTracker(
            cache, system_config, clock=clock, key_includes_ip=cfg.lockout_key_includes_ip
        )
        auth = Authenticator(store, lockout, tokens, rbac, audit, cfg)
        registry = ServiceRegistry(store, audit, clock=clock)
        rate_limiter = RateLimiter(cache, clock=clock)
        maintenance = MaintenanceWorker(
            store, lockout, rate_limiter, system_config, interval_seconds=1, clock=clock
        )
        return SimpleNamespace(
            store=store,
            clock=clock,
            settings=cfg,
            system_config=system_config,
            audit=audit,
            rbac=rbac,
            signer=signer,
            tokens=tokens,
            lockout=lockout,
            auth=auth,
            registry=registry,
            rate_limiter=rate_limiter,
            maintenance=maintenance,
        )

    return _build


@pytest.fixture
def stack(make_stack, memory_store):
    return make_stack(memory_store)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
