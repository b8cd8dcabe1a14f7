"""Tests for the failed-login lockout tracker."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ssoauth.service.lockout import LockoutTracker
from ssoauth.service.system_config import SystemConfigService
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.redis_cache import RedisCache


class FakeLockoutCache:
    """In-memory stand-in for the Redis lockout hash and its Lua script."""

    def __init__(self):
        self.data = {}

    async def register_lockout_failure(self, subject, *, now, window_seconds, threshold, lockout_seconds):
        state = self.data.get(subject)
        if state and state.get("locked_until") and state["locked_until"] > now:
            return state["count"], state["locked_until"]
        if (
            state is None
            or state.get("locked_until") is not None
            or now - state["window_start"] >= window_seconds
        ):
            state = {"count": 0, "window_start": now, "locked_until": None}
        state["count"] += 1
        if state["count"] >= threshold:
            state["locked_until"] = now + lockout_seconds
        self.data[subject] = state
        return state["count"], state["locked_until"]

    async def get_lockout_state(self, subject):
        state = self.data.get(subject)
        return dict(state) if state else None

    async def clear_lockout(self, subject):
        self.data.pop(subject, None)


class BrokenCache:
    async def get_lockout_state(self, subject):
        raise RedisConnectionError("connection refused")

    async def register_lockout_failure(self, subject, **kwargs):
        raise RedisConnectionError("connection refused")

    async def clear_lockout(self, subject):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def system_config(memory_store, settings, clock):
    return SystemConfigService(memory_store, settings, clock=clock)


@pytest.fixture(params=["process", "cache", "redis"])
def tracker(request, system_config, clock):
    if request.param == "redis":
        cache = request.getfixturevalue("redis_cache")
    elif request.param == "cache":
        cache = FakeLockoutCache()
    else:
        cache = None
    return LockoutTracker(cache, system_config, clock=clock)


@pytest.mark.asyncio
async def test_allowed_below_threshold(tracker):
    for expected in range(1, 5):
        assert await tracker.record_failure("alice@example.com") == expected
    status = await tracker.check_allowed("alice@example.com")
    assert status.allowed
    assert status.failures == 4


@pytest.mark.asyncio
async def test_locks_at_threshold(tracker, clock):
    for _ in range(5):
        await tracker.record_failure("alice@example.com")
    status = await tracker.check_allowed("alice@example.com")
    assert not status.allowed
    assert status.locked_until == clock.now() + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_identity_is_normalized(tracker):
    for _ in range(5):
        await tracker.record_failure("  Alice@Example.com ")
    assert not (await tracker.check_allowed("alice@example.com")).allowed


@pytest.mark.asyncio
async def test_success_resets_counter(tracker):
    for _ in range(4):
        await tracker.record_failure("alice@example.com")
    await tracker.record_success("alice@example.com")
    assert await tracker.record_failure("alice@example.com") == 1


@pytest.mark.asyncio
async def test_window_elapse_starts_new_window(tracker, clock):
    for _ in range(4):
        await tracker.record_failure("alice@example.com")
    clock.advance(minutes=15)
    assert (await tracker.check_allowed("alice@example.com")).failures == 0
    assert await tracker.record_failure("alice@example.com") == 1


@pytest.mark.asyncio
async def test_lock_expires(tracker, clock):
    for _ in range(5):
        await tracker.record_failure("alice@example.com")
    clock.advance(minutes=14, seconds=59)
    assert not (await tracker.check_allowed("alice@example.com")).allowed
    clock.advance(seconds=1)
    assert (await tracker.check_allowed("alice@example.com")).allowed
    assert await tracker.record_failure("alice@example.com") == 1


@pytest.mark.asyncio
async def test_threshold_follows_system_config(tracker, system_config):
    system_config.set("auth.max_login_attempts", "3", "number")
    for _ in range(3):
        await tracker.record_failure("alice@example.com")
    assert not (await tracker.check_allowed("alice@example.com")).allowed


@pytest.mark.asyncio
async def test_identities_are_independent(tracker):
    for _ in range(5):
        await tracker.record_failure("alice@example.com")
    assert (await tracker.check_allowed("bob@example.com")).allowed


@pytest.mark.asyncio
async def test_key_can_include_client_ip(system_config, clock):
    tracker = LockoutTracker(None, system_config, clock=clock, key_includes_ip=True)
    for _ in range(5):
        await tracker.record_failure("alice@example.com", "10.0.0.1")
    assert not (await tracker.check_allowed("alice@example.com", "10.0.0.1")).allowed
    assert (await tracker.check_allowed("alice@example.com", "10.0.0.2")).allowed


@pytest.mark.asyncio
async def test_cache_errors_surface_as_store_unavailable(system_config, clock):
    tracker = LockoutTracker(BrokenCache(), system_config, clock=clock)
    with pytest.raises(StoreUnavailable):
        await tracker.check_allowed("alice@example.com")
    with pytest.raises(StoreUnavailable):
        await tracker.record_failure("alice@example.com")
    with pytest.raises(StoreUnavailable):
        await tracker.record_success("alice@example.com")


@pytest.mark.asyncio
async def test_prune_expired_drops_lapsed_records(system_config, clock):
    tracker = LockoutTracker(None, system_config, clock=clock)
    await tracker.record_failure("stale@example.com")
    for _ in range(5):
        await tracker.record_failure("locked@example.com")
    clock.advance(minutes=15)
    await tracker.record_failure("fresh@example.com")

    assert tracker.prune_expired() == 2
    assert (await tracker.check_allowed("fresh@example.com")).failures == 1


def test_redis_lockout_key_hides_identity():
    key = RedisCache.lockout_key("alice@example.com")
    assert key.startswith("auth:lockout:")
    assert "alice" not in key
    assert key == RedisCache.lockout_key("alice@example.com")


@pytest.mark.asyncio
async def test_concurrent_failures_are_each_counted_once(tracker, system_config):
    system_config.set("auth.max_login_attempts", "100", "number")
    counts = await asyncio.gather(
        *(tracker.record_failure("alice@example.com") for _ in range(50))
    )
    assert sorted(counts) == list(range(1, 51))
    status = await tracker.check_allowed("alice@example.com")
    assert status.allowed
    assert status.failures == 50


@pytest.mark.asyncio
async def test_concurrent_failures_lock_exactly_at_threshold(tracker):
    counts = await asyncio.gather(
        *(tracker.record_failure("alice@example.com") for _ in range(20))
    )
    # once locked, further failures report the locking count without incrementing
    assert max(counts) == 5
    assert sorted(counts)[:5] == [1, 2, 3, 4, 5]
    assert not (await tracker.check_allowed("alice@example.com")).allowed


def test_process_counters_survive_threaded_bursts(system_config, clock):
    system_config.set("auth.max_login_attempts", "1000", "number")
    tracker = LockoutTracker(None, system_config, clock=clock)

    def fail_once(_):
        return asyncio.run(tracker.record_failure("alice@example.com"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        counts = list(pool.map(fail_once, range(200)))

    assert sorted(counts) == list(range(1, 201))
    assert tracker._records["alice@example.com"].failures == 200
