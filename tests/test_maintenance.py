"""Tests for the periodic maintenance sweep."""

import asyncio

import pytest

from ssoauth.service.maintenance import MaintenanceWorker
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.memory import MemoryStore

PASSWORD = "CorrectHorse42!"


@pytest.mark.asyncio
async def test_lapsed_lockout_records_are_swept(stack, clock):
    for n in range(1000):
        await stack.lockout.record_failure(f"user{n}@example.com")
    assert stack.maintenance.run_once()["lockout_records"] == 0

    clock.advance(days=1)
    pruned = stack.maintenance.run_once()
    assert pruned["lockout_records"] == 1000
    assert stack.lockout._records == {}


@pytest.mark.asyncio
async def test_refilled_rate_buckets_are_swept(stack, clock):
    for n in range(10):
        await stack.rate_limiter.check(f"auth:10.0.0.{n}", 50, 900)
    assert stack.maintenance.run_once()["rate_buckets"] == 0

    clock.advance(minutes=15)
    assert stack.maintenance.run_once()["rate_buckets"] == 10
    assert stack.rate_limiter._buckets == {}


def test_revoked_lineages_outlive_one_refresh_lifetime(stack, clock):
    stack.system_config.set("jwt.refresh_token_expires", "1d", "duration")
    alice = stack.auth.register("alice@example.com", PASSWORD)
    revoked = stack.tokens.issue(alice)
    stack.store.revoke_lineage(revoked.lineage_id, "logout", clock.now())

    clock.advance(hours=12)
    assert stack.maintenance.run_once()["lineages"] == 0

    clock.advance(hours=8)
    live = stack.tokens.issue(alice)
    clock.advance(hours=5)
    assert stack.maintenance.run_once()["lineages"] == 1
    assert stack.store.get_lineage(revoked.lineage_id) is None
    assert stack.store.get_lineage(live.lineage_id) is not None


def test_expired_lineages_are_swept(stack, clock):
    stack.system_config.set("jwt.refresh_token_expires", "1h", "duration")
    alice = stack.auth.register("alice@example.com", PASSWORD)
    pair = stack.tokens.issue(alice)

    clock.advance(minutes=59)
    assert stack.maintenance.run_once()["lineages"] == 0
    clock.advance(minutes=1)
    assert stack.maintenance.run_once()["lineages"] == 1
    assert stack.store.get_lineage(pair.lineage_id) is None


@pytest.mark.asyncio
async def test_store_outage_does_not_stop_other_steps(make_stack, clock):
    class DownStore(MemoryStore):
        def prune_lineages(self, now, *, revoked_before=None):
            raise StoreUnavailable("database unavailable")

    stack = make_stack(DownStore())
    await stack.lockout.record_failure("alice@example.com")
    clock.advance(days=1)

    assert stack.maintenance.run_once() == {"lockout_records": 1, "rate_buckets": 0, "lineages": 0}


@pytest.mark.asyncio
async def test_worker_runs_until_stopped(stack, clock):
    worker = MaintenanceWorker(
        stack.store,
        stack.lockout,
        stack.rate_limiter,
        stack.system_config,
        interval_seconds=0.01,
        clock=clock,
    )
    await stack.lockout.record_failure("alice@example.com")
    clock.advance(days=1)

    await worker.start()
    assert worker.running
    await worker.start()

    for _ in range(200):
        if not stack.lockout._records:
            break
        await asyncio.sleep(0.01)
    assert stack.lockout._records == {}

    await worker.stop()
    assert not worker.running
    assert worker._task is None
