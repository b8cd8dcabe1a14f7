import pytest

from ssoauth.config import AuditFailurePolicy
from ssoauth.service.audit import AuditLog
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.memory import MemoryStore


class UnavailableAuditStore(MemoryStore):
    def append_audit(self, entry):
        raise StoreUnavailable("audit store down")


class ExplodingAuditStore(MemoryStore):
    def append_audit(self, entry):
        raise OSError("disk full")


def test_record_and_list_newest_first(memory_store, clock):
    audit = AuditLog(memory_store, clock=clock)
    audit.record("auth.login", actor="u1", target="u1", outcome="success")
    clock.advance(seconds=1)
    audit.record("auth.login", actor="u2", target="u2", outcome="failure", severity="warning")
    clock.advance(seconds=1)
    audit.record("service.registered", actor="admin", target="reports")

    entries = audit.list_entries()
    assert [e.actor for e in entries] == ["admin", "u2", "u1"]
    assert entries[2].timestamp < entries[0].timestamp
    assert [e.actor for e in audit.list_entries(action="auth.login")] == ["u2", "u1"]
    assert [e.action for e in audit.list_entries(actor="admin")] == ["service.registered"]
    assert len(audit.list_entries(limit=1)) == 1


def test_entries_are_immutable(memory_store, clock):
    audit = AuditLog(memory_store, clock=clock)
    entry = audit.record("auth.logout", actor="u1")
    with pytest.raises(AttributeError):
        entry.outcome = "failure"


def test_limit_is_clamped(memory_store, clock):
    audit = AuditLog(memory_store, clock=clock)
    for i in range(3):
        audit.record("auth.login", actor=f"u{i}")
    assert len(audit.list_entries(limit=0)) == 1
    assert len(audit.list_entries(limit=10_000)) == 3


def test_fail_closed_raises(clock):
    audit = AuditLog(UnavailableAuditStore(), policy=AuditFailurePolicy.FAIL_CLOSED, clock=clock)
    with pytest.raises(StoreUnavailable):
        audit.record("auth.login", actor="u1")


def test_fail_open_continues(clock):
    audit = AuditLog(UnavailableAuditStore(), policy=AuditFailurePolicy.FAIL_OPEN, clock=clock)
    assert audit.record("auth.login", actor="u1") is None


def test_unexpected_store_errors_follow_policy(clock):
    closed = AuditLog(ExplodingAuditStore(), clock=clock)
    with pytest.raises(StoreUnavailable):
        closed.record("auth.login", actor="u1")

    open_ = AuditLog(ExplodingAuditStore(), policy=AuditFailurePolicy.FAIL_OPEN, clock=clock)
    assert open_.record("auth.login", actor="u1") is None


def test_policy_can_be_switched_at_runtime(stack):
    assert stack.audit.policy == AuditFailurePolicy.FAIL_CLOSED
    stack.system_config.set("audit.failure_policy", "fail_open")
    assert stack.audit.policy == AuditFailurePolicy.FAIL_OPEN
