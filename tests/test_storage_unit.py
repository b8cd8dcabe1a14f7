import contextlib
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from ssoauth.storage.errors import ConstraintViolation, StoreUnavailable
from ssoauth.storage.memory import MemoryStore
from ssoauth.storage.models import (
    AuditEntry,
    Liveness,
    Microservice,
    RefreshToken,
    RevocationReason,
    User,
    new_id,
)
from ssoauth.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _token(user_id, lineage_id, token_hash, *, parent_id=None, now=NOW):
    return RefreshToken.new(user_id, lineage_id, token_hash, now, timedelta(days=7), parent_id=parent_id)


class TestMemoryStore:
    def test_identity_uniqueness_is_case_insensitive(self):
        store = MemoryStore()
        store.create_user("Alice@Example.com", "Alice")
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("other@example.com", "ALICE")
        assert store.get_user_by_identity(" alice ").email == "alice@example.com"

    def test_reads_return_copies(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        fetched = store.get_user(user.id)
        fetched.is_active = False
        assert store.get_user(user.id).is_active is True

    def test_assign_role_requires_user_and_role(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        with pytest.raises(ConstraintViolation):
            store.assign_role(user.id, "ghost")
        store.upsert_role("user", ["profile.read"])
        with pytest.raises(ConstraintViolation):
            store.assign_role("missing", "user")
        store.assign_role(user.id, "user")
        store.assign_role(user.id, "user")
        assert store.get_roles(user.id) == ["user"]
        assert store.remove_role(user.id, "user") is True
        assert store.remove_role(user.id, "user") is False

    def test_tip_compare_and_swap(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        lineage_id = new_id()
        first = _token(user.id, lineage_id, "h1")
        store.create_lineage(first)

        second = _token(user.id, lineage_id, "h2", parent_id=first.id)
        assert store.advance_lineage_tip(lineage_id, first.id, second, NOW) is True
        rival = _token(user.id, lineage_id, "h3", parent_id=first.id)
        assert store.advance_lineage_tip(lineage_id, first.id, rival, NOW) is False

        assert store.get_lineage(lineage_id).tip_id == second.id
        assert store.get_refresh_token_by_hash("h3") is None
        assert store.get_refresh_token_by_hash("h1").revoked_reason == "rotated"

    def test_revoked_lineage_cannot_advance(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        first = _token(user.id, new_id(), "h1")
        store.create_lineage(first)
        assert store.revoke_lineage(first.lineage_id, RevocationReason.LOGOUT.value, NOW) is True
        assert store.revoke_lineage(first.lineage_id, RevocationReason.LOGOUT.value, NOW) is False

        successor = _token(user.id, first.lineage_id, "h2", parent_id=first.id)
        assert store.advance_lineage_tip(first.lineage_id, first.id, successor, NOW) is False

    def test_prune_lineages(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        live = _token(user.id, new_id(), "live")
        revoked = _token(user.id, new_id(), "revoked")
        expired = _token(user.id, new_id(), "expired", now=NOW - timedelta(days=8))
        for token in (live, revoked, expired):
            store.create_lineage(token)
        store.revoke_lineage(revoked.lineage_id, "logout", NOW)

        assert store.prune_lineages(NOW) == 2
        assert store.get_lineage(live.lineage_id) is not None
        assert store.get_refresh_token_by_hash("expired") is None

    def test_email_and_username_namespaces_are_disjoint(self):
        store = MemoryStore()
        with pytest.raises(ConstraintViolation):
            store.create_user("alice", "alice2")
        with pytest.raises(ConstraintViolation):
            store.create_user("bob@example.com", "carol@example.com")
        store.create_user("alice@example.com", "alice")
        # rows written before the shape rule existed still block reuse in both directions
        store.users["legacy"] = User(id="legacy", email="legacy@example.com", username="old@handle")
        with pytest.raises(ConstraintViolation):
            store.create_user("old@handle")
        assert store.create_user("dave@example.com", "dave").username == "dave"

    def test_prune_lineages_keeps_recent_revocations(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        recent = _token(user.id, new_id(), "recent")
        old = _token(user.id, new_id(), "old")
        for token in (recent, old):
            store.create_lineage(token)
        store.revoke_lineage(old.lineage_id, "logout", NOW - timedelta(days=2))
        store.revoke_lineage(recent.lineage_id, "logout", NOW)

        assert store.prune_lineages(NOW, revoked_before=NOW - timedelta(days=1)) == 1
        assert store.get_lineage(recent.lineage_id) is not None
        assert store.get_lineage(old.lineage_id) is None

    def test_probe_results_track_failures(self):
        store = MemoryStore()
        store.upsert_service(Microservice(name="reports", url="http://reports.internal"))

        assert store.record_probe_result("reports", Liveness.UNHEALTHY, NOW, "timeout") == Liveness.UNKNOWN
        assert store.record_probe_result("reports", Liveness.UNHEALTHY, NOW, "timeout") == Liveness.UNHEALTHY
        assert store.get_service("reports").consecutive_failures == 2
        assert store.record_probe_result("reports", Liveness.HEALTHY, NOW) == Liveness.UNHEALTHY
        assert store.get_service("reports").consecutive_failures == 0
        assert store.record_probe_result("ghost", Liveness.HEALTHY, NOW) is None

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com", "persist", meta={"team": "ops"})
        store.save_password(user.id, "$argon2id$hash", "argon2id")
        store.upsert_role("admin", ["users.read"], "Admins")
        store.assign_role(user.id, "admin")
        token = _token(user.id, new_id(), "persisted-hash")
        store.create_lineage(token)
        store.upsert_service(
            Microservice(name="reports", url="http://reports.internal", allowed_roles=frozenset({"admin"}))
        )
        store.record_probe_result("reports", Liveness.HEALTHY, NOW)
        store.append_audit(
            AuditEntry(id=new_id(), timestamp=NOW, actor=user.id, action="auth.login", target=user.id, outcome="success")
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user_by_identity("persist").meta == {"team": "ops"}
        assert reloaded.get_password_record(user.id).password_hash == "$argon2id$hash"
        assert reloaded.get_role("admin").permissions == frozenset({"users.read"})
        assert reloaded.get_roles(user.id) == ["admin"]
        restored = reloaded.get_refresh_token_by_hash("persisted-hash")
        assert restored.expires_at == token.expires_at
        assert reloaded.get_lineage(token.lineage_id).tip_id == token.id
        service = reloaded.get_service("reports")
        assert service.liveness == Liveness.HEALTHY
        assert service.allowed_roles == frozenset({"admin"})
        assert reloaded.list_audit()[0].action == "auth.login"


class FakeCursor:
    def __init__(self, rowcount=0, row=None, rows=None):
        self.rowcount = rowcount
        self._row = row
        self._rows = rows or []

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []
        self.rolled_back = False

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    from ssoauth.logging import get_logger

    store.logger = get_logger("test")
    return store


class TestPostgresStore:
    def test_lost_compare_and_swap_rolls_back(self):
        conn = FakeConnection([FakeCursor(), FakeCursor(rowcount=0)])
        store = _store(FakePool(conn))
        successor = _token("u1", "l1", "h2", parent_id="t1")

        assert store.advance_lineage_tip("l1", "t1", successor, NOW) is False
        assert conn.rolled_back
        assert len(conn.statements) == 2
        assert conn.statements[1][1] == (successor.id, "l1", "t1")

    def test_won_compare_and_swap_retires_previous_tip(self):
        conn = FakeConnection([FakeCursor(), FakeCursor(rowcount=1), FakeCursor(rowcount=1)])
        store = _store(FakePool(conn))

        assert store.advance_lineage_tip("l1", "t1", _token("u1", "l1", "h2", parent_id="t1"), NOW) is True
        assert not conn.rolled_back
        assert "revoked_reason = 'rotated'" in conn.statements[2][0]
        assert conn.statements[2][1] == (NOW, "t1")

    def test_revoke_lineage_already_revoked(self):
        conn = FakeConnection([FakeCursor(row=None)])
        store = _store(FakePool(conn))
        assert store.revoke_lineage("l1", "logout", NOW) is False
        assert len(conn.statements) == 1

    @pytest.mark.parametrize(
        "error",
        [errors.OperationalError("connection refused"), PoolTimeout("pool exhausted")],
    )
    def test_connection_failures_map_to_store_unavailable(self, error):
        store = _store(FakePool(error=error))
        with pytest.raises(StoreUnavailable):
            store.get_user("u1")

    def test_unique_violation_maps_to_constraint(self):
        conn = FakeConnection([FakeCursor(row=None), errors.UniqueViolation("duplicate key")])
        store = _store(FakePool(conn))
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com")

    def test_identity_clash_checked_across_columns(self):
        conn = FakeConnection([FakeCursor(row={"?column?": 1})])
        store = _store(FakePool(conn))
        with pytest.raises(ConstraintViolation):
            store.create_user("Alice@Example.com", "Alice")
        query, params = conn.statements[0]
        assert "email = %s OR username = %s OR email = %s" in query
        assert params == ("alice@example.com", "alice@example.com", "alice")
        assert len(conn.statements) == 1

    def test_identity_shape_checked_before_querying(self):
        conn = FakeConnection([])
        store = _store(FakePool(conn))
        with pytest.raises(ConstraintViolation):
            store.create_user("bob@example.com", "bob@elsewhere")
        assert conn.statements == []

    def test_prune_lineages_uses_revocation_cutoff(self):
        conn = FakeConnection([FakeCursor(rowcount=3)])
        store = _store(FakePool(conn))
        cutoff = NOW - timedelta(days=7)
        assert store.prune_lineages(NOW, revoked_before=cutoff) == 3
        assert conn.statements[0][1] == (cutoff, NOW)

    def test_missing_tables_reported(self):
        conn = FakeConnection([FakeCursor(row={"oid": None})] * 20)
        store = _store(FakePool(conn))
        with pytest.raises(RuntimeError, match="scripts/schema.sql"):
            store._verify_required_schema()
