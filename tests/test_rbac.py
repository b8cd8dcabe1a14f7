import pytest

from ssoauth.service.errors import ValidationError
from ssoauth.service.rbac import RBACResolver
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.memory import MemoryStore


class FlakyRoleStore(MemoryStore):
    down = False

    def list_roles(self):
        if self.down:
            raise StoreUnavailable("database unavailable")
        return super().list_roles()


@pytest.fixture
def store():
    store = FlakyRoleStore()
    store.upsert_role("user", ["profile.read", "profile.update"])
    store.upsert_role("admin", ["users.create", "users.read", "users.update"])
    return store


@pytest.fixture
def rbac(store, clock):
    return RBACResolver(store, ttl_seconds=30, clock=clock)


def test_resolve_unions_role_permissions(rbac):
    assert rbac.resolve(["user", "admin"]) == frozenset(
        {"profile.read", "profile.update", "users.create", "users.read", "users.update"}
    )


def test_unknown_roles_add_nothing(rbac):
    assert rbac.resolve(["user", "ghost"]) == frozenset({"profile.read", "profile.update"})
    assert rbac.resolve([]) == frozenset()


def test_exact_match_only(rbac):
    perms = rbac.resolve(["admin"])
    assert rbac.authorize(perms, "users.read")
    assert not rbac.authorize(perms, "users.delete")
    assert not rbac.authorize(perms, "users")
    assert not rbac.authorize(perms, "users.*")


def test_upsert_role_is_visible_immediately(rbac):
    rbac.resolve(["user"])
    rbac.upsert_role("auditor", ["system.logs"], "Reads the audit log")
    assert rbac.resolve(["auditor"]) == frozenset({"system.logs"})
    assert "auditor" in rbac.known_roles()
    assert rbac.get_role("auditor").description == "Reads the audit log"


def test_blank_role_name_rejected(rbac):
    with pytest.raises(ValidationError):
        rbac.upsert_role("  ", ["x"])


def test_out_of_band_changes_picked_up_after_ttl(rbac, store, clock):
    assert rbac.resolve(["user"]) == frozenset({"profile.read", "profile.update"})
    store.upsert_role("user", ["profile.read"])

    clock.advance(seconds=29)
    assert "profile.update" in rbac.resolve(["user"])
    clock.advance(seconds=1)
    assert rbac.resolve(["user"]) == frozenset({"profile.read"})


def test_store_outage_keeps_last_snapshot(rbac, store, clock):
    rbac.resolve(["user"])
    store.down = True
    clock.advance(minutes=5)
    assert rbac.resolve(["user"]) == frozenset({"profile.read", "profile.update"})


def test_store_outage_before_first_load_raises(store, clock):
    store.down = True
    rbac = RBACResolver(store, clock=clock)
    with pytest.raises(StoreUnavailable):
        rbac.resolve(["user"])


def test_list_roles_sorted(rbac):
    assert [r.name for r in rbac.list_roles()] == ["admin", "user"]
