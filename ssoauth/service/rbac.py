from __future__ import annotations

import threading
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Protocol

from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.errors import ValidationError
from ssoauth.storage.common import normalize_permissions
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.models import Role

logger = get_logger(__name__)


class RoleStore(Protocol):
    def list_roles(self) -> List[Role]: ...

    def get_role(self, name: str) -> Optional[Role]: ...

    def upsert_role(
        self, name: str, permissions: Iterable[str], description: Optional[str] = None
    ) -> Role: ...


class RBACResolver:
    """Resolve role names into flat permission sets.

    The role table is held as an immutable mapping that is replaced wholesale
    (copy-on-write), so readers never observe a partially applied change.
    Permissions are opaque strings matched exactly; there is no wildcard or
    hierarchy expansion.
    """

    def __init__(
        self,
        store: RoleStore,
        *,
        ttl_seconds: int = 30,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ttl = timedelta(seconds=ttl_seconds)
        self._swap_lock = threading.Lock()
        self._snapshot: Mapping[str, frozenset[str]] = MappingProxyType({})
        self._loaded_at: Optional[datetime] = None

    def _current(self) -> Mapping[str, frozenset[str]]:
        loaded_at = self._loaded_at
        if loaded_at is None or self.clock.now() - loaded_at >= self.ttl:
            self.reload()
        return self._snapshot

    def reload(self) -> None:
        """Rebuild the snapshot from the store; keep the old one if the store is down."""
        try:
            roles = self.store.list_roles()
        except StoreUnavailable as exc:
            logger.warning("rbac_reload_failed", error=exc.message)
            if self._loaded_at is None:
                raise
            return
        table = {role.name: frozenset(role.permissions) for role in roles}
        with self._swap_lock:
            self._snapshot = MappingProxyType(table)
            self._loaded_at = self.clock.now()

    def invalidate(self) -> None:
        with self._swap_lock:
            self._loaded_at = None

    def resolve(self, role_names: Iterable[str]) -> frozenset[str]:
        """Union of the permissions of every named role; unknown roles add nothing."""
        table = self._current()
        permissions: set[str] = set()
        for name in role_names:
            permissions |= table.get(name, frozenset())
        return frozenset(permissions)

    @staticmethod
    def authorize(permission_set: Iterable[str], required: str) -> bool:
        return required in frozenset(permission_set)

    def upsert_role(
        self,
        name: str,
        permissions: Iterable[str],
        description: Optional[str] = None,
    ) -> Role:
        if not name or not name.strip():
            raise ValidationError("role name required")
        role = self.store.upsert_role(name.strip(), normalize_permissions(permissions), description)
        with self._swap_lock:
            table = dict(self._snapshot)
            table[role.name] = frozenset(role.permissions)
            self._snapshot = MappingProxyType(table)
        logger.info("role_upserted", role=role.name, permissions=len(role.permissions))
        return role

    def get_role(self, name: str) -> Optional[Role]:
        return self.store.get_role(name)

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def known_roles(self) -> frozenset[str]:
        return frozenset(self._current().keys())
