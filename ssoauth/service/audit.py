from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Protocol

from ssoauth.config import AuditFailurePolicy
from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.models import AuditEntry, new_id

if TYPE_CHECKING:
    from ssoauth.service.system_config import SystemConfigService

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditStore(Protocol):
    def append_audit(self, entry: AuditEntry) -> None: ...

    def list_audit(
        self,
        limit: int = 100,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]: ...


class AuditLog:
    """Append-only audit trail with a configurable failure policy.

    Under ``fail_closed`` a rejected write propagates as ``StoreUnavailable``
    and the audited operation fails. Under ``fail_open`` the failure is logged
    at error level and the caller continues.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        policy: AuditFailurePolicy = AuditFailurePolicy.FAIL_CLOSED,
        clock: Optional[Clock] = None,
        system_config: Optional["SystemConfigService"] = None,
    ) -> None:
        self.store = store
        self._policy = AuditFailurePolicy(policy)
        self.clock = clock or SystemClock()
        self.system_config = system_config

    @property
    def policy(self) -> AuditFailurePolicy:
        if self.system_config is not None:
            return self.system_config.audit_failure_policy()
        return self._policy

    def append(self, entry: AuditEntry) -> Optional[AuditEntry]:
        try:
            self.store.append_audit(entry)
        except StoreUnavailable as exc:
            return self._handle_failure(entry, exc)
        except Exception as exc:
            return self._handle_failure(
                entry, StoreUnavailable("audit write failed", {"error": str(exc)})
            )
        return entry

    def _handle_failure(self, entry: AuditEntry, exc: StoreUnavailable) -> None:
        logger.error(
            "audit_write_failed",
            action=entry.action,
            actor=entry.actor,
            target=entry.target,
            outcome=entry.outcome,
            policy=self.policy.value,
            error=exc.message,
        )
        if self.policy == AuditFailurePolicy.FAIL_CLOSED:
            raise exc
        return None

    def record(
        self,
        action: str,
        *,
        actor: str,
        target: Optional[str] = None,
        outcome: str = "success",
        severity: str = "info",
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Optional[AuditEntry]:
        entry = AuditEntry(
            id=new_id(),
            timestamp=self.clock.now(),
            actor=actor,
            action=action,
            target=target,
            outcome=outcome,
            severity=severity,
            ip_addr=ip_addr,
            user_agent=user_agent,
            meta=meta,
        )
        return self.append(entry)

    def list_entries(
        self,
        limit: int = 100,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        return self.store.list_audit(max(1, min(limit, 1000)), actor=actor, action=action)
