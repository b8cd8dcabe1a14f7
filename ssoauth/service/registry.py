"""Microservice registry and background liveness prober.

The registry answers "may a principal holding these roles use this service"
and keeps each service's liveness current. The prober runs as its own asyncio
task: every tick it probes all due services concurrently, each probe bounded
by a timeout, and records only liveness *transitions* in the audit log.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

import httpx

from ssoauth.config import ProbeRetryPolicy
from ssoauth.logging import get_logger
from ssoauth.service.audit import SYSTEM_ACTOR, AuditLog
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.errors import NotFoundError, ServiceUnreachable, ValidationError
from ssoauth.service.system_config import SystemConfigService
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.models import Liveness, Microservice

logger = get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_BACKOFF_SECONDS = 300


class ServiceStore(Protocol):
    def upsert_service(self, service: Microservice) -> Microservice: ...

    def get_service(self, name: str) -> Optional[Microservice]: ...

    def list_services(self) -> List[Microservice]: ...

    def delete_service(self, name: str) -> bool: ...

    def record_probe_result(
        self,
        name: str,
        liveness: Liveness,
        probed_at: datetime,
        error: Optional[str] = None,
    ) -> Optional[Liveness]: ...

    def get_roles(self, user_id: str) -> List[str]: ...


class HealthTransport(Protocol):
    async def check(self, url: str, timeout: float) -> int:
        """Return the HTTP status of the health endpoint."""
        ...


class HttpxHealthTransport:
    """GET the health URL with a shared ``httpx.AsyncClient``."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def check(self, url: str, timeout: float) -> int:
        try:
            response = await self._get_client().get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            raise ServiceUnreachable(
                f"health check failed: {type(exc).__name__}", detail={"url": url}
            ) from exc
        return response.status_code

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _validate_url(url: Optional[str], field: str) -> None:
    if url is None:
        return
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError("url must be absolute http(s)", detail={"field": field})


class ServiceRegistry:
    def __init__(
        self,
        store: ServiceStore,
        audit: AuditLog,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock or SystemClock()

    def register(
        self,
        name: str,
        url: str,
        *,
        health_check_url: Optional[str] = None,
        description: Optional[str] = None,
        allowed_roles: Iterable[str] = (),
        actor: str = SYSTEM_ACTOR,
    ) -> Microservice:
        """Insert or update a service by name; liveness state survives re-registration."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("service name required", detail={"field": "name"})
        _validate_url(url, "url")
        _validate_url(health_check_url, "health_check_url")
        service = self.store.upsert_service(
            Microservice(
                name=name,
                url=url,
                health_check_url=health_check_url,
                description=description,
                allowed_roles=frozenset(r.strip() for r in allowed_roles if r and r.strip()),
            )
        )
        self.audit.record(
            "service.registered",
            actor=actor,
            target=name,
            meta={"allowed_roles": sorted(service.allowed_roles)},
        )
        logger.info("service_registered", service=name, allowed_roles=sorted(service.allowed_roles))
        return service

    def unregister(self, name: str, *, actor: str = SYSTEM_ACTOR) -> bool:
        removed = self.store.delete_service(name)
        if removed:
            self.audit.record("service.unregistered", actor=actor, target=name, severity="warning")
        return removed

    def get(self, name: str) -> Microservice:
        service = self.store.get_service(name)
        if service is None:
            raise NotFoundError("service not found", detail={"service": name})
        return service

    def list_services(self) -> List[Microservice]:
        return self.store.list_services()

    def authorize_access(self, service_name: str, principal_roles: Iterable[str]) -> bool:
        """True when the principal shares at least one role with the service's allow list."""
        service = self.store.get_service(service_name)
        if service is None:
            return False
        return bool(service.allowed_roles & frozenset(principal_roles))

    def authorize_principal(self, service_name: str, user_id: str) -> bool:
        """Same as :meth:`authorize_access` using the principal's current stored roles."""
        return self.authorize_access(service_name, self.store.get_roles(user_id))


class HealthProber:
    """Periodic liveness probing with its own start/stop lifecycle."""

    def __init__(
        self,
        store: ServiceStore,
        transport: HealthTransport,
        audit: AuditLog,
        system_config: SystemConfigService,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        retry_policy: ProbeRetryPolicy = ProbeRetryPolicy.CONSTANT,
        max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.audit = audit
        self.system_config = system_config
        self.timeout = timeout
        self.retry_policy = ProbeRetryPolicy(retry_policy)
        self.max_backoff = timedelta(seconds=max_backoff_seconds)
        self.clock = clock or SystemClock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("health_prober_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("health_prober_started", timeout=self.timeout, retry_policy=self.retry_policy.value)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("health_prober_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.probe_once()
            except Exception as exc:
                logger.error(
                    "health_prober_tick_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.system_config.probe_interval().total_seconds())

    def _is_due(self, service: Microservice, now: datetime) -> bool:
        if self.retry_policy == ProbeRetryPolicy.CONSTANT:
            return True
        if service.liveness != Liveness.UNHEALTHY or service.last_probe_at is None:
            return True
        interval = self.system_config.probe_interval()
        exponent = min(max(service.consecutive_failures - 1, 0), 16)
        backoff = min(interval * (2 ** exponent), self.max_backoff)
        return now - service.last_probe_at >= backoff

    async def probe_once(self) -> Dict[str, Liveness]:
        """Probe every due service concurrently and return the observed liveness."""
        try:
            services = self.store.list_services()
        except StoreUnavailable as exc:
            logger.warning("health_probe_store_unavailable", error=exc.message)
            return {}
        now = self.clock.now()
        due = [s for s in services if self._is_due(s, now)]
        if not due:
            return {}
        results = await asyncio.gather(
            *(self._probe(service) for service in due), return_exceptions=True
        )
        observed: Dict[str, Liveness] = {}
        for service, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(
                    "health_probe_failed",
                    service=service.name,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                continue
            observed[service.name] = result
        return observed

    async def _check(self, service: Microservice) -> tuple[Liveness, Optional[str]]:
        try:
            status = await asyncio.wait_for(
                self.transport.check(service.probe_url, self.timeout), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return Liveness.UNHEALTHY, "timeout"
        except ServiceUnreachable as exc:
            return Liveness.UNHEALTHY, exc.message
        except Exception as exc:
            return Liveness.UNHEALTHY, f"{type(exc).__name__}: {exc}"
        if 200 <= status < 300:
            return Liveness.HEALTHY, None
        return Liveness.UNHEALTHY, f"status {status}"

    async def _probe(self, service: Microservice) -> Liveness:
        liveness, error = await self._check(service)
        probed_at = self.clock.now()
        try:
            previous = self.store.record_probe_result(service.name, liveness, probed_at, error)
        except StoreUnavailable as exc:
            logger.warning("health_probe_store_unavailable", service=service.name, error=exc.message)
            return liveness
        if previous is None:
            # unregistered while the probe was in flight
            return liveness
        if previous != liveness:
            logger.info(
                "service_liveness_changed",
                service=service.name,
                previous=previous.value,
                current=liveness.value,
                error=error,
            )
            try:
                self.audit.record(
                    "service.liveness_changed",
                    actor=SYSTEM_ACTOR,
                    target=service.name,
                    outcome="success",
                    severity="warning" if liveness == Liveness.UNHEALTHY else "info",
                    meta={"from": previous.value, "to": liveness.value, "error": error},
                )
            except StoreUnavailable as exc:
                logger.error("health_probe_audit_failed", service=service.name, error=exc.message)
        return liveness
