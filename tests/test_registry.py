"""Tests for the service registry and the background health prober."""

import asyncio

import httpx
import pytest

from ssoauth.config import ProbeRetryPolicy
from ssoauth.service.errors import NotFoundError, ServiceUnreachable, ValidationError
from ssoauth.service.registry import HealthProber, HttpxHealthTransport
from ssoauth.storage.models import Liveness


class ScriptedTransport:
    """Health transport that replays scripted outcomes per URL."""

    def __init__(self, script=None, default=200):
        self.script = script or {}
        self.default = default
        self.calls = []

    async def check(self, url, timeout):
        self.calls.append(url)
        outcomes = self.script.get(url)
        outcome = outcomes.pop(0) if outcomes else self.default
        if outcome == "hang":
            await asyncio.sleep(timeout * 10)
            return 200
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def registry(stack):
    return stack.registry


def _prober(stack, transport, **kwargs):
    kwargs.setdefault("timeout", 0.05)
    return HealthProber(
        stack.store, transport, stack.audit, stack.system_config, clock=stack.clock, **kwargs
    )


class TestRegistry:
    def test_register_and_get(self, registry, stack):
        service = registry.register(
            "reports",
            "http://reports.internal:8002",
            health_check_url="http://reports.internal:8002/health",
            allowed_roles=["admin", " "],
            actor="admin-1",
        )
        assert service.allowed_roles == frozenset({"admin"})
        assert service.liveness == Liveness.UNKNOWN
        assert registry.get("reports").probe_url == "http://reports.internal:8002/health"

        entry = stack.audit.list_entries(action="service.registered")[0]
        assert entry.actor == "admin-1"
        assert entry.target == "reports"

    def test_invalid_urls_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.register("bad", "ftp://example.com")
        with pytest.raises(ValidationError):
            registry.register("bad", "http://ok.example", health_check_url="/health")
        with pytest.raises(ValidationError):
            registry.register("  ", "http://ok.example")

    def test_get_unknown(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("nope")

    def test_reregistration_keeps_liveness(self, registry, stack):
        registry.register("reports", "http://reports.internal")
        stack.store.record_probe_result("reports", Liveness.HEALTHY, stack.clock.now())
        registry.register("reports", "http://reports.internal:9000", allowed_roles=["admin"])

        service = registry.get("reports")
        assert service.url == "http://reports.internal:9000"
        assert service.liveness == Liveness.HEALTHY

    def test_unregister(self, registry, stack):
        registry.register("reports", "http://reports.internal")
        assert registry.unregister("reports") is True
        assert registry.unregister("reports") is False
        assert registry.authorize_access("reports", ["admin"]) is False
        assert len(stack.audit.list_entries(action="service.unregistered")) == 1

    def test_access_requires_shared_role(self, registry):
        registry.register("reports", "http://reports.internal", allowed_roles=["admin"])
        assert not registry.authorize_access("reports", ["user"])
        assert registry.authorize_access("reports", ["user", "admin"])
        assert not registry.authorize_access("unknown", ["admin"])

    def test_grant_is_seen_on_next_check(self, registry, stack):
        registry.register("reports", "http://reports.internal", allowed_roles=["admin"])
        user = stack.auth.register("alice@example.com", "CorrectHorse42!")

        assert not registry.authorize_principal("reports", user.id)
        stack.auth.assign_role(user.id, "admin")
        assert registry.authorize_principal("reports", user.id)


class TestHealthProber:
    @pytest.mark.asyncio
    async def test_healthy_probe(self, stack):
        stack.registry.register("reports", "http://reports.internal", health_check_url="http://reports.internal/health")
        transport = ScriptedTransport()
        result = await _prober(stack, transport).probe_once()

        assert result == {"reports": Liveness.HEALTHY}
        assert transport.calls == ["http://reports.internal/health"]
        changes = stack.audit.list_entries(action="service.liveness_changed")
        assert len(changes) == 1
        assert changes[0].meta["from"] == "unknown"
        assert changes[0].meta["to"] == "healthy"

    @pytest.mark.asyncio
    async def test_three_timeouts_audit_one_transition(self, stack):
        stack.registry.register("reports", "http://reports.internal")
        transport = ScriptedTransport({"http://reports.internal": [200, "hang", "hang", "hang"]})
        prober = _prober(stack, transport)

        await prober.probe_once()
        for _ in range(3):
            stack.clock.advance(seconds=30)
            assert await prober.probe_once() == {"reports": Liveness.UNHEALTHY}

        service = stack.store.get_service("reports")
        assert service.consecutive_failures == 3
        assert service.last_error == "timeout"
        changes = stack.audit.list_entries(action="service.liveness_changed")
        assert [(c.meta["from"], c.meta["to"]) for c in reversed(changes)] == [
            ("unknown", "healthy"),
            ("healthy", "unhealthy"),
        ]
        assert changes[0].severity == "warning"

    @pytest.mark.asyncio
    async def test_recovery_resets_failures(self, stack):
        stack.registry.register("reports", "http://reports.internal")
        transport = ScriptedTransport({"http://reports.internal": [503, ServiceUnreachable("refused"), 204]})
        prober = _prober(stack, transport)

        for _ in range(3):
            await prober.probe_once()
        service = stack.store.get_service("reports")
        assert service.liveness == Liveness.HEALTHY
        assert service.consecutive_failures == 0
        assert len(stack.audit.list_entries(action="service.liveness_changed")) == 2

    @pytest.mark.asyncio
    async def test_one_slow_service_does_not_block_others(self, stack):
        stack.registry.register("slow", "http://slow.internal")
        stack.registry.register("fast", "http://fast.internal")
        transport = ScriptedTransport({"http://slow.internal": ["hang"]})

        result = await _prober(stack, transport).probe_once()
        assert result == {"slow": Liveness.UNHEALTHY, "fast": Liveness.HEALTHY}

    @pytest.mark.asyncio
    async def test_exponential_backoff_skips_unhealthy_services(self, stack):
        stack.registry.register("flaky", "http://flaky.internal")
        transport = ScriptedTransport(default=500)
        prober = _prober(stack, transport, retry_policy=ProbeRetryPolicy.EXPONENTIAL)

        await prober.probe_once()
        assert len(transport.calls) == 1

        # one failure: wait one interval
        stack.clock.advance(seconds=29)
        assert await prober.probe_once() == {}
        stack.clock.advance(seconds=1)
        await prober.probe_once()
        assert len(transport.calls) == 2

        # two failures: wait two intervals
        stack.clock.advance(seconds=30)
        assert await prober.probe_once() == {}
        stack.clock.advance(seconds=30)
        await prober.probe_once()
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_start_and_stop(self, stack):
        stack.system_config.set("registry.probe_interval", "1s", "duration")
        stack.registry.register("reports", "http://reports.internal")
        prober = _prober(stack, ScriptedTransport())

        await prober.start()
        assert prober.running
        await asyncio.sleep(0.05)
        await prober.stop()

        assert not prober.running
        assert stack.store.get_service("reports").liveness == Liveness.HEALTHY


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_returns_status_code(self):
        def handler(request):
            return httpx.Response(204 if request.url.path == "/health" else 404)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpxHealthTransport(client)
        assert await transport.check("http://svc.internal/health", 1.0) == 204
        assert await transport.check("http://svc.internal/other", 1.0) == 404
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_errors_become_service_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = HttpxHealthTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(ServiceUnreachable):
            await transport.check("http://svc.internal/health", 1.0)
