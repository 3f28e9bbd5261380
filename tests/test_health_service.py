"""Tests for health aggregation, caching and in-flight coalescing."""

import asyncio
import time

import pytest

from conftest import FakeCache, FakeRegistry
from schemas.health import HealthSnapshot, HealthState, ServiceKind, ServiceStatus
from schemas.system import UpdateTarget
from services.health_probes import ServiceProbe
from services.health_service import (
    HEALTH_CACHE_KEY,
    HealthAggregator,
    HealthCache,
    SingleFlight,
    UpdateInfoService,
)


class CountingProbe(ServiceProbe):
    """Probe with a fixed outcome that counts how often it ran."""

    def __init__(self, name, status=HealthState.HEALTHY, delay=0.05, version=None, kind=ServiceKind.CONTAINER):
        super().__init__(name, timeout=5.0)
        self.result_status = status
        self.delay = delay
        self.version = version
        self.kind = kind
        self.runs = 0

    async def check(self) -> ServiceStatus:
        self.runs += 1
        await asyncio.sleep(self.delay)
        return ServiceStatus(
            name=self.name,
            status=self.result_status,
            latency_ms=None if self.result_status == HealthState.DOWN else 1,
            message="Running",
            kind=self.kind,
            version=self.version,
        )


class ExplodingProbe(ServiceProbe):
    """Violates the probe contract by raising from run()."""

    async def check(self):
        raise AssertionError("unreachable")

    async def run(self):
        raise RuntimeError("probe bug")


def make_probes():
    return [
        CountingProbe("PostgreSQL", kind=ServiceKind.DATABASE),
        CountingProbe("Redis", kind=ServiceKind.CACHE),
        CountingProbe("n8n"),
        CountingProbe("Grafana", version="11.2.0"),
    ]


@pytest.mark.asyncio
async def test_probes_run_concurrently():
    probes = [CountingProbe(f"svc-{i}", delay=0.3) for i in range(4)]
    aggregator = HealthAggregator(probes)

    started = time.monotonic()
    snapshot = await aggregator.run()
    elapsed = time.monotonic() - started

    assert elapsed < 0.9
    assert [s.name for s in snapshot.services] == [p.name for p in probes]
    assert snapshot.status == HealthState.HEALTHY


@pytest.mark.asyncio
async def test_overall_degraded_when_any_service_not_healthy():
    probes = make_probes()
    probes[1].result_status = HealthState.DOWN
    snapshot = await HealthAggregator(probes).run()

    assert snapshot.status == HealthState.DEGRADED
    redis_status = next(s for s in snapshot.services if s.name == "Redis")
    assert redis_status.status == HealthState.DOWN
    assert redis_status.latency_ms is None


@pytest.mark.asyncio
async def test_raising_probe_becomes_down():
    snapshot = await HealthAggregator([CountingProbe("PostgreSQL"), ExplodingProbe("Broken")]).run()

    broken = snapshot.services[1]
    assert broken.status == HealthState.DOWN
    assert broken.message == "probe bug"
    assert snapshot.status == HealthState.DEGRADED


@pytest.mark.asyncio
async def test_version_fallback_fills_missing_version():
    async def resolve_n8n():
        return "1.70.3"

    snapshot = await HealthAggregator(make_probes(), version_fallbacks={"n8n": resolve_n8n}).run()

    n8n = next(s for s in snapshot.services if s.name == "n8n")
    assert n8n.version == "1.70.3"
    assert n8n.message == "Running (v1.70.3)"


@pytest.mark.asyncio
async def test_version_fallback_skipped_for_unhealthy_service():
    calls = []

    async def resolve_n8n():
        calls.append(1)
        return "1.70.3"

    probes = make_probes()
    probes[2].result_status = HealthState.DEGRADED
    snapshot = await HealthAggregator(probes, version_fallbacks={"n8n": resolve_n8n}).run()

    assert calls == []
    assert next(s for s in snapshot.services if s.name == "n8n").version is None


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run(fake_cache):
    probes = make_probes()
    cache = HealthCache(HealthAggregator(probes), cache=fake_cache, ttl=60)

    results = await asyncio.gather(*(cache.get_health() for _ in range(10)))

    assert all(p.runs == 1 for p in probes)
    assert all(r is results[0] for r in results)
    assert fake_cache.sets == 1
    assert HEALTH_CACHE_KEY in fake_cache.data


@pytest.mark.asyncio
async def test_cached_snapshot_skips_probes(fake_cache):
    probes = make_probes()
    cache = HealthCache(HealthAggregator(probes), cache=fake_cache, ttl=60)

    first = await cache.get_health()
    second = await cache.get_health()

    assert all(p.runs == 1 for p in probes)
    assert isinstance(second, HealthSnapshot)
    assert second == first


@pytest.mark.asyncio
async def test_unreachable_cache_still_coalesces():
    probes = make_probes()
    failing_cache = FakeCache(fail=True)
    cache = HealthCache(HealthAggregator(probes), cache=failing_cache, ttl=60)

    results = await asyncio.gather(*(cache.get_health() for _ in range(5)))

    assert all(p.runs == 1 for p in probes)
    assert all(r.status == HealthState.HEALTHY for r in results)


@pytest.mark.asyncio
async def test_in_flight_handle_cleared_after_run():
    probes = make_probes()
    failing_cache = FakeCache(fail=True)
    cache = HealthCache(HealthAggregator(probes), cache=failing_cache, ttl=60)

    await cache.get_health()
    assert not cache.entry.flight.in_flight

    # Nothing cached, so the next miss starts a fresh run
    await cache.get_health()
    assert all(p.runs == 2 for p in probes)


@pytest.mark.asyncio
async def test_malformed_cache_entry_is_ignored(fake_cache):
    fake_cache.data[HEALTH_CACHE_KEY] = {"status": "bogus"}
    probes = make_probes()
    cache = HealthCache(HealthAggregator(probes), cache=fake_cache, ttl=60)

    snapshot = await cache.get_health()

    assert snapshot.status == HealthState.HEALTHY
    assert all(p.runs == 1 for p in probes)


@pytest.mark.asyncio
async def test_single_flight_clears_after_failure():
    flight = SingleFlight()
    calls = []

    async def failing():
        calls.append(1)
        await asyncio.sleep(0.01)
        raise RuntimeError("boom")

    outcomes = await asyncio.gather(flight.do(failing), flight.do(failing), return_exceptions=True)

    assert len(calls) == 1
    assert all(isinstance(o, RuntimeError) for o in outcomes)
    assert not flight.in_flight

    async def succeeding():
        return "ok"

    assert await flight.do(succeeding) == "ok"


@pytest.mark.asyncio
async def test_update_info_is_cached(fake_cache):
    registry = FakeRegistry(latest="2.0.0")
    targets = {
        "n8n": UpdateTarget(service="n8n", image="n8nio/n8n", container_name="rcc-n8n"),
        "grafana": UpdateTarget(service="grafana", image="grafana/grafana-oss", container_name="rcc-grafana"),
    }
    service = UpdateInfoService(registry=registry, targets=targets, cache=fake_cache, ttl=300)

    first = await service.get_update_info()
    second = await service.get_update_info()

    assert first.versions == {"n8n": "2.0.0", "grafana": "2.0.0"}
    assert second.versions == first.versions
    assert registry.calls == ["n8nio/n8n", "grafana/grafana-oss"]


@pytest.mark.asyncio
async def test_update_info_unknown_latest_is_none(fake_cache):
    targets = {"n8n": UpdateTarget(service="n8n", image="n8nio/n8n", container_name="rcc-n8n")}
    service = UpdateInfoService(registry=FakeRegistry(latest=None), targets=targets, cache=fake_cache)

    info = await service.get_update_info()

    assert info.versions == {"n8n": None}
