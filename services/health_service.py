"""Health aggregation with a shared cache and in-flight request coalescing."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Mapping, Optional, Sequence, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from config import settings
from schemas.health import HealthSnapshot, HealthState, ServiceStatus
from schemas.system import UpdateInfo, UpdateTarget
from services.cache_service import cache_service
from services.components import N8N_RELEASE_PREFIX, N8N_SENTRY_META, UPDATE_TARGETS
from services.health_probes import (
    AppSelfProbe,
    CacheProbe,
    DatabaseProbe,
    HttpProbe,
    ServiceProbe,
    grafana_version,
    running_message,
)
from services.registry_client import RegistryClient, registry_client
from services.version_resolver import VersionResolver

logger = structlog.get_logger()

HEALTH_CACHE_KEY = "system:health"
UPDATE_INFO_CACHE_KEY = "system:update_info"

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

VersionFallback = Callable[[], Awaitable[Optional[str]]]


class SingleFlight(Generic[T]):
    """Collapse concurrent calls into one underlying execution.

    The first caller creates the in-flight task; callers arriving while it
    runs await the same task. The handle is cleared when the task finishes,
    whether it succeeded or failed, so the next call starts fresh. There is
    no await between checking and setting the handle, which makes the
    check-then-set atomic on the event loop.
    """

    def __init__(self):
        self._inflight: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    async def do(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run(fn))
        # A cancelled caller must not cancel the run other callers share
        return await asyncio.shield(self._inflight)

    async def _run(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._inflight = None


class HealthAggregator:
    """Run every probe concurrently and merge the results into one snapshot."""

    def __init__(
        self,
        probes: Sequence[ServiceProbe],
        version_fallbacks: Optional[Mapping[str, VersionFallback]] = None
    ):
        self.probes = list(probes)
        self.version_fallbacks = dict(version_fallbacks or {})

    async def _fill_version(self, status: ServiceStatus) -> ServiceStatus:
        fallback = self.version_fallbacks.get(status.name)
        if fallback is None or status.version or status.status != HealthState.HEALTHY:
            return status
        try:
            version = await fallback()
        except Exception as e:
            logger.warning("Version fallback failed", service=status.name, error=str(e))
            return status
        if not version:
            return status
        return status.model_copy(update={"version": version, "message": running_message(version)})

    async def run(self) -> HealthSnapshot:
        results = await asyncio.gather(*(probe.run() for probe in self.probes), return_exceptions=True)

        statuses = []
        for probe, result in zip(self.probes, results):
            if isinstance(result, BaseException):
                logger.error("Health probe raised", service=probe.name, error=str(result))
                result = probe.down(str(result) or "Health check error")
            statuses.append(result)

        statuses = list(await asyncio.gather(*(self._fill_version(s) for s in statuses)))

        overall = (
            HealthState.HEALTHY
            if all(s.status == HealthState.HEALTHY for s in statuses)
            else HealthState.DEGRADED
        )
        return HealthSnapshot(
            status=overall,
            services=statuses,
            checked_at=datetime.now(timezone.utc),
        )


class CachedResult(Generic[M]):
    """A shared cache entry in front of a coalesced producer.

    Cache reads and writes are best-effort: an unreachable or failing
    cache degrades to direct, deduplicated execution.
    """

    def __init__(self, model: type, key: str, ttl: int, cache: Any = None):
        self.model = model
        self.key = key
        self.ttl = ttl
        self.cache = cache if cache is not None else cache_service
        self.flight: SingleFlight[M] = SingleFlight()

    async def read(self) -> Optional[M]:
        try:
            data = await self.cache.get(self.key)
        except Exception as e:
            logger.warning("Cache read failed, running directly", key=self.key, error=str(e))
            return None
        if not data:
            return None
        try:
            return self.model.model_validate(data)
        except ValidationError as e:
            logger.warning("Discarding malformed cache entry", key=self.key, error=str(e))
            return None

    async def write(self, value: M):
        try:
            await self.cache.set(self.key, value.model_dump(mode="json"), self.ttl)
        except Exception as e:
            logger.warning("Cache write failed", key=self.key, error=str(e))

    async def get_or_run(self, producer: Callable[[], Awaitable[M]]) -> M:
        cached = await self.read()
        if cached is not None:
            return cached

        async def produce_and_store() -> M:
            value = await producer()
            await self.write(value)
            return value

        return await self.flight.do(produce_and_store)


class HealthCache:
    """Time-windowed health snapshot shared by every dashboard viewer."""

    def __init__(self, aggregator: HealthAggregator, cache: Any = None, ttl: Optional[int] = None):
        self.aggregator = aggregator
        self.entry: CachedResult[HealthSnapshot] = CachedResult(
            HealthSnapshot, HEALTH_CACHE_KEY, ttl or settings.health_cache_ttl, cache
        )

    async def get_health(self) -> HealthSnapshot:
        return await self.entry.get_or_run(self.aggregator.run)


class UpdateInfoService:
    """Latest published versions, for display only; cached longer than health."""

    def __init__(
        self,
        registry: Optional[RegistryClient] = None,
        targets: Optional[Mapping[str, UpdateTarget]] = None,
        cache: Any = None,
        ttl: Optional[int] = None
    ):
        self.registry = registry or registry_client
        self.targets = dict(targets if targets is not None else UPDATE_TARGETS)
        self.entry: CachedResult[UpdateInfo] = CachedResult(
            UpdateInfo, UPDATE_INFO_CACHE_KEY, ttl or settings.update_info_cache_ttl, cache
        )

    async def _lookup(self) -> UpdateInfo:
        latest = await asyncio.gather(
            *(self.registry.get_latest_version(target.image) for target in self.targets.values())
        )
        return UpdateInfo(
            versions=dict(zip(self.targets.keys(), latest)),
            checked_at=datetime.now(timezone.utc),
        )

    async def get_update_info(self) -> UpdateInfo:
        return await self.entry.get_or_run(self._lookup)


def build_default_aggregator(resolver: Optional[VersionResolver] = None) -> HealthAggregator:
    """Probes for the application, PostgreSQL, Redis, n8n and Grafana."""
    resolver = resolver or VersionResolver()
    n8n_url = settings.n8n_internal_url.rstrip("/")
    grafana_url = settings.grafana_internal_url.rstrip("/")

    probes = [
        AppSelfProbe(),
        DatabaseProbe(),
        CacheProbe(),
        HttpProbe("n8n", f"{n8n_url}/healthz"),
        HttpProbe("Grafana", f"{grafana_url}/api/health", version_extractor=grafana_version),
    ]

    # n8n's health endpoint carries no version
    fallbacks: Dict[str, VersionFallback] = {
        "n8n": lambda: resolver.resolve(
            container_name=settings.n8n_container_name,
            page_url=f"{n8n_url}/",
            meta_name=N8N_SENTRY_META,
            release_prefix=N8N_RELEASE_PREFIX,
        ),
    }
    return HealthAggregator(probes, version_fallbacks=fallbacks)


# Global service instances
health_cache = HealthCache(build_default_aggregator())
update_info_service = UpdateInfoService()
