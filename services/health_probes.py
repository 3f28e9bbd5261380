"""Bounded health probes for the backing services."""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx
import redis.asyncio as redis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from schemas.health import HealthState, ServiceKind, ServiceStatus

logger = structlog.get_logger()

VersionExtractor = Callable[[Any], Optional[str]]


async def http_get(url: str, timeout: float, client: Optional[httpx.AsyncClient] = None) -> httpx.Response:
    """GET with a strict timeout, on a shared client when one is given."""
    if client is not None:
        return await client.get(url, timeout=timeout)
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as own_client:
        return await own_client.get(url)


def running_message(version: Optional[str]) -> str:
    return f"Running (v{version})" if version else "Running"


class ServiceProbe(ABC):
    """A single timed check against one backing service.

    `run()` never raises: timeouts, refused connections and malformed
    responses all come back as a `down` status with a descriptive message.
    """

    kind: ServiceKind = ServiceKind.CONTAINER

    def __init__(self, name: str, timeout: float = 5.0, clock: Callable[[], float] = time.perf_counter):
        self.name = name
        self.timeout = timeout
        self.clock = clock

    @abstractmethod
    async def check(self) -> ServiceStatus:
        """Perform the check and build a status."""

    async def run(self) -> ServiceStatus:
        """Run the check with an outer deadline and normalize every failure."""
        try:
            # Slack lets the client-level timeout report first
            return await asyncio.wait_for(self.check(), timeout=self.timeout + 1.0)
        except asyncio.TimeoutError:
            logger.warning("Health probe timed out", service=self.name, timeout=self.timeout)
            return self.down(f"Timeout ({self.timeout:g}s)")
        except Exception as e:
            logger.warning("Health probe failed", service=self.name, error=str(e))
            return self.down(str(e) or "Connection failed")

    def elapsed_ms(self, start: float) -> int:
        return round((self.clock() - start) * 1000)

    def down(self, message: str) -> ServiceStatus:
        return ServiceStatus(
            name=self.name,
            status=HealthState.DOWN,
            latency_ms=None,
            message=message,
            kind=self.kind,
        )


class DatabaseProbe(ServiceProbe):
    """Round-trip query against PostgreSQL, plus the server version."""

    kind = ServiceKind.DATABASE

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        name: str = "PostgreSQL",
        timeout: float = 5.0,
        **kwargs
    ):
        super().__init__(name, timeout=timeout, **kwargs)
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    async def check(self) -> ServiceStatus:
        async with self.session_factory() as session:
            start = self.clock()
            await session.execute(text("SELECT 1"))
            latency = self.elapsed_ms(start)

            version = None
            try:
                result = await session.execute(text("SHOW server_version"))
                version = result.scalar()
            except Exception as e:
                logger.debug("Could not read database version", error=str(e))

        return ServiceStatus(
            name=self.name,
            status=HealthState.HEALTHY,
            latency_ms=latency,
            message=f"Connected (v{version})" if version else "Connected",
            kind=self.kind,
            version=version,
        )


class CacheProbe(ServiceProbe):
    """Liveness command against Redis, plus the server version."""

    kind = ServiceKind.CACHE

    def __init__(
        self,
        client_provider: Optional[Callable[[], Optional[redis.Redis]]] = None,
        name: str = "Redis",
        timeout: float = 5.0,
        **kwargs
    ):
        super().__init__(name, timeout=timeout, **kwargs)
        if client_provider is None:
            from services.cache_service import cache_service
            client_provider = lambda: cache_service.redis_client
        self.client_provider = client_provider

    @staticmethod
    def _is_pong(reply: Any) -> bool:
        return reply is True or reply in ("PONG", b"PONG")

    @staticmethod
    def _parse_version(info: Any) -> Optional[str]:
        if isinstance(info, dict):
            version = info.get("redis_version")
            return str(version) if version is not None else None
        if isinstance(info, bytes):
            info = info.decode(errors="replace")
        if isinstance(info, str):
            match = re.search(r"redis_version:(\S+)", info)
            return match.group(1) if match else None
        return None

    async def check(self) -> ServiceStatus:
        client = self.client_provider()
        if client is None:
            return self.down("Redis not configured")

        start = self.clock()
        reply = await client.ping()
        latency = self.elapsed_ms(start)

        version = None
        try:
            version = self._parse_version(await client.info("server"))
        except Exception as e:
            logger.debug("Could not read cache version", error=str(e))

        return ServiceStatus(
            name=self.name,
            # Connected but not affirmative
            status=HealthState.HEALTHY if self._is_pong(reply) else HealthState.DEGRADED,
            latency_ms=latency,
            message=f"Connected (v{version})" if version else "Connected",
            kind=self.kind,
            version=version,
        )


class HttpProbe(ServiceProbe):
    """GET against a container's health endpoint."""

    kind = ServiceKind.CONTAINER

    def __init__(
        self,
        name: str,
        url: str,
        timeout: Optional[float] = None,
        version_extractor: Optional[VersionExtractor] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs
    ):
        super().__init__(name, timeout=timeout or settings.http_probe_timeout, **kwargs)
        self.url = url
        self.version_extractor = version_extractor
        self.client = client

    async def check(self) -> ServiceStatus:
        start = self.clock()
        try:
            response = await http_get(self.url, self.timeout, self.client)
        except httpx.TimeoutException:
            logger.warning("Health probe timed out", service=self.name, url=self.url)
            return self.down(f"Timeout ({self.timeout:g}s)")
        except httpx.HTTPError as e:
            logger.warning("Health probe connection failed", service=self.name, url=self.url, error=str(e))
            return self.down(str(e) or "Connection failed")
        latency = self.elapsed_ms(start)

        version = None
        if response.is_success and self.version_extractor:
            try:
                version = self.version_extractor(response.json())
            except Exception as e:
                # a reachable service stays healthy without a version
                logger.debug("Version extraction failed", service=self.name, error=str(e))
                version = None

        if not response.is_success:
            return ServiceStatus(
                name=self.name,
                status=HealthState.DEGRADED,
                latency_ms=latency,
                message=f"HTTP {response.status_code}",
                kind=self.kind,
            )

        return ServiceStatus(
            name=self.name,
            status=HealthState.HEALTHY,
            latency_ms=latency,
            message=running_message(version),
            kind=self.kind,
            version=version,
        )


class AppSelfProbe(ServiceProbe):
    """The application reporting on itself; always healthy while serving."""

    kind = ServiceKind.CONTAINER

    def __init__(self, name: Optional[str] = None, version: Optional[str] = None, **kwargs):
        super().__init__(name or settings.app_name, **kwargs)
        self.version = version or settings.app_version

    async def check(self) -> ServiceStatus:
        return ServiceStatus(
            name=self.name,
            status=HealthState.HEALTHY,
            latency_ms=0,
            message=running_message(self.version),
            kind=self.kind,
            version=self.version,
        )


def grafana_version(data: Any) -> Optional[str]:
    """Grafana's /api/health body carries a top-level "version"."""
    if isinstance(data, dict) and isinstance(data.get("version"), str):
        return data["version"]
    return None
