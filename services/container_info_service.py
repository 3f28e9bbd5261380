"""Container inventory for the settings page."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from config import settings
from schemas.system import ContainerInfo, ContainerInventory
from services.components import N8N_RELEASE_PREFIX, N8N_SENTRY_META
from services.container_backends import async_docker_call, docker_locator, is_azure_environment
from services.health_probes import grafana_version, http_get
from services.registry_client import RegistryClient, registry_client
from services.version_resolver import VersionResolver
from services.versioning import is_update_available

logger = structlog.get_logger()


async def list_container_uptimes(engine: Any) -> Dict[str, str]:
    """Container name -> engine status string ("Up 3 hours")."""
    if engine is None:
        return {}
    try:
        containers = await async_docker_call(engine.containers)
    except Exception as e:
        logger.warning("Could not list containers", error=str(e))
        return {}

    uptimes = {}
    for container in containers:
        names = container.get("Names") or []
        name = names[0].lstrip("/") if names else ""
        if name:
            uptimes[name] = container.get("Status") or "unknown"
    return uptimes


class ContainerInfoService:
    """Current and latest versions plus runtime status for each component."""

    def __init__(
        self,
        registry: Optional[RegistryClient] = None,
        resolver: Optional[VersionResolver] = None,
        engine_provider: Optional[Callable[[], Awaitable[Any]]] = None,
        azure_check: Callable[[], bool] = is_azure_environment,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.registry = registry or registry_client
        self.engine_provider = engine_provider or docker_locator.get
        self.resolver = resolver or VersionResolver(engine_provider=self.engine_provider, client=client)
        self.azure_check = azure_check
        self.client = client

    async def _reachable(self, url: str) -> bool:
        try:
            response = await http_get(url, settings.http_probe_timeout, self.client)
            return response.is_success
        except httpx.HTTPError:
            return False

    async def _grafana_version(self, base_url: str) -> Optional[str]:
        try:
            response = await http_get(f"{base_url}/api/health", settings.http_probe_timeout, self.client)
            if response.is_success:
                return grafana_version(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Grafana version lookup failed", error=str(e))
        return None

    async def get_inventory(self) -> ContainerInventory:
        engine = await self.engine_provider()
        docker_available = engine is not None
        azure_available = self.azure_check()
        can_update = docker_available or azure_available

        n8n_url = settings.n8n_internal_url.rstrip("/")
        grafana_url = settings.grafana_internal_url.rstrip("/")

        n8n_version, grafana_current, latest_n8n, latest_grafana, uptimes = await asyncio.gather(
            self.resolver.resolve(
                container_name=settings.n8n_container_name,
                page_url=f"{n8n_url}/",
                meta_name=N8N_SENTRY_META,
                release_prefix=N8N_RELEASE_PREFIX,
            ),
            self._grafana_version(grafana_url),
            self.registry.get_latest_version(settings.n8n_image),
            self.registry.get_latest_version(settings.grafana_image),
            list_container_uptimes(engine),
        )

        n8n_reachable = bool(n8n_version) or await self._reachable(f"{n8n_url}/healthz")

        containers = [
            ContainerInfo(
                service=settings.app_name,
                container_name=settings.app_container_name,
                image=settings.app_image,
                current_version=settings.app_version,
                status="running",
                uptime=uptimes.get(settings.app_container_name),
                can_update=False,  # App updates via CI/CD
            ),
            ContainerInfo(
                service="n8n",
                container_name=settings.n8n_container_name,
                image=settings.n8n_image,
                current_version=n8n_version,
                latest_version=latest_n8n,
                update_available=is_update_available(n8n_version, latest_n8n),
                status="running" if settings.n8n_container_name in uptimes or n8n_reachable else "unknown",
                uptime=uptimes.get(settings.n8n_container_name),
                can_update=can_update,
            ),
            ContainerInfo(
                service="Grafana",
                container_name=settings.grafana_container_name,
                image=settings.grafana_image,
                current_version=grafana_current,
                latest_version=latest_grafana,
                update_available=is_update_available(grafana_current, latest_grafana),
                status="running" if settings.grafana_container_name in uptimes or grafana_current else "unknown",
                uptime=uptimes.get(settings.grafana_container_name),
                can_update=can_update,
            ),
        ]

        return ContainerInventory(
            docker_available=docker_available,
            azure_available=azure_available,
            containers=containers,
            checked_at=datetime.now(timezone.utc),
        )


# Global container info service instance
container_info_service = ContainerInfoService()
