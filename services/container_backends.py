"""Execution backends for in-place container updates.

Two environments are supported: a local Docker engine reached through its
socket, and Azure Container Apps reached through the management REST API
with a managed identity. Which one is used is decided at runtime by probing
availability, see `select_backend`.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence

import docker
import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from config import settings
from schemas.system import UpdateTarget

logger = structlog.get_logger()

MANAGEMENT_RESOURCE = "https://management.azure.com/"
IDENTITY_API_VERSION = "2019-08-01"


class BackendError(Exception):
    """A backend step failed. `backup_name` is set when a renamed backup container was left behind."""

    def __init__(self, message: str, backup_name: Optional[str] = None):
        super().__init__(message)
        self.backup_name = backup_name


class StepTimeoutError(BackendError):
    """A docker step exceeded its ceiling. `pending` is the still-running call."""

    def __init__(self, message: str, pending: Optional[asyncio.Future] = None):
        super().__init__(message)
        self.pending = pending


async def async_docker_call(func: Callable, *args, **kwargs) -> Any:
    """Run a blocking docker SDK call without blocking the event loop."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _consume_result(call: asyncio.Future):
    if not call.cancelled() and call.exception() is not None:
        logger.warning("Timed-out docker call failed later", error=str(call.exception()))


class UpdateBackend(ABC):
    """An environment able to replace a running component's image."""

    name: str = "unknown"

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether this backend can be used from the current environment."""

    @abstractmethod
    async def apply(self, target: UpdateTarget, version: str) -> None:
        """Run `target` on `image:version`, raising on failure."""


async def select_backend(backends: Sequence[UpdateBackend]) -> Optional[UpdateBackend]:
    """First reachable backend in preference order, or None."""
    for backend in backends:
        if await backend.is_available():
            return backend
    return None


# ─── Docker ──────────────────────────────────────────────────────────


class DockerEngineLocator:
    """Cached, fail-safe access to the local Docker engine.

    A verdict (engine or None) is reused for `recheck_interval` seconds so
    environments without a socket are not pinged on every request.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        recheck_interval: Optional[int] = None,
        factory: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.base_url = base_url or settings.docker_host
        self.recheck_interval = recheck_interval if recheck_interval is not None else settings.docker_recheck_interval
        self.factory = factory or (lambda: docker.APIClient(base_url=self.base_url, timeout=10))
        self.clock = clock
        self._engine: Any = None
        self._checked_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _connect(self) -> Any:
        engine = self.factory()
        engine.ping()
        return engine

    async def get(self) -> Any:
        async with self._lock:
            now = self.clock()
            if self._checked_at is not None and now - self._checked_at < self.recheck_interval:
                return self._engine
            try:
                self._engine = await async_docker_call(self._connect)
                logger.debug("Docker engine reachable", base_url=self.base_url)
            except Exception as e:
                logger.info("Docker engine not reachable", base_url=self.base_url, error=str(e))
                self._engine = None
            self._checked_at = now
            return self._engine

    def reset(self):
        self._engine = None
        self._checked_at = None


def build_recreate_config(inspect: Dict[str, Any], image_ref: str) -> Dict[str, Any]:
    """Create-container config carrying env, ports, host config and network aliases forward."""
    config = inspect.get("Config") or {}
    networks = (inspect.get("NetworkSettings") or {}).get("Networks") or {}
    endpoints = {
        network: {"Aliases": (info or {}).get("Aliases") or []}
        for network, info in networks.items()
    }
    return {
        "Image": image_ref,
        "Env": config.get("Env"),
        "ExposedPorts": config.get("ExposedPorts"),
        "HostConfig": inspect.get("HostConfig"),
        "NetworkingConfig": {"EndpointsConfig": endpoints},
    }


class DockerBackend(UpdateBackend):
    """Pull, then recreate the container under its original name.

    Steps run strictly in order: pull, inspect, stop, rename to a
    timestamped backup, create, start, remove backup. A failure after the
    rename leaves the backup container in place; it is not renamed back.
    """

    name = "docker"

    def __init__(
        self,
        locator: Optional[DockerEngineLocator] = None,
        step_timeout: Optional[float] = None,
        stop_timeout: Optional[int] = None
    ):
        self.locator = locator or docker_locator
        self.step_timeout = step_timeout or settings.update_step_timeout
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.docker_stop_timeout

    async def is_available(self) -> bool:
        return await self.locator.get() is not None

    async def _bounded(self, step: str, func: Callable, *args, **kwargs) -> Any:
        call = asyncio.ensure_future(async_docker_call(func, *args, **kwargs))
        try:
            # the call outlives the ceiling and is awaited again during cleanup
            return await asyncio.wait_for(asyncio.shield(call), timeout=self.step_timeout)
        except asyncio.TimeoutError:
            call.add_done_callback(_consume_result)
            raise StepTimeoutError(f"Docker {step} timed out after {self.step_timeout:g}s", pending=call)

    async def _discard_partial(self, engine: Any, name: str, error: Exception) -> str:
        """Remove whatever a failed create/start left under the original name.

        Returns a note for the error message when the name may still be taken.
        """
        pending = getattr(error, "pending", None)
        if pending is not None and not pending.done():
            await asyncio.wait({pending}, timeout=self.step_timeout)
            if not pending.done():
                logger.error("Timed-out docker call still running", container=name)
                return f"; a container may still appear under '{name}'"

        try:
            await self._bounded("cleanup", engine.remove_container, name, force=True)
            logger.info("Removed partially created container", container=name)
        except docker.errors.NotFound:
            pass
        except Exception as e:
            logger.error("Could not remove partially created container", container=name, error=str(e))
            return f"; container '{name}' could not be removed: {e}"
        return ""

    @staticmethod
    def _pull_blocking(engine: Any, repository: str, tag: str):
        for event in engine.pull(repository, tag=tag, stream=True, decode=True):
            if isinstance(event, dict) and event.get("error"):
                raise BackendError(f"Image pull failed: {event['error']}")

    async def apply(self, target: UpdateTarget, version: str) -> None:
        engine = await self.locator.get()
        if engine is None:
            raise BackendError("Docker engine is not reachable")

        name = target.container_name
        image_ref = f"{target.image}:{version}"

        logger.info("Pulling image", image=image_ref)
        await self._bounded("pull", self._pull_blocking, engine, target.image, version)

        old_inspect = await self._bounded("inspect", engine.inspect_container, name)
        create_config = build_recreate_config(old_inspect, image_ref)

        try:
            await self._bounded("stop", engine.stop, name, timeout=self.stop_timeout)
        except docker.errors.APIError as e:
            # might already be stopped
            logger.warning("Could not stop container", container=name, error=str(e))

        backup_name = f"{name}-old-{int(time.time() * 1000)}"
        await self._bounded("rename", engine.rename, name, backup_name)
        logger.info("Renamed container to backup", container=name, backup=backup_name)

        try:
            created = await self._bounded("create", engine.create_container_from_config, create_config, name)
            await self._bounded("start", engine.start, created["Id"])
        except Exception as e:
            logger.error("Container recreate failed", container=name, backup=backup_name, error=str(e))
            leftover = await self._discard_partial(engine, name, e)
            raise BackendError(
                f"{e}; update left backup instance '{backup_name}'{leftover}",
                backup_name=backup_name
            ) from e

        try:
            await self._bounded("cleanup", engine.remove_container, backup_name, force=True)
        except Exception as e:
            logger.warning("Could not remove backup container", backup=backup_name, error=str(e))


# ─── Azure Container Apps ───────────────────────────────────────────


def is_azure_environment() -> bool:
    """Running on Azure Container Apps with a managed identity."""
    return bool(
        settings.identity_endpoint
        and settings.identity_header
        and settings.azure_subscription_id
        and settings.azure_resource_group
    )


@asynccontextmanager
async def _http_client(client: Optional[httpx.AsyncClient], timeout: float) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as own_client:
        yield own_client


class ManagedIdentityTokenProvider:
    """Bearer tokens from the managed identity endpoint, cached per resource."""

    CACHE_SECONDS = 50 * 60

    def __init__(
        self,
        endpoint: Optional[str] = None,
        header: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.endpoint = endpoint or settings.identity_endpoint
        self.header = header or settings.identity_header
        self.client = client
        self.clock = clock
        self._tokens: Dict[str, tuple[str, float]] = {}

    async def get_token(self, resource: str = MANAGEMENT_RESOURCE) -> str:
        cached = self._tokens.get(resource)
        if cached and cached[1] > self.clock():
            return cached[0]

        if not self.endpoint or not self.header:
            raise BackendError("Managed identity not configured on this container.")

        token = await self._request_token(resource)
        self._tokens[resource] = (token, self.clock() + self.CACHE_SECONDS)
        return token

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _request_token(self, resource: str) -> str:
        async with _http_client(self.client, settings.azure_timeout) as client:
            response = await client.get(
                self.endpoint,
                params={"api-version": IDENTITY_API_VERSION, "resource": resource},
                headers={"X-IDENTITY-HEADER": self.header}
            )
        if not response.is_success:
            raise BackendError(
                f"Failed to get managed identity token ({response.status_code}): {response.text}"
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise BackendError("Managed identity token response had no access_token")
        return token


class AzureContainerAppsBackend(UpdateBackend):
    """Swap the primary container image of a Container App via PATCH."""

    name = "azure"

    def __init__(
        self,
        token_provider: Optional[ManagedIdentityTokenProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
        availability_check: Callable[[], bool] = is_azure_environment
    ):
        self.token_provider = token_provider or ManagedIdentityTokenProvider()
        self.client = client
        self.availability_check = availability_check

    async def is_available(self) -> bool:
        return self.availability_check()

    def app_url(self, app_name: str) -> str:
        if not settings.azure_subscription_id or not settings.azure_resource_group:
            raise BackendError("AZURE_SUBSCRIPTION_ID and AZURE_RESOURCE_GROUP must be set.")
        return (
            f"{settings.azure_management_url.rstrip('/')}/subscriptions/{settings.azure_subscription_id}"
            f"/resourceGroups/{settings.azure_resource_group}"
            f"/providers/Microsoft.App/containerApps/{app_name}"
        )

    async def apply(self, target: UpdateTarget, version: str) -> None:
        if not target.azure_app_name:
            raise BackendError(f"No Azure container app mapping for service: {target.service}")

        image_ref = f"{target.image}:{version}"
        url = self.app_url(target.azure_app_name)
        params = {"api-version": settings.azure_container_apps_api_version}
        token = await self.token_provider.get_token()
        headers = {"Authorization": f"Bearer {token}"}

        async with _http_client(self.client, settings.azure_timeout) as client:
            current = await client.get(url, params=params, headers=headers)
            if not current.is_success:
                raise BackendError(
                    f"Failed to read container app config ({current.status_code}): {current.text}"
                )

            app_definition = current.json()
            template = (app_definition.get("properties") or {}).get("template") or {}
            containers = template.get("containers")
            if not containers:
                raise BackendError("No containers found in the container app template.")

            # Only the primary container's image changes
            containers[0]["image"] = image_ref
            logger.info("Patching container app image", app=target.azure_app_name, image=image_ref)

            patched = await client.patch(
                url,
                params=params,
                headers={**headers, "Content-Type": "application/json"},
                json={"properties": {"template": {"containers": containers}}}
            )
            if not patched.is_success:
                raise BackendError(f"Azure API error ({patched.status_code}): {patched.text}")


# Global docker locator shared by version resolution, inventory and updates
docker_locator = DockerEngineLocator()
