"""In-place container update orchestration across docker and Azure backends."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import structlog

from schemas.system import UpdateResult, UpdateTarget
from services.audit_service import CATEGORY_SYSTEM, audit_log
from services.cache_service import cache_service
from services.components import UPDATE_TARGETS
from services.container_backends import (
    AzureContainerAppsBackend,
    DockerBackend,
    UpdateBackend,
    select_backend,
)
from services.health_service import HEALTH_CACHE_KEY
from services.registry_client import RegistryClient, registry_client

logger = structlog.get_logger()

AuditSink = Callable[..., Awaitable[None]]


class UpdatePhase(str, Enum):
    """Where an update attempt currently is."""

    IDLE = "idle"
    RESOLVING_VERSION = "resolving_version"
    DOCKER_PATH = "docker_path"
    AZURE_PATH = "azure_path"
    COMPLETED = "completed"
    FAILED = "failed"


class UpdateError(Exception):
    """Base exception for update orchestration errors."""
    pass


class UnknownServiceError(UpdateError):
    """The service key is not one of the updatable components."""
    pass


class UpdatePreconditionError(UpdateError):
    """No backend reachable, or no pinned version to update to."""
    pass


class UpdateInProgressError(UpdateError):
    """Another update for the same service is still running."""
    pass


class UpdateFailedError(UpdateError):
    """A backend step failed; `result` describes the failed attempt."""

    def __init__(self, result: UpdateResult):
        super().__init__(result.message)
        self.result = result


class UpdateOrchestrator:
    """
    Resolve the latest clean version of a component and roll it out in place.

    Flow: idle -> resolving_version -> docker_path | azure_path -> completed | failed.
    The backend is chosen by probing the environment, never by the caller.
    Attempts for the same service are mutually exclusive; a second attempt
    while one is running is rejected rather than queued.
    """

    def __init__(
        self,
        registry: Optional[RegistryClient] = None,
        backends: Optional[Sequence[UpdateBackend]] = None,
        audit: Optional[AuditSink] = None,
        targets: Optional[Mapping[str, UpdateTarget]] = None,
        cache: Any = None
    ):
        self.registry = registry or registry_client
        self.backends = list(backends) if backends is not None else [DockerBackend(), AzureContainerAppsBackend()]
        self.audit = audit or audit_log
        self.targets = dict(targets if targets is not None else UPDATE_TARGETS)
        self.cache = cache if cache is not None else cache_service
        self._locks: Dict[str, asyncio.Lock] = {}
        self._phases: Dict[str, UpdatePhase] = {}

    def phase(self, service: str) -> UpdatePhase:
        return self._phases.get(service, UpdatePhase.IDLE)

    async def _audit(self, action: str, target: UpdateTarget, actor_id: Optional[str], detail: Dict[str, Any], outcome: str = "success"):
        try:
            await self.audit(
                action=action,
                category=CATEGORY_SYSTEM,
                actor_id=actor_id,
                resource=f"container:{target.service}",
                detail=detail,
                outcome=outcome,
            )
        except Exception as e:
            logger.error("Audit sink failed", action=action, service=target.service, error=str(e))

    async def _invalidate_health(self, service: str):
        try:
            await self.cache.delete(HEALTH_CACHE_KEY)
        except Exception as e:
            logger.warning("Could not invalidate health snapshot", service=service, error=str(e))

    async def apply_update(self, service: str, actor_id: Optional[str] = None) -> UpdateResult:
        """
        Update one service to its latest clean version.

        Raises:
            UnknownServiceError: service is not updatable
            UpdateInProgressError: an update for service is already running
            UpdatePreconditionError: no backend reachable or no resolvable version
            UpdateFailedError: a backend step failed
        """
        target = self.targets.get(service)
        if target is None:
            raise UnknownServiceError(f"Unknown service: {service}")

        lock = self._locks.setdefault(service, asyncio.Lock())
        if lock.locked():
            raise UpdateInProgressError(f"An update for {service} is already in progress.")

        async with lock:
            try:
                return await self._run(target, actor_id)
            except UpdateError:
                self._phases[service] = UpdatePhase.FAILED
                raise

    async def _run(self, target: UpdateTarget, actor_id: Optional[str]) -> UpdateResult:
        service = target.service

        backend = await select_backend(self.backends)
        if backend is None:
            logger.warning("No update backend available", service=service)
            raise UpdatePreconditionError(
                "Neither a Docker engine nor an Azure managed identity is available. Cannot apply updates."
            )

        self._phases[service] = UpdatePhase.RESOLVING_VERSION
        # Pinned version only; a floating "latest" would not be reproducible
        version = await self.registry.get_latest_version(target.image)
        if not version:
            message = "Could not determine latest version from the image registry."
            await self._audit(
                "system.update.failed", target, actor_id,
                {"service": service, "method": backend.name, "error": message},
                outcome="failure",
            )
            raise UpdatePreconditionError(message)

        image_ref = f"{target.image}:{version}"
        await self._audit(
            "system.update.started", target, actor_id,
            {"service": service, "image": image_ref, "method": backend.name},
        )
        logger.info("Applying update", service=service, image=image_ref, method=backend.name)

        self._phases[service] = UpdatePhase.DOCKER_PATH if backend.name == "docker" else UpdatePhase.AZURE_PATH
        try:
            await backend.apply(target, version)
        except Exception as e:
            error = str(e) or "Update failed"
            backup_name = getattr(e, "backup_name", None)
            logger.error("Update failed", service=service, image=image_ref, method=backend.name, error=error)
            await self._audit(
                "system.update.failed", target, actor_id,
                {
                    "service": service,
                    "image": image_ref,
                    "method": backend.name,
                    "error": error,
                    "backup_instance": backup_name,
                },
                outcome="failure",
            )
            raise UpdateFailedError(UpdateResult(
                success=False,
                service=service,
                version=version,
                backend=backend.name,
                message=f"Failed to update {service}: {error}",
                error=error,
                backup_instance=backup_name,
            )) from e

        await self._audit(
            "system.update.completed", target, actor_id,
            {"service": service, "image": image_ref, "version": version, "method": backend.name},
        )
        self._phases[service] = UpdatePhase.COMPLETED
        # next health check reports the new version
        await self._invalidate_health(service)
        logger.info("Update completed", service=service, version=version, method=backend.name)

        return UpdateResult(
            success=True,
            service=service,
            version=version,
            backend=backend.name,
            message=f"{service} updated to v{version}",
        )


# Global orchestrator instance
update_orchestrator = UpdateOrchestrator()
