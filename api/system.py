"""System endpoints: update availability, container inventory and in-place updates."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
import structlog

from schemas.system import ContainerInventory, UpdateInfo, UpdateResult
from services.container_info_service import ContainerInfoService, container_info_service
from services.health_service import UpdateInfoService, update_info_service
from services.update_orchestrator import (
    UnknownServiceError,
    UpdateFailedError,
    UpdateInProgressError,
    UpdateOrchestrator,
    UpdatePreconditionError,
    update_orchestrator,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/system", tags=["System"])


def get_update_info_service() -> UpdateInfoService:
    return update_info_service


def get_container_info_service() -> ContainerInfoService:
    return container_info_service


def get_update_orchestrator() -> UpdateOrchestrator:
    return update_orchestrator


@router.get("/update-info", response_model=UpdateInfo)
async def get_update_info(service: UpdateInfoService = Depends(get_update_info_service)):
    """Latest published version per updatable component (registry lookups are cached)."""
    return await service.get_update_info()


@router.get("/containers", response_model=ContainerInventory)
async def get_containers(service: ContainerInfoService = Depends(get_container_info_service)):
    """Detailed container info with engine metadata."""
    return await service.get_inventory()


@router.post("/updates/{service}", response_model=UpdateResult)
async def apply_update(
    service: str,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: UpdateOrchestrator = Depends(get_update_orchestrator)
):
    """
    Pull the latest pinned version of a component and recreate it.

    Callers are expected to be authorized already; the actor id is only
    recorded in the audit trail.
    """
    try:
        return await orchestrator.apply_update(service, actor_id=x_actor_id)
    except UnknownServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpdateInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UpdatePreconditionError as e:
        raise HTTPException(status_code=412, detail=str(e))
    except UpdateFailedError as e:
        raise HTTPException(status_code=500, detail=e.result.model_dump())
