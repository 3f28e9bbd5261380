"""Schemas for container inventory and update orchestration."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class UpdateTarget(BaseModel):
    """A logical component that can be updated in place."""

    model_config = ConfigDict(frozen=True)

    service: str
    image: str
    container_name: str
    azure_app_name: Optional[str] = None


class UpdateResult(BaseModel):
    """Outcome of one update attempt."""

    success: bool
    service: str
    version: Optional[str] = None
    backend: Optional[str] = None
    message: str
    error: Optional[str] = None
    backup_instance: Optional[str] = None


class UpdateInfo(BaseModel):
    """Latest published version per updatable component."""

    versions: Dict[str, Optional[str]]
    checked_at: datetime


class ContainerInfo(BaseModel):
    """Detailed runtime information about one component."""

    service: str
    container_name: str
    image: str
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    update_available: bool = False
    status: str  # 'running' or 'unknown'
    uptime: Optional[str] = None
    can_update: bool = False


class ContainerInventory(BaseModel):
    """Response schema for the container inventory view."""

    docker_available: bool
    azure_available: bool
    containers: List[ContainerInfo]
    checked_at: datetime
