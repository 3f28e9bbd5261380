"""Pydantic schemas for API requests and responses."""

from .health import HealthSnapshot, HealthState, ServiceKind, ServiceStatus
from .system import (
    ContainerInfo,
    ContainerInventory,
    UpdateInfo,
    UpdateResult,
    UpdateTarget,
)

__all__ = [
    "HealthSnapshot",
    "HealthState",
    "ServiceKind",
    "ServiceStatus",
    "ContainerInfo",
    "ContainerInventory",
    "UpdateInfo",
    "UpdateResult",
    "UpdateTarget",
]
