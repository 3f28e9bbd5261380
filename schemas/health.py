"""Health check related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, computed_field, model_validator

from services.versioning import is_update_available


class HealthState(str, Enum):
    """Status of a single backing service or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class ServiceKind(str, Enum):
    """Kind of backing service, selects the probe strategy."""

    CONTAINER = "container"
    DATABASE = "database"
    CACHE = "cache"


class ServiceStatus(BaseModel):
    """Schema for one snapshot of one backing service."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: HealthState
    latency_ms: Optional[int] = None
    message: str
    kind: ServiceKind
    version: Optional[str] = None
    latest_version: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _down_has_no_latency(cls, data):
        # A probe that could not complete has no round-trip time
        if isinstance(data, dict) and data.get("status") == HealthState.DOWN:
            data = {**data, "latency_ms": None}
        return data

    @computed_field
    @property
    def update_available(self) -> bool:
        return is_update_available(self.version, self.latest_version)


class HealthSnapshot(BaseModel):
    """Response schema for the aggregated health check."""

    model_config = ConfigDict(frozen=True)

    status: HealthState  # 'healthy' or 'degraded'
    services: List[ServiceStatus]
    checked_at: datetime
