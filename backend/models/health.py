from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class DependencyHealth(BaseModel):
    """Latest known state of one tracked dependency. Replaced, never mutated."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    primary: bool = False


class DependencyStatusResponse(BaseModel):
    name: str
    status: str
    last_check: Optional[str] = Field(default=None, serialization_alias="lastCheck")
    last_error: Optional[str] = Field(default=None, serialization_alias="lastError")
    primary: bool = False


class RenderStatsResponse(BaseModel):
    success: int
    failure: int
    last_latency_ms: Optional[float] = Field(default=None, serialization_alias="lastLatencyMs")


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    dependencies: List[DependencyStatusResponse]
    renders: Dict[str, RenderStatsResponse] = {}


class LivenessResponse(BaseModel):
    status: str
    service: str
    version: str
