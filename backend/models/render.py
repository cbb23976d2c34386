import base64
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from errors import (
    ClientInputError,
    DiagramServiceError,
    UpstreamInvalidOutput,
    UpstreamTimeout,
    UpstreamUnavailable,
)


class RenderFailureCause(str, Enum):
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED_SOURCE = "upstream_rejected_source"
    UPSTREAM_INVALID_OUTPUT = "upstream_invalid_output"


class RenderFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    cause: RenderFailureCause
    message: str
    upstream_status: Optional[int] = None
    retry_after: Optional[int] = None

    def to_error(self) -> DiagramServiceError:
        details = {"cause": self.cause.value}
        if self.cause == RenderFailureCause.UPSTREAM_TIMEOUT:
            return UpstreamTimeout(self.message, details)
        if self.cause == RenderFailureCause.UPSTREAM_REJECTED_SOURCE:
            return ClientInputError(self.message, details)
        if self.cause == RenderFailureCause.UPSTREAM_INVALID_OUTPUT:
            return UpstreamInvalidOutput(self.message, details)
        return UpstreamUnavailable(self.message, details, retry_after=self.retry_after)


class RenderResult(BaseModel):
    """Outcome of one call to the rendering engine: a payload or a failure."""

    model_config = ConfigDict(frozen=True)

    payload: Optional[bytes] = None
    media_type: Optional[str] = None
    latency_ms: float = 0.0
    failure: Optional[RenderFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, payload: bytes, media_type: str, latency_ms: float) -> "RenderResult":
        return cls(payload=payload, media_type=media_type, latency_ms=latency_ms)

    @classmethod
    def failed(cls, failure: RenderFailure, latency_ms: float) -> "RenderResult":
        return cls(failure=failure, latency_ms=latency_ms)

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise self.failure.to_error()


class GenerationResult(BaseModel):
    """Validated artifact handed back to the caller."""

    model_config = ConfigDict(frozen=True)

    payload: bytes
    media_type: str
    diagram_type: str
    output_format: str
    latency_ms: float
    warning_count: int = 0
    cache_bypassed: bool = False


class BatchItemResult(BaseModel):
    """One entry of a batch response; either an artifact or an error body."""

    index: int
    success: bool
    diagram_type: Optional[str] = Field(default=None, serialization_alias="diagramType")
    output_format: Optional[str] = Field(default=None, serialization_alias="format")
    media_type: Optional[str] = Field(default=None, serialization_alias="mimeType")
    size: Optional[int] = None
    data: Optional[str] = None
    render_time_ms: Optional[int] = Field(default=None, serialization_alias="renderTimeMs")
    warnings: int = 0
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def rendered(cls, index: int, result: GenerationResult) -> "BatchItemResult":
        return cls(
            index=index,
            success=True,
            diagram_type=result.diagram_type,
            output_format=result.output_format,
            media_type=result.media_type,
            size=len(result.payload),
            data=base64.b64encode(result.payload).decode("ascii"),
            render_time_ms=round(result.latency_ms),
            warnings=result.warning_count,
        )

    @classmethod
    def failed(cls, index: int, error: DiagramServiceError) -> "BatchItemResult":
        return cls(index=index, success=False, error=error.to_payload()["error"])


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int
    duration_ms: int = Field(serialization_alias="durationMs")


class BatchGenerateResponse(BaseModel):
    summary: BatchSummary
    results: List[BatchItemResult]
