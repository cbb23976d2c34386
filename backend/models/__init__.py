from models.diagram import (
    DiagramType, OutputFormat, DIAGRAM_TYPE_ALIASES, resolve_diagram_type,
    GenerateBody, BatchGenerateBody, GenerationRequest,
    FindingResponse, ValidateResponse, DiagramTypeFormats, FormatsResponse,
)
from models.validation import Severity, FindingKind, Finding, ValidationOutcome
from models.render import (
    RenderFailureCause, RenderFailure, RenderResult, GenerationResult,
    BatchItemResult, BatchSummary, BatchGenerateResponse,
)
from models.health import (
    HealthStatus, DependencyHealth,
    DependencyStatusResponse, RenderStatsResponse, StatusResponse, LivenessResponse,
)
