from enum import Enum
from typing import Optional, Dict, List, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import MAX_BATCH_ITEMS, MAX_SOURCE_LENGTH
from errors import ClientInputError


class DiagramType(str, Enum):
    PLANTUML = "plantuml"
    C4PLANTUML = "c4plantuml"
    MERMAID = "mermaid"
    GRAPHVIZ = "graphviz"
    DITAA = "ditaa"
    BLOCKDIAG = "blockdiag"
    SEQDIAG = "seqdiag"
    ACTDIAG = "actdiag"
    NWDIAG = "nwdiag"
    PACKETDIAG = "packetdiag"
    RACKDIAG = "rackdiag"
    BPMN = "bpmn"
    BYTEFIELD = "bytefield"


class OutputFormat(str, Enum):
    SVG = "svg"
    PNG = "png"
    PDF = "pdf"
    JPEG = "jpeg"


# Friendly names accepted on the wire, resolved to a concrete notation.
DIAGRAM_TYPE_ALIASES: Dict[str, DiagramType] = {
    "sequence": DiagramType.PLANTUML,
    "uml": DiagramType.PLANTUML,
    "dot": DiagramType.GRAPHVIZ,
    "flowchart": DiagramType.MERMAID,
    "c4": DiagramType.C4PLANTUML,
}


def resolve_diagram_type(value: Any) -> DiagramType:
    """Map a wire value (notation name or alias, any case) to a DiagramType."""
    if isinstance(value, DiagramType):
        return value
    if not isinstance(value, str):
        raise ValueError("diagram type must be a string")
    key = value.strip().lower()
    if key in DIAGRAM_TYPE_ALIASES:
        return DIAGRAM_TYPE_ALIASES[key]
    try:
        return DiagramType(key)
    except ValueError:
        raise ValueError("unknown diagram type")


class GenerateBody(BaseModel):
    """Wire shape of ``POST /generate`` and ``POST /validate``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str
    diagram_type: str = Field(alias="diagramType")
    format: Optional[str] = None
    bypass_cache: bool = Field(default=False, alias="bypassCache")


class BatchGenerateBody(BaseModel):
    """Wire shape of ``POST /generate/batch``."""

    requests: List[GenerateBody] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)


# Model field -> name the caller used in the request body.
_WIRE_NAMES = {"diagram_type": "diagramType", "requested_format": "format", "bypass_cache": "bypassCache"}


def _wire_name(field: Any) -> str:
    return _WIRE_NAMES.get(str(field), str(field))


class GenerationRequest(BaseModel):
    """Immutable, fully validated generation request."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(min_length=1, max_length=MAX_SOURCE_LENGTH)
    diagram_type: DiagramType
    requested_format: Optional[str] = None
    client_identity: Optional[str] = None
    bypass_cache: bool = False

    @field_validator("source")
    @classmethod
    def _source_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("diagram source cannot be empty")
        return value

    @field_validator("diagram_type", mode="before")
    @classmethod
    def _resolve_type(cls, value: Any) -> DiagramType:
        return resolve_diagram_type(value)

    @field_validator("requested_format", mode="before")
    @classmethod
    def _normalise_format(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("format must be a string")
        value = value.strip().lower()
        return value or None

    @classmethod
    def from_body(cls, body: GenerateBody, client_identity: Optional[str] = None) -> "GenerationRequest":
        """Build a request from the wire body, raising ClientInputError on invalid values."""
        try:
            return cls(
                source=body.source,
                diagram_type=body.diagram_type,
                requested_format=body.format,
                client_identity=client_identity,
                bypass_cache=body.bypass_cache,
            )
        except ValidationError as e:
            errors = [err for err in e.errors() if err.get("loc")]
            fields = sorted({_wire_name(err["loc"][0]) for err in errors})
            messages = {_wire_name(err["loc"][0]): err["msg"] for err in errors}
            if "source" in messages and len(body.source) > MAX_SOURCE_LENGTH:
                messages["source"] = f"diagram source exceeds {MAX_SOURCE_LENGTH} characters"
            raise ClientInputError(
                "Invalid request: " + "; ".join(f"{name}: {messages[name]}" for name in fields),
                {"fields": fields},
            )


class FindingResponse(BaseModel):
    rule: str
    kind: str
    severity: str
    message: str
    position: int
    excerpt: Optional[str] = None


class ValidateResponse(BaseModel):
    valid: bool
    diagram_type: str = Field(serialization_alias="diagramType")
    resolved_format: Optional[str] = Field(default=None, serialization_alias="resolvedFormat")
    findings: List[FindingResponse]
    format_error: Optional[str] = Field(default=None, serialization_alias="formatError")


class DiagramTypeFormats(BaseModel):
    supported: List[str]
    default: str


class FormatsResponse(BaseModel):
    diagram_types: Dict[str, DiagramTypeFormats] = Field(serialization_alias="diagramTypes")
    aliases: Dict[str, str]
