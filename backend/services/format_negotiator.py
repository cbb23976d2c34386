"""Format policy table and output-format negotiation.

The policy is plain data: adding a diagram type means adding a row, not a
branch. ``negotiate`` is a pure function of (diagram type, requested format,
policy) and never substitutes a format the caller did not ask for.
"""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional

from errors import UnsupportedFormat
from models.diagram import DIAGRAM_TYPE_ALIASES, DiagramType, OutputFormat

logger = logging.getLogger(__name__)

# Requested names outside this shape are never echoed back to the caller.
_ECHOABLE_FORMAT = re.compile(r"[a-z0-9]{1,16}")


@dataclass(frozen=True)
class FormatSpec:
    media_type: str
    extension: str
    max_bytes: int


FORMAT_SPECS: Mapping[OutputFormat, FormatSpec] = MappingProxyType({
    OutputFormat.SVG: FormatSpec("image/svg+xml", "svg", 5 * 1024 * 1024),
    OutputFormat.PNG: FormatSpec("image/png", "png", 10 * 1024 * 1024),
    OutputFormat.PDF: FormatSpec("application/pdf", "pdf", 20 * 1024 * 1024),
    OutputFormat.JPEG: FormatSpec("image/jpeg", "jpg", 8 * 1024 * 1024),
})

_VECTOR_AND_RASTER = frozenset({OutputFormat.SVG, OutputFormat.PNG, OutputFormat.PDF})
_SVG_PNG = frozenset({OutputFormat.SVG, OutputFormat.PNG})

DEFAULT_SUPPORTED_FORMATS: Dict[DiagramType, FrozenSet[OutputFormat]] = {
    DiagramType.PLANTUML: _VECTOR_AND_RASTER,
    DiagramType.C4PLANTUML: _VECTOR_AND_RASTER,
    DiagramType.MERMAID: _SVG_PNG,
    DiagramType.GRAPHVIZ: _VECTOR_AND_RASTER | {OutputFormat.JPEG},
    DiagramType.DITAA: _SVG_PNG,
    DiagramType.BLOCKDIAG: _VECTOR_AND_RASTER,
    DiagramType.SEQDIAG: _VECTOR_AND_RASTER,
    DiagramType.ACTDIAG: _VECTOR_AND_RASTER,
    DiagramType.NWDIAG: _VECTOR_AND_RASTER,
    DiagramType.PACKETDIAG: _VECTOR_AND_RASTER,
    DiagramType.RACKDIAG: _VECTOR_AND_RASTER,
    DiagramType.BPMN: frozenset({OutputFormat.SVG}),
    DiagramType.BYTEFIELD: frozenset({OutputFormat.SVG}),
}

DEFAULT_FORMATS: Dict[DiagramType, OutputFormat] = {
    DiagramType.PLANTUML: OutputFormat.PNG,
    DiagramType.C4PLANTUML: OutputFormat.PNG,
    DiagramType.MERMAID: OutputFormat.SVG,
    DiagramType.GRAPHVIZ: OutputFormat.SVG,
    DiagramType.DITAA: OutputFormat.PNG,
    DiagramType.BLOCKDIAG: OutputFormat.PNG,
    DiagramType.SEQDIAG: OutputFormat.PNG,
    DiagramType.ACTDIAG: OutputFormat.PNG,
    DiagramType.NWDIAG: OutputFormat.PNG,
    DiagramType.PACKETDIAG: OutputFormat.PNG,
    DiagramType.RACKDIAG: OutputFormat.PNG,
    DiagramType.BPMN: OutputFormat.SVG,
    DiagramType.BYTEFIELD: OutputFormat.SVG,
}


@dataclass(frozen=True)
class FormatPolicy:
    """Read-only mapping of diagram type to supported formats and default."""

    supported: Mapping[DiagramType, FrozenSet[OutputFormat]]
    defaults: Mapping[DiagramType, OutputFormat]
    aliases: Mapping[str, DiagramType] = field(default_factory=lambda: dict(DIAGRAM_TYPE_ALIASES))

    def __post_init__(self):
        # Freeze the tables so the policy cannot drift after initialisation.
        object.__setattr__(self, "supported", MappingProxyType({k: frozenset(v) for k, v in self.supported.items()}))
        object.__setattr__(self, "defaults", MappingProxyType(dict(self.defaults)))
        object.__setattr__(self, "aliases", MappingProxyType(dict(self.aliases)))

        missing = set(self.supported) ^ set(self.defaults)
        if missing:
            names = ", ".join(sorted(t.value for t in missing))
            raise ValueError(f"supported formats and defaults disagree on diagram types: {names}")
        for diagram_type, default in self.defaults.items():
            if default not in self.supported[diagram_type]:
                raise ValueError(
                    f"default format '{default.value}' for '{diagram_type.value}' "
                    f"is not one of its supported formats"
                )
        for alias, target in self.aliases.items():
            if target not in self.supported:
                raise ValueError(f"alias '{alias}' points at unknown diagram type '{target}'")

    def supported_formats(self, diagram_type: DiagramType) -> List[OutputFormat]:
        """Supported formats in a stable order (the order of OutputFormat)."""
        formats = self.supported.get(diagram_type, frozenset())
        return [f for f in OutputFormat if f in formats]

    def default_format(self, diagram_type: DiagramType) -> OutputFormat:
        return self.defaults[diagram_type]

    def diagram_types(self) -> List[DiagramType]:
        return [t for t in DiagramType if t in self.supported]


DEFAULT_FORMAT_POLICY = FormatPolicy(
    supported=DEFAULT_SUPPORTED_FORMATS,
    defaults=DEFAULT_FORMATS,
)


def negotiate(
    diagram_type: DiagramType,
    requested: Optional[str],
    policy: FormatPolicy = DEFAULT_FORMAT_POLICY,
) -> OutputFormat:
    """Resolve the output format for a diagram type.

    No requested format yields the type's default. A requested format is
    returned only when it is in the type's supported set; anything else
    raises UnsupportedFormat listing the allowed alternatives.
    """
    normalised = str(requested).strip().lower() if requested is not None else ""
    shown = normalised if _ECHOABLE_FORMAT.fullmatch(normalised) else "unrecognised"

    if diagram_type not in policy.supported:
        raise UnsupportedFormat(diagram_type.value, shown if normalised else "", [])

    if not normalised:
        return policy.default_format(diagram_type)

    allowed = policy.supported_formats(diagram_type)
    for fmt in allowed:
        if fmt.value == normalised:
            return fmt

    logger.info(f"Rejected format '{shown}' for {diagram_type.value}")
    raise UnsupportedFormat(diagram_type.value, shown, [f.value for f in allowed])


def format_spec(fmt: OutputFormat) -> FormatSpec:
    return FORMAT_SPECS[fmt]
