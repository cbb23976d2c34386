from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class FindingKind(str, Enum):
    FILESYSTEM_INCLUSION = "filesystem_inclusion"
    REMOTE_INCLUSION = "remote_inclusion"
    SCRIPT_INJECTION = "script_injection"
    ENGINE_DIRECTIVE = "engine_directive"
    STRUCTURE = "structure"
    SUSPICIOUS_CONTENT = "suspicious_content"


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: str
    kind: FindingKind
    severity: Severity
    message: str
    position: int
    # Matched text; only ever surfaced to callers in debug mode.
    excerpt: Optional[str] = None


class ValidationOutcome(BaseModel):
    """Result of scanning one diagram source. Frozen once the scan completes."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    findings: Tuple[Finding, ...] = ()
    # Lowest severity that rejects the request.
    block_severity: Severity = Severity.HIGH

    @property
    def blocking(self) -> Tuple[Finding, ...]:
        return tuple(f for f in self.findings if f.severity.rank >= self.block_severity.rank)

    @property
    def warnings(self) -> Tuple[Finding, ...]:
        return tuple(f for f in self.findings if f.severity.rank < self.block_severity.rank)
