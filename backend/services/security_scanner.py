"""Pattern-based security scanning of diagram source.

All checks live in one ordered rule table evaluated by a single engine.
Every pattern must run in linear time: nested quantifiers, backreferences
and unbounded wildcards are refused when a rule is built, so scanning a
source of length n against r rules stays O(n * r).
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple

from config import DEBUG, SECURITY_BLOCK_SEVERITY
from errors import SecurityViolation
from models.diagram import DiagramType
from models.validation import Finding, FindingKind, Severity, ValidationOutcome
from services.metrics import SECURITY_FINDINGS_TOTAL

logger = logging.getLogger(__name__)

_NESTED_QUANTIFIER = re.compile(r"\([^()]*[*+][^()]*\)[*+{]")
_BACKREFERENCE = re.compile(r"\\[1-9]")
_UNBOUNDED_WILDCARD = re.compile(r"(?<!\\)\.[*+]")

_PLANTUML_FAMILY = frozenset({DiagramType.PLANTUML, DiagramType.C4PLANTUML})
_INCLUDE = r"!\s*include(?:_many|_once|sub)?\b\s*"


def is_backtracking_prone(pattern: str) -> bool:
    """Heuristic check for regex constructs that can backtrack super-linearly."""
    return bool(
        _NESTED_QUANTIFIER.search(pattern)
        or _BACKREFERENCE.search(pattern)
        or _UNBOUNDED_WILDCARD.search(pattern)
    )


@dataclass(frozen=True)
class SecurityRule:
    rule_id: str
    kind: FindingKind
    severity: Severity
    message: str
    pattern: str
    diagram_types: Optional[FrozenSet[DiagramType]] = None
    ignore_case: bool = True

    def __post_init__(self):
        if is_backtracking_prone(self.pattern):
            raise ValueError(f"rule '{self.rule_id}' uses a backtracking-prone pattern")
        flags = re.IGNORECASE if self.ignore_case else 0
        object.__setattr__(self, "_compiled", re.compile(self.pattern, flags))

    def applies_to(self, diagram_type: DiagramType) -> bool:
        return self.diagram_types is None or diagram_type in self.diagram_types

    def search(self, text: str):
        return self._compiled.search(text)


DEFAULT_RULES: Tuple[SecurityRule, ...] = (
    # Remote inclusion
    SecurityRule(
        "remote-include-url", FindingKind.REMOTE_INCLUSION, Severity.HIGH,
        "Remote inclusion directives are not allowed",
        r"!\s*includeurl\b",
    ),
    SecurityRule(
        "remote-include", FindingKind.REMOTE_INCLUSION, Severity.HIGH,
        "Including content from a URL is not allowed",
        _INCLUDE + r"(?:https?|ftp|file):",
    ),
    # Filesystem inclusion
    SecurityRule(
        "filesystem-include", FindingKind.FILESYSTEM_INCLUSION, Severity.HIGH,
        "Including files from the rendering host is not allowed",
        _INCLUDE + r"(?![\s<]|https?:|ftp:|file:)\S",
    ),
    SecurityRule(
        "filesystem-import", FindingKind.FILESYSTEM_INCLUSION, Severity.HIGH,
        "Importing archives from the rendering host is not allowed",
        r"!\s*import\b",
    ),
    SecurityRule(
        "file-url", FindingKind.FILESYSTEM_INCLUSION, Severity.HIGH,
        "file: URLs are not allowed",
        r"\bfile:/",
    ),
    SecurityRule(
        "sensitive-path", FindingKind.FILESYSTEM_INCLUSION, Severity.HIGH,
        "Reference to a sensitive system path",
        r"/etc/(?:passwd|shadow|hosts)\b|/proc/self\b|[a-z]:\\windows\\system32",
    ),
    SecurityRule(
        "path-traversal", FindingKind.FILESYSTEM_INCLUSION, Severity.MEDIUM,
        "Relative path traversal sequence",
        r"\.\.[/\\]",
    ),
    # Script and markup injection
    SecurityRule(
        "script-tag", FindingKind.SCRIPT_INJECTION, Severity.HIGH,
        "Embedded script elements are not allowed",
        r"<\s*script\b",
    ),
    SecurityRule(
        "script-url", FindingKind.SCRIPT_INJECTION, Severity.HIGH,
        "Script URLs are not allowed",
        r"\b(?:javascript|vbscript)\s*:",
    ),
    SecurityRule(
        "event-handler", FindingKind.SCRIPT_INJECTION, Severity.HIGH,
        "Inline event handler attributes are not allowed",
        r"\bon(?:load|error|click|mouseover|focus|begin)\s*=",
    ),
    SecurityRule(
        "embedded-frame", FindingKind.SCRIPT_INJECTION, Severity.HIGH,
        "Embedded frames and objects are not allowed",
        r"<\s*(?:iframe|object|embed|foreignobject)\b",
    ),
    SecurityRule(
        "xml-entity", FindingKind.SCRIPT_INJECTION, Severity.HIGH,
        "XML entity declarations are not allowed",
        r"<!\s*entity\b",
    ),
    # Engine-specific directives
    SecurityRule(
        "plantuml-builtin-io", FindingKind.ENGINE_DIRECTIVE, Severity.HIGH,
        "PlantUML built-ins that read the host environment are not allowed",
        r"%\s*(?:getenv|load_json|file_exists|dirpath)\b",
        diagram_types=_PLANTUML_FAMILY,
    ),
    SecurityRule(
        "java-runtime", FindingKind.ENGINE_DIRECTIVE, Severity.HIGH,
        "References to the engine's Java runtime are not allowed",
        r"\bjava\.lang\b|\bruntime\s*\.\s*getruntime\b|\bprocessbuilder\b|\bsystem\s*\.\s*exit\b",
    ),
    SecurityRule(
        "mermaid-security-level", FindingKind.ENGINE_DIRECTIVE, Severity.HIGH,
        "Overriding the Mermaid security level is not allowed",
        r"\bsecuritylevel\b",
        diagram_types=frozenset({DiagramType.MERMAID}),
    ),
    SecurityRule(
        "mermaid-click-callback", FindingKind.ENGINE_DIRECTIVE, Severity.MEDIUM,
        "Mermaid click callbacks are ignored by the renderer",
        r"\bclick\s+\w+\s+call\b",
        diagram_types=frozenset({DiagramType.MERMAID}),
    ),
    SecurityRule(
        "graphviz-image-file", FindingKind.ENGINE_DIRECTIVE, Severity.HIGH,
        "Graphviz image attributes load files from the rendering host",
        r"\b(?:image|imagepath|shapefile)\s*=",
        diagram_types=frozenset({DiagramType.GRAPHVIZ}),
    ),
    SecurityRule(
        "shell-substitution", FindingKind.SUSPICIOUS_CONTENT, Severity.MEDIUM,
        "Shell command substitution syntax",
        r"\$\([^)\n]{0,200}\)|;\s*(?:rm|curl|wget)\s",
    ),
    # Advisory findings
    SecurityRule(
        "external-url", FindingKind.SUSPICIOUS_CONTENT, Severity.LOW,
        "External URL reference",
        r"\b(?:https?|ftp)://",
    ),
    SecurityRule(
        "escaped-bytes", FindingKind.SUSPICIOUS_CONTENT, Severity.LOW,
        "Escaped byte or unicode sequences",
        r"\\x[0-9a-f]{2}|\\u[0-9a-f]{4}|%[0-9a-f]{2}",
    ),
    SecurityRule(
        "credential-words", FindingKind.SUSPICIOUS_CONTENT, Severity.LOW,
        "Source mentions credentials",
        r"\b(?:password|secret|api[_-]?key|private[_-]?key)\b",
    ),
    SecurityRule(
        "sql-keywords", FindingKind.SUSPICIOUS_CONTENT, Severity.LOW,
        "SQL statement fragments",
        r"\bunion\s+select\b|\bdrop\s+table\b",
    ),
)


def normalise_for_scan(source: str) -> str:
    """Fold compatibility characters and drop invisible format characters.

    Defeats full-width lookalikes and zero-width characters spliced into
    directive keywords. Line endings become ``\\n`` and every other
    whitespace character except tab becomes a plain space, so vertical
    tabs, form feeds and Unicode separators cannot hide a directive from
    the rules. Remaining control characters are kept so the structural
    checks still see them.
    """
    text = unicodedata.normalize("NFKC", source)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return "".join(
        " " if ch.isspace() and ch not in "\n\t" else ch
        for ch in text
        if unicodedata.category(ch) != "Cf"
    )


def _excerpt(text: str, start: int, end: int, limit: int = 40) -> str:
    return text[start:min(end, start + limit)]


class SecurityScanner:
    def __init__(
        self,
        rules: Iterable[SecurityRule] = DEFAULT_RULES,
        block_severity: str = SECURITY_BLOCK_SEVERITY,
        max_nesting: int = 50,
        max_line_length: int = 1000,
        max_diagram_blocks: int = 10,
        debug: bool = DEBUG,
    ):
        self.rules = tuple(rules)
        self.block_severity = Severity(block_severity)
        self.max_nesting = max_nesting
        self.max_line_length = max_line_length
        self.max_diagram_blocks = max_diagram_blocks
        self.debug = debug

    def scan(self, source: str, diagram_type: DiagramType) -> ValidationOutcome:
        """Scan ``source`` and return its findings without raising."""
        text = normalise_for_scan(source)
        findings: List[Finding] = []

        for rule in self.rules:
            if not rule.applies_to(diagram_type):
                continue
            match = rule.search(text)
            if match:
                findings.append(Finding(
                    rule=rule.rule_id,
                    kind=rule.kind,
                    severity=rule.severity,
                    message=rule.message,
                    position=match.start(),
                    excerpt=_excerpt(text, match.start(), match.end()),
                ))

        findings.extend(self._structural_findings(text, diagram_type))

        for finding in findings:
            SECURITY_FINDINGS_TOTAL.labels(rule=finding.rule, severity=finding.severity.value).inc()

        blocked = any(f.severity.rank >= self.block_severity.rank for f in findings)
        return ValidationOutcome(
            valid=not blocked,
            findings=tuple(findings),
            block_severity=self.block_severity,
        )

    def check(self, source: str, diagram_type: DiagramType, client_identity: Optional[str] = None) -> ValidationOutcome:
        """Scan ``source`` and raise SecurityViolation if any blocking rule fired."""
        outcome = self.scan(source, diagram_type)
        if outcome.valid:
            if outcome.warnings:
                logger.info(
                    f"Security scan passed with {len(outcome.warnings)} warning(s) for "
                    f"{diagram_type.value}: {', '.join(f.rule for f in outcome.warnings)}"
                )
            return outcome

        first = outcome.blocking[0]
        logger.warning(
            f"SECURITY: rejected {diagram_type.value} source "
            f"(rule={first.rule}, severity={first.severity.value}, client={client_identity or 'unknown'}, "
            f"length={len(source)}, blocking_rules={','.join(f.rule for f in outcome.blocking)})"
        )
        details = {"severity": first.severity.value, "kind": first.kind.value}
        if self.debug:
            details["excerpt"] = first.excerpt
            details["position"] = first.position
        raise SecurityViolation(
            first.rule,
            f"Diagram source rejected by security policy: {first.message}",
            details,
        )

    def _structural_findings(self, text: str, diagram_type: DiagramType) -> List[Finding]:
        findings: List[Finding] = []

        nul = text.find("\x00")
        if nul != -1:
            findings.append(Finding(
                rule="nul-character",
                kind=FindingKind.STRUCTURE,
                severity=Severity.HIGH,
                message="NUL characters are not allowed in diagram source",
                position=nul,
            ))

        if text.count("{") > self.max_nesting:
            findings.append(Finding(
                rule="excessive-nesting",
                kind=FindingKind.STRUCTURE,
                severity=Severity.MEDIUM,
                message=f"More than {self.max_nesting} nested blocks",
                position=text.find("{"),
            ))

        offset = 0
        for line in text.split("\n"):
            if len(line) > self.max_line_length:
                findings.append(Finding(
                    rule="long-line",
                    kind=FindingKind.STRUCTURE,
                    severity=Severity.LOW,
                    message=f"Line longer than {self.max_line_length} characters",
                    position=offset,
                ))
                break
            offset += len(line) + 1

        if diagram_type in _PLANTUML_FAMILY and text.lower().count("@start") >= self.max_diagram_blocks:
            findings.append(Finding(
                rule="excessive-diagram-blocks",
                kind=FindingKind.STRUCTURE,
                severity=Severity.MEDIUM,
                message=f"{self.max_diagram_blocks} or more diagram blocks in one source",
                position=text.lower().find("@start"),
            ))

        return findings


_WRAPPER_LINE = re.compile(r"^[ \t]*@(?:start|end)uml\b[^\n]*$", re.IGNORECASE | re.MULTILINE)


def sanitize(source: str, diagram_type: DiagramType) -> str:
    """Prepare accepted source for the rendering engine.

    Strips invisible characters, normalises line endings and, for the
    PlantUML family, the ``@startuml``/``@enduml`` wrapper the engine adds
    itself.
    """
    text = normalise_for_scan(source)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    if diagram_type in _PLANTUML_FAMILY:
        text = _WRAPPER_LINE.sub("", text)
    return text.strip()
