"""
Request pipeline: scan, negotiate, sanitize, render, validate.

Each stage either passes its output on or raises a DiagramServiceError; the
rendering engine is never called for a request that failed an earlier stage.
"""

import logging
from typing import Optional

from errors import ClientInputError, UnsupportedFormat, UpstreamInvalidOutput
from models.diagram import FindingResponse, GenerationRequest, ValidateResponse
from models.render import GenerationResult
from services.format_negotiator import DEFAULT_FORMAT_POLICY, FormatPolicy, negotiate
from services.render_dispatcher import RenderDispatcher
from services.response_validator import validate_artifact
from services.security_scanner import SecurityScanner, sanitize

logger = logging.getLogger(__name__)


class DiagramPipeline:
    def __init__(
        self,
        scanner: SecurityScanner,
        dispatcher: RenderDispatcher,
        policy: Optional[FormatPolicy] = None,
    ):
        self.scanner = scanner
        self.dispatcher = dispatcher
        self.policy = policy or DEFAULT_FORMAT_POLICY

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        diagram_type = request.diagram_type
        outcome = self.scanner.check(request.source, diagram_type, request.client_identity)
        fmt = negotiate(diagram_type, request.requested_format, self.policy)

        source = sanitize(request.source, diagram_type)
        if not source:
            raise ClientInputError("Diagram source is empty after normalisation")

        result = await self.dispatcher.render(source, diagram_type, fmt)
        if not result.ok:
            logger.warning(
                f"Render failed for {diagram_type.value}/{fmt.value}: "
                f"{result.failure.cause.value} after {result.latency_ms:.0f}ms"
            )
        result.raise_for_failure()

        try:
            payload = validate_artifact(fmt, result.payload)
        except UpstreamInvalidOutput:
            self.dispatcher.record_invalid_output(diagram_type)
            raise

        logger.info(
            f"Rendered {diagram_type.value} as {fmt.value}: {len(payload)} bytes in {result.latency_ms:.0f}ms"
        )
        return GenerationResult(
            payload=payload,
            media_type=result.media_type,
            diagram_type=diagram_type.value,
            output_format=fmt.value,
            latency_ms=result.latency_ms,
            warning_count=len(outcome.warnings),
            cache_bypassed=request.bypass_cache,
        )

    def validate(self, request: GenerationRequest) -> ValidateResponse:
        """Scan and negotiate without rendering."""
        outcome = self.scanner.scan(request.source, request.diagram_type)

        resolved_format = None
        format_error = None
        try:
            resolved_format = negotiate(request.diagram_type, request.requested_format, self.policy).value
        except UnsupportedFormat as e:
            format_error = e.message

        findings = [
            FindingResponse(
                rule=f.rule,
                kind=f.kind.value,
                severity=f.severity.value,
                message=f.message,
                position=f.position,
                excerpt=f.excerpt if self.scanner.debug else None,
            )
            for f in outcome.findings
        ]
        return ValidateResponse(
            valid=outcome.valid and format_error is None,
            diagram_type=request.diagram_type.value,
            resolved_format=resolved_format,
            findings=findings,
            format_error=format_error,
        )
