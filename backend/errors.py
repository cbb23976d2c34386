"""
Error taxonomy for the diagram gateway.

Every error the request pipeline can surface to a caller is a
``DiagramServiceError`` subclass carrying its wire ``error_type`` and the
HTTP status it maps to. Caller-fault errors are 4xx, upstream errors are
5xx/503 and may carry a retry hint.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DiagramServiceError(Exception):
    """Base exception for every error returned by the gateway."""

    error_type = "InternalError"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_payload(self) -> Dict[str, Any]:
        """Wire body: {"error": {type, message, timestamp, ...}}."""
        error: Dict[str, Any] = {
            "type": self.error_type,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details:
            error["details"] = self.details
        if self.retry_after is not None:
            error["retryAfter"] = self.retry_after
        return {"error": error}


class ClientInputError(DiagramServiceError):
    """Malformed request shape or source the rendering engine refused."""

    error_type = "ClientInputError"
    status_code = 400


class SecurityViolation(DiagramServiceError):
    """Raised when the security scanner rejects the diagram source."""

    error_type = "SecurityViolation"
    status_code = 400

    def __init__(self, rule_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.rule_id = rule_id
        details = dict(details or {})
        details["rule"] = rule_id
        super().__init__(message, details)


class UnsupportedFormat(DiagramServiceError):
    """Requested output format is not available for the diagram type."""

    error_type = "UnsupportedFormat"
    status_code = 400

    def __init__(self, diagram_type: str, requested: str, allowed: List[str]) -> None:
        self.diagram_type = diagram_type
        self.requested = requested
        self.allowed = list(allowed)
        super().__init__(
            f"Format '{requested}' is not supported for diagram type '{diagram_type}'. "
            f"Supported formats: {', '.join(self.allowed)}",
            {"diagramType": diagram_type, "allowedFormats": self.allowed},
        )


class RateLimited(DiagramServiceError):
    error_type = "RateLimited"
    status_code = 429


class UpstreamTimeout(DiagramServiceError):
    error_type = "UpstreamTimeout"
    status_code = 504


class UpstreamUnavailable(DiagramServiceError):
    error_type = "UpstreamUnavailable"
    status_code = 503


class UpstreamInvalidOutput(DiagramServiceError):
    error_type = "UpstreamInvalidOutput"
    status_code = 502


class InternalError(DiagramServiceError):
    error_type = "InternalError"
    status_code = 500
