"""Signature checks for artifacts returned by the rendering engine."""

import logging
from typing import Optional

from errors import UpstreamInvalidOutput
from models.diagram import OutputFormat

logger = logging.getLogger(__name__)

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
PDF_MAGIC = b"%PDF-"
JPEG_MAGIC = b"\xff\xd8\xff"
UTF8_BOM = b"\xef\xbb\xbf"

# An SVG document may open with its root element or with an XML declaration.
SVG_PREFIXES = (b"<svg", b"<?xml")


def _looks_like_svg(payload: bytes) -> bool:
    head = payload[:512]
    if head.startswith(UTF8_BOM):
        head = head[len(UTF8_BOM):]
    head = head.lstrip()
    return head[:5].lower().startswith(SVG_PREFIXES)


def signature_error(fmt: OutputFormat, payload: Optional[bytes]) -> Optional[str]:
    """Return why ``payload`` is not a plausible ``fmt`` artifact, or None if it is."""
    if not payload:
        return "empty payload"
    if fmt == OutputFormat.SVG:
        return None if _looks_like_svg(payload) else "missing SVG root element or XML declaration"
    if fmt == OutputFormat.PNG:
        return None if payload.startswith(PNG_MAGIC) else "missing PNG signature"
    if fmt == OutputFormat.PDF:
        return None if payload.startswith(PDF_MAGIC) else "missing PDF header"
    if fmt == OutputFormat.JPEG:
        return None if payload.startswith(JPEG_MAGIC) else "missing JPEG start-of-image marker"
    return f"no signature known for format '{fmt.value}'"


def validate_artifact(fmt: OutputFormat, payload: Optional[bytes]) -> bytes:
    """Accept ``payload`` for ``fmt`` or raise UpstreamInvalidOutput."""
    reason = signature_error(fmt, payload)
    if reason is not None:
        logger.error(
            f"Rendering engine returned an invalid {fmt.value} artifact: {reason} "
            f"({len(payload or b'')} bytes)"
        )
        raise UpstreamInvalidOutput(
            f"Rendering engine returned output that is not a valid {fmt.value.upper()} artifact",
            {"format": fmt.value},
        )
    return payload
