"""
FastAPI middleware for observability.

Correlation ID and request logging middleware.
"""

import logging
import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        method = request.method
        path = request.url.path

        try:
            response: Response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception(
                f"{method} {path} - {type(e).__name__} after {process_time * 1000:.1f}ms",
                extra={"method": method, "path": path, "error_type": type(e).__name__},
            )
            raise

        process_time = time.time() - start_time
        logger.info(
            f"{method} {path} - {response.status_code} ({process_time * 1000:.1f}ms)",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
                "correlation_id": getattr(request.state, "correlation_id", None),
            },
        )
        return response


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Propagates the caller's X-Correlation-ID, or assigns one."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(CORRELATION_HEADER, "")
        correlation_id = incoming if _VALID_CORRELATION_ID.match(incoming) else str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        response: Response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
