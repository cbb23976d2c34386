import asyncio
import hashlib
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config import RATE_LIMITED_PATHS, TRUST_PROXY_HEADERS
from errors import RateLimited

logger = logging.getLogger(__name__)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def resolve_client_identity(request: Request, trust_proxy: bool = TRUST_PROXY_HEADERS) -> str:
    """Identify the caller without ever keeping a raw credential."""
    api_key = request.headers.get("X-API-Key", "").strip()
    if api_key:
        return f"key:{_digest(api_key)}"

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:].strip():
        return f"token:{_digest(auth_header[7:].strip())}"

    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"

    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, paths=RATE_LIMITED_PATHS, trust_proxy: bool = TRUST_PROXY_HEADERS):
        super().__init__(app)
        self.paths = tuple(paths)
        self.trust_proxy = trust_proxy

    async def dispatch(self, request: Request, call_next):
        # Only the render pipeline is rate limited; status and health stay reachable
        if request.url.path not in self.paths:
            return await call_next(request)

        client_id = resolve_client_identity(request, self.trust_proxy)
        request.state.client_identity = client_id

        decision = request.app.state.rate_controller.check(client_id)
        headers = decision.headers()

        if not decision.allowed:
            error = RateLimited(
                f"Rate limit exceeded. Maximum {decision.limit} requests per window, "
                f"retry in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
            )
            payload = error.to_payload()
            payload["error"].update(
                limit=decision.limit,
                remaining=decision.remaining,
                reset=int(headers["X-RateLimit-Reset"]),
            )
            return JSONResponse(status_code=error.status_code, headers=headers, content=payload)

        if decision.delay_seconds > 0:
            logger.debug(f"Slowing {client_id} by {decision.delay_seconds:.2f}s")
            await asyncio.sleep(decision.delay_seconds)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
