"""
Diagram Gateway - FastAPI Application Entry Point

Builds the request pipeline (rate controller, security scanner, format
negotiator, render dispatcher, response validator), registers routers and
middleware, and runs dependency health polling for the lifetime of the app.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from config import (
    CORS_ORIGINS,
    DEBUG,
    EXTRA_HEALTH_CHECKS,
    HEALTH_CHECK_TIMEOUT_SECONDS,
    LOG_LEVEL,
    SERVICE_NAME,
    SERVICE_VERSION,
    USER_AGENT,
)
from errors import ClientInputError, DiagramServiceError, InternalError
from middleware.observability import CorrelationMiddleware, RequestLoggingMiddleware
from middleware.rate_limit import RateLimitMiddleware
from models.health import LivenessResponse
from routes.diagrams import diagrams_router
from routes.monitoring import monitoring_router
from services.format_negotiator import DEFAULT_FORMAT_POLICY, FormatPolicy
from services.generation_pipeline import DiagramPipeline
from services.health_aggregator import RENDER_ENGINE, HealthAggregator, HttpHealthProbe, RenderEngineProbe
from services.rate_controller import RateController
from services.render_dispatcher import RenderDispatcher
from services.scheduler_service import start_scheduler, stop_scheduler
from services.security_scanner import SecurityScanner

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------

def error_response(exc: DiagramServiceError) -> JSONResponse:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


async def diagram_error_handler(request: Request, exc: DiagramServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_type}: {exc.message}")
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Field names only; submitted values are never echoed back.
    fields = sorted({
        ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0])
        for err in exc.errors() if err.get("loc")
    })
    return error_response(ClientInputError(
        f"Invalid request body: check {', '.join(fields) or 'the request body'}",
        {"fields": fields},
    ))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    details = {"exception": type(exc).__name__} if DEBUG else None
    return error_response(InternalError("An unexpected error occurred", details))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    rate_controller: Optional[RateController] = None,
    scanner: Optional[SecurityScanner] = None,
    policy: Optional[FormatPolicy] = None,
    dispatcher: Optional[RenderDispatcher] = None,
    aggregator: Optional[HealthAggregator] = None,
    health_client: Optional[httpx.AsyncClient] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build the gateway app.

    A caller-supplied ``health_client`` must use the rendering engine as its
    base URL; it carries the engine probe and any extra health checks.
    """
    rate_controller = rate_controller or RateController()
    dispatcher = dispatcher or RenderDispatcher()
    pipeline = DiagramPipeline(
        scanner=scanner or SecurityScanner(),
        dispatcher=dispatcher,
        policy=policy or DEFAULT_FORMAT_POLICY,
    )

    # Probes get their own connection pool; renders can hold every pooled
    # connection of the dispatcher's client for the full render timeout.
    owns_health_client = health_client is None
    health_client = health_client or httpx.AsyncClient(
        base_url=dispatcher.base_url,
        timeout=httpx.Timeout(HEALTH_CHECK_TIMEOUT_SECONDS),
        headers={"User-Agent": USER_AGENT},
    )
    if aggregator is None:
        aggregator = HealthAggregator()
        aggregator.register(RENDER_ENGINE, RenderEngineProbe(health_client), primary=True)
        for name, url in EXTRA_HEALTH_CHECKS.items():
            aggregator.register(name, HttpHealthProbe(health_client, url))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info(f"Starting {SERVICE_NAME} {SERVICE_VERSION} (render engine at {dispatcher.base_url})...")
        if run_scheduler:
            await start_scheduler(aggregator, rate_controller)
        logger.info(f"{SERVICE_NAME} is ready.")
        yield
        logger.info(f"Shutting down {SERVICE_NAME}...")
        if run_scheduler:
            await stop_scheduler()
        await dispatcher.aclose()
        if owns_health_client:
            await health_client.aclose()
        logger.info("HTTP clients closed.")

    app = FastAPI(
        title="Diagram Gateway API",
        description="Hardened request pipeline in front of a diagram rendering engine",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.rate_controller = rate_controller
    app.state.pipeline = pipeline
    app.state.health_aggregator = aggregator

    # -----------------------------------------------------------------------
    # Middleware (last added runs first)
    # -----------------------------------------------------------------------

    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[
            "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After",
            "X-Cache", "X-Render-Time-Ms", "X-Diagram-Type", "X-Output-Format",
            "X-Validation-Warnings", "X-Correlation-ID",
        ],
    )

    app.add_exception_handler(DiagramServiceError, diagram_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # -----------------------------------------------------------------------
    # Register routers
    # -----------------------------------------------------------------------

    app.include_router(diagrams_router)
    app.include_router(monitoring_router)

    # -----------------------------------------------------------------------
    # Liveness
    # -----------------------------------------------------------------------

    @app.get("/health", response_model=LivenessResponse)
    async def health_check():
        return LivenessResponse(status="healthy", service=SERVICE_NAME, version=SERVICE_VERSION)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Run with uvicorn
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001, log_level="info")
