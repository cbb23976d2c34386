from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from models.health import DependencyStatusResponse, RenderStatsResponse, StatusResponse

monitoring_router = APIRouter(tags=["Monitoring"])


@monitoring_router.get("/status", response_model=StatusResponse)
async def dependency_status(request: Request):
    """Composite health plus per-dependency detail, derived from the latest poll results."""
    aggregator = request.app.state.health_aggregator
    dependencies = aggregator.snapshot()
    renders = request.app.state.pipeline.dispatcher.stats()

    return StatusResponse(
        status=aggregator.composite().value,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=[
            DependencyStatusResponse(
                name=dep.name,
                status=dep.status.value,
                last_check=dep.last_check.isoformat() if dep.last_check else None,
                last_error=dep.last_error,
                primary=dep.primary,
            )
            for dep in dependencies
        ],
        renders={
            name: RenderStatsResponse(
                success=stats.success,
                failure=stats.failure,
                last_latency_ms=stats.last_latency_ms,
            )
            for name, stats in renders.items()
        },
    )


@monitoring_router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
