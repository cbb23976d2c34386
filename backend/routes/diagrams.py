import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Request, Response

from errors import DiagramServiceError, RateLimited
from models.diagram import (
    BatchGenerateBody,
    DiagramTypeFormats,
    FormatsResponse,
    GenerateBody,
    GenerationRequest,
    OutputFormat,
    ValidateResponse,
)
from models.render import BatchGenerateResponse, BatchItemResult, BatchSummary, GenerationResult
from services.format_negotiator import format_spec

logger = logging.getLogger(__name__)

diagrams_router = APIRouter(tags=["Diagrams"])

# How often an in-flight render checks whether the caller is still connected.
DISCONNECT_POLL_SECONDS = 0.25
# Non-standard status used for requests abandoned by the client.
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    pass


async def _await_unless_disconnected(task: asyncio.Task, request: Request):
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return task.result()
        if await request.is_disconnected():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise ClientDisconnected()


def _artifact_headers(result: GenerationResult) -> dict:
    target = format_spec(OutputFormat(result.output_format))
    return {
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
        "Content-Disposition": f'inline; filename="diagram.{target.extension}"',
        "X-Cache": "BYPASS" if result.cache_bypassed else "MISS",
        "X-Render-Time-Ms": str(round(result.latency_ms)),
        "X-Diagram-Type": result.diagram_type,
        "X-Output-Format": result.output_format,
        "X-Validation-Warnings": str(result.warning_count),
    }


@diagrams_router.post("/generate")
async def generate_diagram(body: GenerateBody, request: Request):
    """Render a diagram and return the artifact bytes."""
    gen_request = GenerationRequest.from_body(body, getattr(request.state, "client_identity", None))
    pipeline = request.app.state.pipeline

    task = asyncio.create_task(pipeline.generate(gen_request))
    try:
        result = await _await_unless_disconnected(task, request)
    except ClientDisconnected:
        logger.info(
            f"Client {gen_request.client_identity or 'unknown'} disconnected, "
            f"abandoned {gen_request.diagram_type.value} render"
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    return Response(content=result.payload, media_type=result.media_type, headers=_artifact_headers(result))


@diagrams_router.post("/generate/batch", response_model=BatchGenerateResponse)
async def generate_batch(body: BatchGenerateBody, request: Request):
    """Render several diagrams in one call; each item succeeds or fails on its own.

    Items run in order through the same pipeline as ``/generate``. The first
    item is covered by the request's own rate-limit admission, every further
    item is charged against the caller's quota before it runs.
    """
    client_identity = getattr(request.state, "client_identity", None)
    task = asyncio.create_task(_run_batch(body, request.app.state, client_identity))
    try:
        return await _await_unless_disconnected(task, request)
    except ClientDisconnected:
        logger.info(f"Client {client_identity or 'unknown'} disconnected, abandoned batch of {len(body.requests)}")
        return Response(status_code=CLIENT_CLOSED_REQUEST)


async def _run_batch(body: BatchGenerateBody, state, client_identity: Optional[str]) -> BatchGenerateResponse:
    start = time.perf_counter()
    results = []
    for index, item in enumerate(body.requests):
        try:
            if index > 0:
                _charge_batch_item(state.rate_controller, client_identity)
            gen_request = GenerationRequest.from_body(item, client_identity)
            result = await state.pipeline.generate(gen_request)
        except DiagramServiceError as e:
            logger.info(f"Batch item {index} failed: {e.error_type}")
            results.append(BatchItemResult.failed(index, e))
            continue
        results.append(BatchItemResult.rendered(index, result))

    successful = sum(1 for r in results if r.success)
    duration_ms = round((time.perf_counter() - start) * 1000)
    logger.info(
        f"Batch of {len(results)} completed: {successful} succeeded, "
        f"{len(results) - successful} failed in {duration_ms}ms"
    )
    return BatchGenerateResponse(
        summary=BatchSummary(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            duration_ms=duration_ms,
        ),
        results=results,
    )


def _charge_batch_item(rate_controller, client_identity: Optional[str]) -> None:
    if client_identity is None:
        return
    decision = rate_controller.check(client_identity)
    if not decision.allowed:
        raise RateLimited(
            f"Rate limit exceeded, retry in {decision.retry_after} seconds.",
            retry_after=decision.retry_after,
        )


@diagrams_router.post("/validate", response_model=ValidateResponse)
async def validate_diagram(body: GenerateBody, request: Request):
    """Run the security scan and format negotiation without rendering."""
    gen_request = GenerationRequest.from_body(body, getattr(request.state, "client_identity", None))
    return request.app.state.pipeline.validate(gen_request)


@diagrams_router.get("/formats", response_model=FormatsResponse)
async def list_formats(request: Request):
    policy = request.app.state.pipeline.policy
    return FormatsResponse(
        diagram_types={
            t.value: DiagramTypeFormats(
                supported=[f.value for f in policy.supported_formats(t)],
                default=policy.default_format(t).value,
            )
            for t in policy.diagram_types()
        },
        aliases={alias: t.value for alias, t in policy.aliases.items()},
    )
