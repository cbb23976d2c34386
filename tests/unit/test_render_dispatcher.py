import asyncio

import httpx
import pytest

from errors import ClientInputError, UpstreamTimeout, UpstreamUnavailable
from models.diagram import DiagramType, OutputFormat
from models.render import RenderFailureCause
from services.render_dispatcher import RenderDispatcher


@pytest.mark.asyncio
async def test_successful_render(engine, dispatcher):
    result = await dispatcher.render("A -> B: hi", DiagramType.PLANTUML, OutputFormat.PNG)

    assert result.ok
    assert result.payload.startswith(b"\x89PNG")
    assert result.media_type == "image/png"
    assert engine.render_bodies == [{"source": "A -> B: hi", "type": "plantuml", "format": "png"}]
    assert engine.render_headers[0]["accept"] == "image/png"
    assert dispatcher.stats()["plantuml"].success == 1
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 422])
async def test_engine_rejecting_source_is_a_caller_fault(engine, dispatcher, status):
    engine.render_status = status
    result = await dispatcher.render("broken", DiagramType.MERMAID, OutputFormat.SVG)

    assert result.failure.cause == RenderFailureCause.UPSTREAM_REJECTED_SOURCE
    assert result.failure.upstream_status == status
    with pytest.raises(ClientInputError):
        result.raise_for_failure()


@pytest.mark.asyncio
async def test_engine_unavailable_carries_retry_hint(engine, dispatcher):
    engine.render_status = 503
    engine.render_headers_out = {"Retry-After": "12"}
    result = await dispatcher.render("graph TD\nA-->B", DiagramType.MERMAID, OutputFormat.SVG)

    assert result.failure.cause == RenderFailureCause.UPSTREAM_UNAVAILABLE
    with pytest.raises(UpstreamUnavailable) as exc_info:
        result.raise_for_failure()
    assert exc_info.value.retry_after == 12
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_failures_are_not_retried(engine, dispatcher):
    engine.render_status = 500
    await dispatcher.render("x", DiagramType.DITAA, OutputFormat.PNG)
    assert engine.render_calls == 1
    assert dispatcher.stats()["ditaa"].failure == 1


@pytest.mark.asyncio
async def test_deadline_produces_timeout(engine, make_dispatcher):
    engine.render_delay = 1.0
    dispatcher = make_dispatcher(timeout=0.05)

    result = await dispatcher.render("x", DiagramType.GRAPHVIZ, OutputFormat.SVG)

    assert result.failure.cause == RenderFailureCause.UPSTREAM_TIMEOUT
    with pytest.raises(UpstreamTimeout):
        result.raise_for_failure()
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_connection_error_is_unavailable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(base_url="http://render-engine.test", transport=httpx.MockTransport(refuse))
    dispatcher = RenderDispatcher(client=client)

    result = await dispatcher.render("x", DiagramType.PLANTUML, OutputFormat.SVG)
    assert result.failure.cause == RenderFailureCause.UPSTREAM_UNAVAILABLE
    assert result.failure.retry_after is not None


@pytest.mark.asyncio
async def test_oversized_artifact_is_invalid_output(engine, make_dispatcher):
    engine.render_payload = b"<svg>" + b"x" * 2048
    dispatcher = make_dispatcher(max_response_bytes=1024)

    result = await dispatcher.render("x", DiagramType.PLANTUML, OutputFormat.SVG)
    assert result.failure.cause == RenderFailureCause.UPSTREAM_INVALID_OUTPUT


@pytest.mark.asyncio
async def test_concurrency_is_bounded(engine, make_dispatcher):
    engine.render_delay = 0.05
    dispatcher = make_dispatcher(timeout=5.0, max_concurrency=2)
    peak = 0

    async def watch():
        nonlocal peak
        for _ in range(40):
            peak = max(peak, dispatcher.in_flight)
            await asyncio.sleep(0.005)

    results = await asyncio.gather(
        watch(),
        *(dispatcher.render("x", DiagramType.PLANTUML, OutputFormat.SVG) for _ in range(6)),
    )

    assert all(r.ok for r in results[1:])
    assert peak == 2
    assert engine.render_calls == 6


@pytest.mark.asyncio
async def test_cancellation_releases_the_slot(engine, make_dispatcher):
    engine.render_delay = 5.0
    dispatcher = make_dispatcher(timeout=10.0, max_concurrency=1)

    task = asyncio.create_task(dispatcher.render("x", DiagramType.PLANTUML, OutputFormat.SVG))
    await asyncio.sleep(0.05)
    assert dispatcher.in_flight == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert dispatcher.in_flight == 0
    engine.render_delay = 0.0
    result = await asyncio.wait_for(dispatcher.render("x", DiagramType.PLANTUML, OutputFormat.SVG), 1.0)
    assert result.ok
