import asyncio

import pytest
from fastapi.testclient import TestClient

from models.diagram import DiagramType, OutputFormat
from models.health import HealthStatus
from services.health_aggregator import RENDER_ENGINE, HealthAggregator, RenderEngineProbe


@pytest.fixture
def threshold_aggregator(engine):
    aggregator = HealthAggregator(failure_threshold=3, timeout=1.0)
    aggregator.register(RENDER_ENGINE, RenderEngineProbe(engine.client(), timeout=1.0), primary=True)
    return aggregator


def test_liveness_has_no_dependency_detail(client, engine):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "dependencies" not in data
    assert "x-ratelimit-limit" not in response.headers
    assert engine.health_calls == 0


def test_status_before_first_poll_is_unknown(client):
    data = client.get("/status").json()

    assert data["dependencies"] == [
        {"name": RENDER_ENGINE, "status": "unknown", "lastCheck": None, "lastError": None, "primary": True}
    ]
    assert data["status"] == "degraded"


def test_engine_failing_three_polls_turns_status_unhealthy(make_app, engine, threshold_aggregator):
    client = TestClient(make_app(aggregator=threshold_aggregator))

    asyncio.run(threshold_aggregator.poll_once())
    assert client.get("/status").json()["status"] == "healthy"

    engine.fail_health()
    observed = []
    for _ in range(3):
        asyncio.run(threshold_aggregator.poll_once())
        observed.append(client.get("/status").json()["status"])

    assert observed == ["degraded", "degraded", "unhealthy"]
    dependency = client.get("/status").json()["dependencies"][0]
    assert dependency["status"] == "unhealthy"
    assert dependency["lastCheck"] is not None
    assert "503" in dependency["lastError"]


def test_status_reports_render_stats(client):
    client.post("/generate", json={"source": "A -> B: hello", "diagramType": "sequence"})

    renders = client.get("/status").json()["renders"]
    assert renders["plantuml"]["success"] == 1
    assert renders["plantuml"]["failure"] == 0
    assert renders["plantuml"]["lastLatencyMs"] >= 0


def test_metrics_endpoint_exposes_prometheus_text(client):
    client.post("/generate", json={"source": "A -> B: hello", "diagramType": "sequence"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "diagram_renders_total" in response.text
    assert "rate_limit_decisions_total" in response.text


@pytest.mark.asyncio
async def test_engine_probe_is_not_starved_by_busy_renders(engine, make_dispatcher):
    from server import create_app

    engine.render_delay = 1.0
    dispatcher = make_dispatcher(pool_size=2, max_concurrency=2, timeout=3.0)
    app = create_app(dispatcher=dispatcher, health_client=engine.client(pool_size=2), run_scheduler=False)
    aggregator = app.state.health_aggregator

    renders = [
        asyncio.create_task(dispatcher.render("A -> B", DiagramType.PLANTUML, OutputFormat.PNG))
        for _ in range(2)
    ]
    await asyncio.sleep(0.05)
    assert dispatcher.in_flight == 2

    await asyncio.wait_for(aggregator.poll_once(), timeout=0.5)

    assert engine.health_calls == 1
    assert aggregator.get(RENDER_ENGINE).status == HealthStatus.HEALTHY
    assert aggregator.composite() == HealthStatus.HEALTHY
    results = await asyncio.gather(*renders)
    assert all(result.ok for result in results)
