import base64

import pytest
from fastapi.testclient import TestClient

from services.rate_controller import RateController

SEQUENCE = {"source": "A -> B: hello", "diagramType": "sequence"}


def test_batch_reports_each_item(client, engine):
    response = client.post(
        "/generate/batch",
        json={"requests": [
            SEQUENCE,
            {"source": "!include /etc/passwd", "diagramType": "plantuml"},
            {"source": "graph TD\n  A-->B", "diagramType": "flowchart", "format": "svg"},
        ]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["summary"]["total"] == 3
    assert data["summary"]["successful"] == 2
    assert data["summary"]["failed"] == 1
    assert data["summary"]["durationMs"] >= 0

    first, rejected, third = data["results"]
    assert first["index"] == 0 and first["success"] is True
    assert first["diagramType"] == "plantuml"
    assert first["format"] == "png"
    assert first["mimeType"] == "image/png"
    assert base64.b64decode(first["data"]).startswith(b"\x89PNG")
    assert first["size"] == len(base64.b64decode(first["data"]))

    assert rejected["success"] is False
    assert rejected["error"]["type"] == "SecurityViolation"
    assert "/etc/passwd" not in response.text

    assert third["diagramType"] == "mermaid"
    assert third["mimeType"] == "image/svg+xml"
    assert engine.render_calls == 2


def test_batch_item_errors_do_not_fail_the_batch(client, engine):
    response = client.post(
        "/generate/batch",
        json={"requests": [
            {"source": "A -> B", "diagramType": "no-such-notation"},
            {"source": "graph TD\n  A-->B", "diagramType": "mermaid", "format": "pdf"},
            SEQUENCE,
        ]},
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0]["error"]["type"] == "ClientInputError"
    assert results[1]["error"]["type"] == "UnsupportedFormat"
    assert results[1]["error"]["details"]["allowedFormats"] == ["svg", "png"]
    assert results[2]["success"] is True
    assert "no-such-notation" not in response.text
    assert engine.render_calls == 1


def test_batch_upstream_failure_carries_retry_hint(client, engine):
    engine.render_status = 503
    engine.render_headers_out = {"Retry-After": "7"}

    response = client.post("/generate/batch", json={"requests": [SEQUENCE, SEQUENCE]})

    assert response.status_code == 200
    for item in response.json()["results"]:
        assert item["success"] is False
        assert item["error"]["type"] == "UpstreamUnavailable"
        assert item["error"]["retryAfter"] == 7


@pytest.mark.parametrize("count", [0, 11])
def test_batch_size_is_bounded(client, engine, count):
    response = client.post("/generate/batch", json={"requests": [SEQUENCE] * count})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["type"] == "ClientInputError"
    assert error["details"]["fields"] == ["requests"]
    assert engine.render_calls == 0


def test_every_batch_item_counts_against_the_quota(make_app, engine):
    client = TestClient(make_app(rate_controller=RateController(limit=3, window_seconds=60, delay_ms=0)))

    response = client.post("/generate/batch", json={"requests": [SEQUENCE] * 5})

    assert response.status_code == 200
    results = response.json()["results"]
    assert [item["success"] for item in results] == [True, True, True, False, False]
    assert results[3]["error"]["type"] == "RateLimited"
    assert results[3]["error"]["retryAfter"] > 0
    assert engine.render_calls == 3

    assert client.post("/generate", json=SEQUENCE).status_code == 429
    assert client.post("/generate/batch", json={"requests": [SEQUENCE]}).status_code == 429
