"""
Shared test fixtures for the gateway test suite.

Provides: a fake rendering engine on httpx.MockTransport that counts calls,
dispatcher/aggregator fixtures wired to it, and an app factory for API tests.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from services.format_negotiator import DEFAULT_FORMAT_POLICY
from services.health_aggregator import RENDER_ENGINE, HealthAggregator, RenderEngineProbe
from services.rate_controller import RateController
from services.render_dispatcher import RenderDispatcher
from services.security_scanner import SecurityScanner

ENGINE_URL = "http://render-engine.test"

ARTIFACTS = {
    "svg": b'<?xml version="1.0"?><svg xmlns="http://www.w3.org/2000/svg"></svg>',
    "png": b"\x89PNG\r\n\x1a\n" + b"\x00" * 32,
    "pdf": b"%PDF-1.7\n%fake\n",
    "jpeg": b"\xff\xd8\xff\xe0" + b"\x00" * 32,
}


class PooledTransport(httpx.AsyncBaseTransport):
    """Holds one of `size` connections for the whole exchange, like a real connection pool."""

    def __init__(self, inner: httpx.AsyncBaseTransport, size: int):
        self.inner = inner
        self._connections = asyncio.Semaphore(size)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        async with self._connections:
            return await self.inner.handle_async_request(request)


class FakeRenderEngine:
    """Stands in for the rendering engine and records what it was asked to do."""

    def __init__(self):
        self.render_calls = 0
        self.health_calls = 0
        self.render_bodies = []
        self.render_headers = []
        self.render_status = 200
        self.render_headers_out = {}
        self.render_payload = None
        self.render_delay = 0.0
        self.health_status_code = 200
        self.health_body = {"status": "pass"}
        self.transport = httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/render":
            self.render_calls += 1
            body = json.loads(request.content)
            self.render_bodies.append(body)
            self.render_headers.append(dict(request.headers))
            if self.render_delay:
                await asyncio.sleep(self.render_delay)
            if self.render_status != 200:
                return httpx.Response(
                    self.render_status, json={"error": "engine error"}, headers=self.render_headers_out
                )
            payload = self.render_payload if self.render_payload is not None else ARTIFACTS[body["format"]]
            return httpx.Response(200, content=payload)

        if request.url.path == "/health":
            self.health_calls += 1
            return httpx.Response(self.health_status_code, json=self.health_body)

        return httpx.Response(404)

    def fail_health(self):
        self.health_status_code = 503
        self.health_body = {"status": "fail"}

    def client(self, pool_size=None) -> httpx.AsyncClient:
        transport = self.transport if pool_size is None else PooledTransport(self.transport, pool_size)
        return httpx.AsyncClient(base_url=ENGINE_URL, transport=transport)


@pytest.fixture
def engine():
    return FakeRenderEngine()


@pytest.fixture
def make_dispatcher(engine):
    def _make(pool_size=None, **kwargs):
        kwargs.setdefault("timeout", 2.0)
        kwargs.setdefault("max_concurrency", 4)
        return RenderDispatcher(client=engine.client(pool_size), base_url=ENGINE_URL, **kwargs)

    return _make


@pytest.fixture
def dispatcher(make_dispatcher):
    return make_dispatcher()


@pytest.fixture
def aggregator(engine):
    agg = HealthAggregator(failure_threshold=1, timeout=1.0)
    agg.register(RENDER_ENGINE, RenderEngineProbe(engine.client(), timeout=1.0), primary=True)
    return agg


@pytest.fixture
def make_app(dispatcher, aggregator):
    """Build an app around the fake engine; the scheduler is left off."""
    from server import create_app

    def _make(rate_controller=None, scanner=None, **kwargs):
        return create_app(
            rate_controller=rate_controller or RateController(limit=100, window_seconds=60, delay_ms=0),
            scanner=scanner or SecurityScanner(debug=False),
            policy=DEFAULT_FORMAT_POLICY,
            dispatcher=kwargs.pop("dispatcher", dispatcher),
            aggregator=kwargs.pop("aggregator", aggregator),
            run_scheduler=False,
            **kwargs,
        )

    return _make


@pytest.fixture
def client(make_app):
    return TestClient(make_app())
