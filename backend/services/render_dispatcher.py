"""
Forwards validated requests to the rendering engine.

Every call runs under a semaphore sized to the connection pool and under a
hard deadline that also covers time spent waiting for a slot. Failures are
classified into typed causes; nothing is retried here, retry decisions are
left to the caller based on that classification.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from config import (
    MAX_CONCURRENT_RENDERS,
    MAX_RESPONSE_BYTES,
    RENDER_ENGINE_URL,
    RENDER_TIMEOUT_SECONDS,
    USER_AGENT,
)
from models.diagram import DiagramType, OutputFormat
from models.render import RenderFailure, RenderFailureCause, RenderResult
from services.format_negotiator import format_spec
from services.metrics import RENDER_LATENCY_SECONDS, RENDERS_IN_FLIGHT, RENDERS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5


@dataclass
class RenderStats:
    success: int = 0
    failure: int = 0
    last_latency_ms: Optional[float] = None


def _retry_after(response: httpx.Response) -> int:
    raw = response.headers.get("Retry-After", "")
    if raw.isdigit():
        return max(1, int(raw))
    return DEFAULT_RETRY_AFTER_SECONDS


def classify_status(response: httpx.Response) -> RenderFailure:
    """Map a non-200 engine response to a typed failure."""
    status = response.status_code
    if status in (400, 422):
        return RenderFailure(
            cause=RenderFailureCause.UPSTREAM_REJECTED_SOURCE,
            message="The rendering engine could not parse the diagram source",
            upstream_status=status,
        )
    if status == 413:
        return RenderFailure(
            cause=RenderFailureCause.UPSTREAM_REJECTED_SOURCE,
            message="The diagram source is too large for the rendering engine",
            upstream_status=status,
        )
    if status == 429 or status >= 500:
        return RenderFailure(
            cause=RenderFailureCause.UPSTREAM_UNAVAILABLE,
            message="The rendering engine is temporarily unavailable",
            upstream_status=status,
            retry_after=_retry_after(response),
        )
    return RenderFailure(
        cause=RenderFailureCause.UPSTREAM_UNAVAILABLE,
        message="The rendering engine is not available for this request",
        upstream_status=status,
        retry_after=DEFAULT_RETRY_AFTER_SECONDS,
    )


class RenderDispatcher:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = RENDER_ENGINE_URL,
        timeout: float = RENDER_TIMEOUT_SECONDS,
        max_concurrency: int = MAX_CONCURRENT_RENDERS,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=max_concurrency),
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )
        self.base_url = base_url
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.max_response_bytes = max_response_bytes
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight = 0
        self._stats: Dict[str, RenderStats] = {}
        self._stats_lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def render(self, source: str, diagram_type: DiagramType, fmt: OutputFormat) -> RenderResult:
        """Render ``source`` and return a RenderResult within the deadline.

        Raises asyncio.CancelledError if the caller cancels; the slot is
        released either way.
        """
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._render_with_slot(source, diagram_type, fmt, start),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            result = self._timeout_result(start)
        except asyncio.CancelledError:
            RENDERS_TOTAL.labels(diagram_type=diagram_type.value, outcome="cancelled").inc()
            logger.info(f"Render of {diagram_type.value} cancelled after {_elapsed_ms(start):.0f}ms")
            raise

        self._record(diagram_type, result)
        return result

    async def _render_with_slot(
        self, source: str, diagram_type: DiagramType, fmt: OutputFormat, start: float
    ) -> RenderResult:
        async with self._semaphore:
            self._in_flight += 1
            RENDERS_IN_FLIGHT.inc()
            try:
                return await self._call(source, diagram_type, fmt, start)
            finally:
                self._in_flight -= 1
                RENDERS_IN_FLIGHT.dec()

    async def _call(self, source: str, diagram_type: DiagramType, fmt: OutputFormat, start: float) -> RenderResult:
        target = format_spec(fmt)
        max_bytes = min(self.max_response_bytes, target.max_bytes)
        body = {"source": source, "type": diagram_type.value, "format": fmt.value}

        logger.info(f"Requesting {fmt.value} render of {diagram_type.value} ({len(source)} chars)")
        try:
            async with self.client.stream(
                "POST", "/render", json=body, headers={"Accept": target.media_type}
            ) as response:
                if response.status_code != 200:
                    failure = classify_status(response)
                    logger.warning(
                        f"Rendering engine returned {response.status_code} for {diagram_type.value}: "
                        f"{failure.cause.value}"
                    )
                    return RenderResult.failed(failure, _elapsed_ms(start))

                chunks = []
                size = 0
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > max_bytes:
                        logger.error(f"Render artifact exceeded {max_bytes} bytes for {fmt.value}")
                        return RenderResult.failed(
                            RenderFailure(
                                cause=RenderFailureCause.UPSTREAM_INVALID_OUTPUT,
                                message="Rendering engine returned an artifact larger than allowed",
                            ),
                            _elapsed_ms(start),
                        )
                    chunks.append(chunk)

                return RenderResult.success(b"".join(chunks), target.media_type, _elapsed_ms(start))

        except httpx.TimeoutException:
            return self._timeout_result(start)
        except httpx.HTTPError as e:
            logger.error(f"Rendering engine unreachable at {self.base_url}: {type(e).__name__}: {e}")
            return RenderResult.failed(
                RenderFailure(
                    cause=RenderFailureCause.UPSTREAM_UNAVAILABLE,
                    message="The rendering engine is not reachable",
                    retry_after=DEFAULT_RETRY_AFTER_SECONDS,
                ),
                _elapsed_ms(start),
            )

    def _timeout_result(self, start: float) -> RenderResult:
        logger.warning(f"Render timed out after {self.timeout}s")
        return RenderResult.failed(
            RenderFailure(
                cause=RenderFailureCause.UPSTREAM_TIMEOUT,
                message=f"Diagram rendering did not finish within {self.timeout:g} seconds",
            ),
            _elapsed_ms(start),
        )

    def _record(self, diagram_type: DiagramType, result: RenderResult) -> None:
        outcome = "success" if result.ok else result.failure.cause.value
        RENDERS_TOTAL.labels(diagram_type=diagram_type.value, outcome=outcome).inc()
        RENDER_LATENCY_SECONDS.labels(diagram_type=diagram_type.value).observe(result.latency_ms / 1000.0)
        with self._stats_lock:
            stats = self._stats.setdefault(diagram_type.value, RenderStats())
            if result.ok:
                stats.success += 1
            else:
                stats.failure += 1
            stats.last_latency_ms = round(result.latency_ms, 2)

    def record_invalid_output(self, diagram_type: DiagramType) -> None:
        """Reclassify the last success for ``diagram_type`` once its artifact failed validation."""
        with self._stats_lock:
            stats = self._stats.setdefault(diagram_type.value, RenderStats())
            if stats.success:
                stats.success -= 1
            stats.failure += 1
        RENDERS_TOTAL.labels(diagram_type=diagram_type.value, outcome="invalid_artifact").inc()

    def stats(self) -> Dict[str, RenderStats]:
        with self._stats_lock:
            return {name: RenderStats(s.success, s.failure, s.last_latency_ms) for name, s in self._stats.items()}

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
