"""
Dependency health tracking.

Each tracked dependency has a probe. ``poll_once`` runs every probe with its
own short timeout and replaces that dependency's DependencyHealth entry; it
is the only writer of the table. Readers take a snapshot and the composite
status is derived from that snapshot on every call, never cached.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import httpx

from config import HEALTH_CHECK_TIMEOUT_SECONDS, HEALTH_FAILURE_THRESHOLD
from models.health import DependencyHealth, HealthStatus
from services.metrics import DEPENDENCY_UP

logger = logging.getLogger(__name__)

RENDER_ENGINE = "render-engine"


class HealthCheckFailed(Exception):
    pass


class HealthProbe(ABC):
    @abstractmethod
    async def check(self) -> None:
        """Return normally when the dependency is healthy, raise otherwise."""


class RenderEngineProbe(HealthProbe):
    """``GET /health`` on the rendering engine; healthy on 200 with ``{"status": "pass"}``."""

    def __init__(self, client: httpx.AsyncClient, timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS):
        self.client = client
        self.timeout = timeout

    async def check(self) -> None:
        response = await self.client.get("/health", timeout=self.timeout)
        if response.status_code != 200:
            raise HealthCheckFailed(f"health endpoint returned HTTP {response.status_code}")
        try:
            status = response.json().get("status")
        except (ValueError, AttributeError):
            raise HealthCheckFailed("health endpoint returned a non-JSON body")
        if status != "pass":
            raise HealthCheckFailed(f"health endpoint reported status {status!r}")


class HttpHealthProbe(HealthProbe):
    """Plain HTTP probe: any 2xx is healthy."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def check(self) -> None:
        response = await self.client.get(self.url, timeout=self.timeout)
        if not response.is_success:
            raise HealthCheckFailed(f"{self.url} returned HTTP {response.status_code}")


def composite_status(dependencies: List[DependencyHealth]) -> HealthStatus:
    """HEALTHY only if all are healthy; UNHEALTHY if a primary dependency is; else DEGRADED."""
    if any(dep.primary and dep.status == HealthStatus.UNHEALTHY for dep in dependencies):
        return HealthStatus.UNHEALTHY
    if all(dep.status == HealthStatus.HEALTHY for dep in dependencies):
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


class HealthAggregator:
    def __init__(
        self,
        failure_threshold: int = HEALTH_FAILURE_THRESHOLD,
        timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.clock = clock
        self._probes: Dict[str, HealthProbe] = {}
        self._table: Dict[str, DependencyHealth] = {}
        self._poll_lock = asyncio.Lock()

    def register(self, name: str, probe: HealthProbe, primary: bool = False) -> None:
        if name in self._probes:
            raise ValueError(f"dependency '{name}' is already registered")
        self._probes[name] = probe
        self._table[name] = DependencyHealth(name=name, primary=primary)
        logger.info(f"Tracking health of {name}{' (primary)' if primary else ''}")

    def get(self, name: str) -> Optional[DependencyHealth]:
        return self._table.get(name)

    def snapshot(self) -> List[DependencyHealth]:
        return list(self._table.values())

    def composite(self) -> HealthStatus:
        return composite_status(self.snapshot())

    async def poll_once(self) -> List[DependencyHealth]:
        """Probe every dependency once and record the outcomes."""
        async with self._poll_lock:
            names = list(self._probes)
            outcomes = await asyncio.gather(*(self._probe(name) for name in names))
            for name, error in zip(names, outcomes):
                self._apply(name, error)
            return self.snapshot()

    async def _probe(self, name: str) -> Optional[str]:
        try:
            await asyncio.wait_for(self._probes[name].check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return f"probe timed out after {self.timeout:g}s"
        except HealthCheckFailed as e:
            return str(e)
        except httpx.HTTPError as e:
            return f"{type(e).__name__}: {e}"
        except Exception as e:
            logger.exception(f"Health probe for {name} raised unexpectedly")
            return f"{type(e).__name__}: {e}"
        return None

    def _apply(self, name: str, error: Optional[str]) -> None:
        previous = self._table[name]
        now = self.clock()

        if error is None:
            if previous.status != HealthStatus.HEALTHY:
                logger.info(f"Dependency {name} is healthy (was {previous.status.value})")
            updated = DependencyHealth(
                name=name,
                status=HealthStatus.HEALTHY,
                last_check=now,
                primary=previous.primary,
            )
        else:
            failures = previous.consecutive_failures + 1
            if failures >= self.failure_threshold:
                status = HealthStatus.UNHEALTHY
            elif previous.status == HealthStatus.UNKNOWN:
                status = HealthStatus.UNKNOWN
            else:
                status = HealthStatus.DEGRADED
            if status != previous.status:
                logger.warning(f"Dependency {name} is {status.value} after {failures} failed probe(s): {error}")
            updated = DependencyHealth(
                name=name,
                status=status,
                last_check=now,
                last_error=error,
                consecutive_failures=failures,
                primary=previous.primary,
            )

        self._table[name] = updated
        DEPENDENCY_UP.labels(dependency=name).set(1 if error is None else 0)
