"""
Admission control per client identity.

Fixed-window counters keyed by identity, kept in a RateWindowStore that
locks per identity so unrelated clients never contend on one lock. A speed
limiter adds a capped delay as a client nears its limit. If the store
itself fails the controller allows the request (fail-open) and logs it as a
critical operational event.
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from config import (
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
    RATE_WINDOW_IDLE_SECONDS,
    SPEED_LIMIT_DELAY_AFTER,
    SPEED_LIMIT_DELAY_MS,
    SPEED_LIMIT_MAX_DELAY_MS,
)
from services.metrics import RATE_LIMIT_DECISIONS_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    count: int
    window_start: float
    last_seen: float

    def snapshot(self) -> "RateWindow":
        return RateWindow(self.count, self.window_start, self.last_seen)


class RateWindowStore(ABC):
    """Storage for per-identity rate windows."""

    @abstractmethod
    def get(self, identity: str) -> Optional[RateWindow]:
        ...

    @abstractmethod
    def increment(self, identity: str, now: float, window_seconds: float, limit: int) -> Tuple[RateWindow, bool]:
        """Count one request if the identity is under ``limit``.

        Rolls the window over when it has expired. Returns a snapshot of the
        window after the call and whether the request was counted.
        """

    @abstractmethod
    def evict_idle(self, now: float, idle_seconds: float) -> int:
        """Drop windows not seen for ``idle_seconds``; return how many were dropped."""


class InMemoryRateWindowStore(RateWindowStore):
    def __init__(self):
        self._windows: Dict[str, RateWindow] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # Guards the two dicts only; counters are mutated under per-identity locks.
        self._table_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def get(self, identity: str) -> Optional[RateWindow]:
        window = self._windows.get(identity)
        return window.snapshot() if window else None

    def _entry(self, identity: str, now: float) -> Tuple[RateWindow, threading.Lock]:
        with self._table_lock:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.Lock()
            window = self._windows.get(identity)
            if window is None:
                window = self._windows[identity] = RateWindow(count=0, window_start=now, last_seen=now)
            return window, lock

    def increment(self, identity: str, now: float, window_seconds: float, limit: int) -> Tuple[RateWindow, bool]:
        while True:
            window, lock = self._entry(identity, now)
            with lock:
                if self._windows.get(identity) is not window:
                    # Evicted between lookup and lock; start over with a fresh entry.
                    continue
                if now - window.window_start >= window_seconds:
                    window.count = 0
                    window.window_start = now
                window.last_seen = now
                if window.count >= limit:
                    return window.snapshot(), False
                window.count += 1
                return window.snapshot(), True

    def evict_idle(self, now: float, idle_seconds: float) -> int:
        evicted = 0
        with self._table_lock:
            for identity, window in list(self._windows.items()):
                if now - window.last_seen < idle_seconds:
                    continue
                lock = self._locks.get(identity)
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                try:
                    if now - window.last_seen >= idle_seconds:
                        del self._windows[identity]
                        self._locks.pop(identity, None)
                        evicted += 1
                finally:
                    if lock is not None:
                        lock.release()
        return evicted


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0
    delay_seconds: float = 0.0
    fail_open: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateController:
    def __init__(
        self,
        store: Optional[RateWindowStore] = None,
        limit: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        delay_after: int = SPEED_LIMIT_DELAY_AFTER,
        delay_ms: int = SPEED_LIMIT_DELAY_MS,
        max_delay_ms: int = SPEED_LIMIT_MAX_DELAY_MS,
        idle_seconds: float = RATE_WINDOW_IDLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store or InMemoryRateWindowStore()
        self.limit = limit
        self.window_seconds = window_seconds
        self.delay_after = delay_after
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self.idle_seconds = max(idle_seconds, window_seconds)
        self.clock = clock

    def check(self, identity: str, now: Optional[float] = None) -> RateDecision:
        """Admit or deny one request from ``identity``. Never raises."""
        now = self.clock() if now is None else now
        try:
            window, admitted = self.store.increment(identity, now, self.window_seconds, self.limit)
        except Exception as e:
            logger.critical(
                f"Rate limit store failure, allowing request for {identity} (fail-open): {type(e).__name__}: {e}"
            )
            RATE_LIMIT_DECISIONS_TOTAL.labels(decision="fail_open").inc()
            return RateDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=now + self.window_seconds,
                fail_open=True,
            )

        reset_at = window.window_start + self.window_seconds
        remaining = max(self.limit - window.count, 0)

        if not admitted:
            retry_after = max(1, int(math.ceil(reset_at - now)))
            RATE_LIMIT_DECISIONS_TOTAL.labels(decision="deny").inc()
            logger.info(f"Rate limit exceeded for {identity}: {window.count}/{self.limit}, retry in {retry_after}s")
            return RateDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        RATE_LIMIT_DECISIONS_TOTAL.labels(decision="allow").inc()
        return RateDecision(
            allowed=True,
            limit=self.limit,
            remaining=remaining,
            reset_at=reset_at,
            delay_seconds=self._delay_for(window.count),
        )

    def _delay_for(self, count: int) -> float:
        if self.delay_ms <= 0 or count <= self.delay_after:
            return 0.0
        delay_ms = min((count - self.delay_after) * self.delay_ms, self.max_delay_ms)
        return delay_ms / 1000.0

    def evict_idle(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        try:
            evicted = self.store.evict_idle(now, self.idle_seconds)
        except Exception as e:
            logger.error(f"Rate window eviction failed: {e}")
            return 0
        if evicted:
            logger.info(f"Evicted {evicted} idle rate window(s)")
        return evicted
