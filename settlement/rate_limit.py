"""Keyed sliding-window request limiting behind an injectable counter store."""

from __future__ import annotations

from collections import deque
import logging
import math
import threading
from typing import Iterable, Optional, Protocol

from settlement.common import SettlementClock
from settlement.errors import RateLimitedError


logger = logging.getLogger(__name__)


class SlidingWindowStore(Protocol):
    def try_acquire(self, key: str, now_ts: float, window_seconds: int, limit: int) -> Optional[float]:
        """Record a hit and return None, or return seconds until a slot frees without recording."""


class InMemorySlidingWindowStore:
    """Per-key timestamp log; suitable for a single process or tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    def try_acquire(self, key: str, now_ts: float, window_seconds: int, limit: int) -> Optional[float]:
        window_start = now_ts - window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= limit:
                return hits[0] + window_seconds - now_ts
            hits.append(now_ts)
            return None

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._hits.get(key, ()))


class KeyedRateLimiter:
    def __init__(
        self,
        store: SlidingWindowStore,
        *,
        max_requests: int,
        window_seconds: int,
        allowlist: Iterable[str] = (),
        enabled: bool = True,
        clock: SettlementClock | None = None,
    ) -> None:
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be positive")
        self._store = store
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._allowlist = frozenset(allowlist)
        self._enabled = enabled
        self._clock = clock or SettlementClock()

    def check(self, key: str) -> None:
        """Raise ``RateLimitedError`` when ``key`` has used its window budget."""
        if not self._enabled or key in self._allowlist:
            return
        now_ts = self._clock.now_utc().timestamp()
        retry_after = self._store.try_acquire(key, now_ts, self._window_seconds, self._max_requests)
        if retry_after is not None:
            logger.warning("Rate limit exceeded for %s", key)
            raise RateLimitedError(key, max(1, math.ceil(retry_after)))
