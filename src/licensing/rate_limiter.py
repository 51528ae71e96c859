"""In-process request counter for abuse protection on license validation.

State lives only in memory and resets on restart. It is burst protection,
not billing, so persisted accuracy is not required.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from src.core.constants import DEFAULT_RATE_LIMIT_MAX_REQUESTS, DEFAULT_RATE_LIMIT_WINDOW
from src.core.logging import get_logger

log = get_logger(__name__)


@dataclass
class RateLimitEntry:
    window_start: float
    count: int = 0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    retry_after_seconds: int = 0


def rate_limit_key(tenant_id: str, module_key: str, ip: str | None) -> str:
    return f"{tenant_id}:{ip or 'unknown'}:{module_key}"


class SlidingWindowRateLimiter:
    """Per-key request counter over a fixed-length window.

    The reset-increment-compare sequence runs inside one lock so concurrent
    callers can never both slip under the limit. The critical section does
    no I/O and never awaits.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW,
        max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self._window = window_seconds
        self._max = max_requests
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def max_requests(self) -> int:
        return self._max

    def check_and_increment(self, key: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry.window_start >= self._window:
                entry = RateLimitEntry(window_start=now)
                self._entries[key] = entry
            entry.count += 1
            count = entry.count
            elapsed = now - entry.window_start

        if count > self._max:
            retry_after = max(1, math.ceil(self._window - elapsed))
            return RateLimitResult(allowed=False, count=count, retry_after_seconds=retry_after)
        return RateLimitResult(allowed=True, count=count)

    def count(self, key: str) -> int:
        """Requests counted for ``key`` in its live window (0 if expired)."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry.window_start >= self._window:
                return 0
            return entry.count

    def purge_expired(self) -> int:
        """Drop entries whose window has elapsed. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now - e.window_start >= self._window]
            for key in expired:
                del self._entries[key]
        if expired:
            log.debug("rate_limit_entries_purged", removed=len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Purge expired entries every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.purge_expired()

    def stats(self) -> dict[str, float | int]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            active = sum(1 for e in self._entries.values() if now - e.window_start < self._window)
        return {
            "total_entries": total,
            "active_entries": active,
            "expired_entries": total - active,
            "window_seconds": self._window,
            "max_requests": self._max,
        }

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        log.debug("rate_limit_cache_cleared", entries_cleared=size)
