"""In-memory fixed-window rate limiter for generation endpoints.

Each key (``feature:user:session``) owns one window. The first hit opens a
window of ``window_ms`` with count 1; later hits inside the window increment
the count and are limited once ``count > limit``. An elapsed window is replaced
by a fresh one on the next hit. State is process-local and is lost on restart.

Environment variables:
    RATE_LIMIT_MAX_KEYS – tracked-key high-water mark that triggers a sweep of
    expired windows (default: 10000)
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi.responses import JSONResponse

_log = logging.getLogger(__name__)


@dataclass
class RateLimitCounter:
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    retry_after_seconds: int = 0


class FixedWindowRateLimiter:
    def __init__(self, *, max_keys: int = 10_000, clock: Optional[Callable[[], float]] = None) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, RateLimitCounter] = {}
        self._max_keys = max(1, int(max_keys))
        self._clock = clock or time.monotonic

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def _now_ms(self) -> float:
        return float(self._clock()) * 1000.0

    def _sweep_expired_locked(self, now_ms: float) -> None:
        stale = [key for key, counter in self._counters.items() if counter.window_reset_at <= now_ms]
        for key in stale:
            self._counters.pop(key, None)
        if stale:
            _log.debug("rate limiter swept %d expired windows", len(stale))

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        now_ms = self._now_ms()
        with self._lock:
            if len(self._counters) > self._max_keys:
                self._sweep_expired_locked(now_ms)
            counter = self._counters.get(key)
            if counter is None or counter.window_reset_at <= now_ms:
                self._counters[key] = RateLimitCounter(count=1, window_reset_at=now_ms + max(1, int(window_ms)))
                return RateLimitResult(limited=False)
            counter.count += 1
            if counter.count > int(limit):
                retry_after = max(1, math.ceil((counter.window_reset_at - now_ms) / 1000.0))
                return RateLimitResult(limited=True, retry_after_seconds=retry_after)
            return RateLimitResult(limited=False)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


def rate_limited_response(result: RateLimitResult, message: str) -> JSONResponse:
    retry_after = max(1, int(result.retry_after_seconds))
    return JSONResponse(
        status_code=429,
        content={"error": message, "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )
