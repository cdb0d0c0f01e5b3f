from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

_LATENCY_BUCKETS = [0.25, 0.5, 1.0, 2.0, 5.0, 10.0]
_MAX_RECENT_SAMPLES = 5000

OUTCOMES = ("done", "error", "cancelled")


def _percentile(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = (len(ordered) - 1) * max(0.0, min(1.0, p))
    lo = int(math.floor(idx))
    hi = int(math.ceil(idx))
    if lo == hi:
        return float(ordered[lo])
    frac = idx - lo
    return float(ordered[lo]) * (1.0 - frac) + float(ordered[hi]) * frac


def _bucket_key(value: float) -> str:
    for bucket in _LATENCY_BUCKETS:
        if value <= bucket:
            return f"le_{bucket:.2f}s"
    return f"gt_{_LATENCY_BUCKETS[-1]:.2f}s"


@dataclass(frozen=True)
class GenerationSample:
    ts: float
    kind: str
    outcome: str
    first_chunk_sec: Optional[float]
    total_sec: float


class GenerationObservability:
    """Counters and first-chunk latency for streamed generations, per stream kind."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._inflight = 0
        self._started: Dict[str, int] = defaultdict(int)
        self._outcomes: Dict[str, Dict[str, int]] = defaultdict(lambda: {k: 0 for k in OUTCOMES})
        self._first_chunk_buckets: Dict[str, int] = defaultdict(int)
        self._recent: Deque[GenerationSample] = deque(maxlen=_MAX_RECENT_SAMPLES)

    def record_started(self, kind: str) -> None:
        with self._lock:
            self._inflight += 1
            self._started[kind] += 1

    def record_finished(
        self,
        kind: str,
        outcome: str,
        *,
        first_chunk_sec: Optional[float],
        total_sec: float,
    ) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome: {outcome}")
        with self._lock:
            self._inflight = max(0, self._inflight - 1)
            self._outcomes[kind][outcome] += 1
            if first_chunk_sec is not None:
                self._first_chunk_buckets[_bucket_key(first_chunk_sec)] += 1
            self._recent.append(
                GenerationSample(
                    ts=time.time(),
                    kind=kind,
                    outcome=outcome,
                    first_chunk_sec=first_chunk_sec,
                    total_sec=max(0.0, float(total_sec)),
                )
            )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            recent = list(self._recent)
            started = dict(self._started)
            outcomes = {k: dict(v) for k, v in self._outcomes.items()}
            buckets = dict(self._first_chunk_buckets)
            inflight = self._inflight
            started_at = self._started_at

        first_chunk = [s.first_chunk_sec for s in recent if s.first_chunk_sec is not None]
        by_kind: Dict[str, Any] = {}
        for kind in sorted(set(started) | set(outcomes)):
            by_kind[kind] = {"started": started.get(kind, 0), **outcomes.get(kind, {k: 0 for k in OUTCOMES})}
        return {
            "uptime_sec": round(max(0.0, time.time() - started_at), 3),
            "inflight_generations": inflight,
            "generations": by_kind,
            "first_chunk_latency_sec": {
                "p50": round(_percentile(first_chunk, 0.50), 4),
                "p95": round(_percentile(first_chunk, 0.95), 4),
                "p99": round(_percentile(first_chunk, 0.99), 4),
                "sample_count": len(first_chunk),
                "histogram": buckets,
            },
        }

    def reset(self) -> None:
        with self._lock:
            self._started_at = time.time()
            self._inflight = 0
            self._started.clear()
            self._outcomes.clear()
            self._first_chunk_buckets.clear()
            self._recent.clear()
