"""Process-local counters for the mirroring pipeline.

Counters keep a running total per name plus a breakdown per tag set, so
``metrics.counter("filter.rejected")`` and
``metrics.counter("filter.rejected", source="MEMPOOL")`` both work.
Timings only keep the most recent samples; the engine ticks forever.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

SAMPLE_WINDOW = 512


def _key(name: str, tags: dict[str, str]) -> str:
    if not tags:
        return name
    labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{labels}}}"


def _summarize(samples: deque[float], seen: int) -> dict[str, Any]:
    if not samples:
        return {"count": seen, "last": 0.0, "avg": 0.0, "max": 0.0, "p95": 0.0}
    ordered = sorted(samples)
    # nearest-rank
    rank = max(0, -(-95 * len(ordered) // 100) - 1)
    return {
        "count": seen,
        "last": samples[-1],
        "avg": sum(ordered) / len(ordered),
        "max": ordered[-1],
        "p95": ordered[rank],
    }


class MetricsCollector:
    """Thread-safe counters, gauges and windowed timings."""

    def __init__(self, window: int = SAMPLE_WINDOW) -> None:
        self._lock = Lock()
        self._window = window
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, float] = {}
        self._samples: dict[str, deque[float]] = {}
        self._observed: Counter[str] = Counter()

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[name] += value
            if tags:
                self._counters[_key(name, tags)] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def histogram(self, name: str, value: float) -> None:
        with self._lock:
            window = self._samples.setdefault(name, deque(maxlen=self._window))
            window.append(value)
            self._observed[name] += 1

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of the block under ``name``, even if it raises."""
        started = time.monotonic()
        try:
            yield
        finally:
            self.histogram(name, time.monotonic() - started)

    def counter(self, name: str, **tags: str) -> float:
        with self._lock:
            return self._counters.get(_key(name, tags), 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings": {
                    name: _summarize(window, self._observed[name])
                    for name, window in self._samples.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()
            self._observed.clear()


metrics = MetricsCollector()
