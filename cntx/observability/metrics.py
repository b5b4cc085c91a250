"""In-process metrics for indexing and query activity.

Series are identified by a metric name plus optional labels, rendered as
``name{key=value,...}``. Counters used by the index:

- ``embeddings.generated`` / ``embeddings.failed``
- ``index.passes``, ``index.errors``, ``index.files_removed``
- ``index.stale_writes_discarded``
- ``snapshot.persisted``

Timers: ``index.pass_duration``, ``query.search_duration``.
"""

import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterator, Mapping, Optional, Sequence

Labels = Optional[Mapping[str, str]]


@dataclass(frozen=True)
class MetricSummary:
    """Summary statistics for a timer, in seconds."""
    count: int
    sum: float
    min: float
    max: float
    avg: float
    p50: float
    p95: float

    @classmethod
    def of(cls, samples: Sequence[float]) -> "MetricSummary":
        ordered = sorted(samples)
        total = math.fsum(ordered)
        return cls(
            count=len(ordered),
            sum=total,
            min=ordered[0],
            max=ordered[-1],
            avg=total / len(ordered),
            p50=_nearest_rank(ordered, 0.50),
            p95=_nearest_rank(ordered, 0.95),
        )


def _nearest_rank(ordered: Sequence[float], fraction: float) -> float:
    return ordered[int(fraction * (len(ordered) - 1))]


def series_key(name: str, labels: Labels = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """Counters, gauges and bounded timer histories.

    Each ``IndexService`` owns its own collector. Calls may come from the
    event loop and from the embedding worker thread, so every access goes
    through one lock.
    """

    def __init__(self, max_history: int = 10000):
        self.max_history = max_history
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, Deque[float]] = {}

    def increment_counter(self, name: str, value: int = 1, labels: Labels = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(self, name: str, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._gauges[series_key(name, labels)] = value

    def record_timer(self, name: str, duration: float, labels: Labels = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            history = self._timers.get(key)
            if history is None:
                history = self._timers[key] = deque(maxlen=self.max_history)
            history.append(duration)

    @contextmanager
    def time_operation(self, name: str, labels: Labels = None) -> Iterator[None]:
        """Time the enclosed block; the duration is recorded even if it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_timer(name, time.perf_counter() - started, labels)

    def get_counter(self, name: str, labels: Labels = None) -> int:
        with self._lock:
            return self._counters.get(series_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Labels = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(series_key(name, labels))

    def get_timer_summary(self, name: str, labels: Labels = None) -> Optional[MetricSummary]:
        with self._lock:
            history = self._timers.get(series_key(name, labels))
            samples = list(history) if history else None
        return MetricSummary.of(samples) if samples else None

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timers = {key: list(history) for key, history in self._timers.items() if history}
        return {
            "counters": counters,
            "gauges": gauges,
            "timers": {key: MetricSummary.of(samples) for key, samples in timers.items()},
        }

    def reset_metrics(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()


_default_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Collector used by components created outside an ``IndexService``."""
    global _default_collector

    if _default_collector is None:
        _default_collector = MetricsCollector()
    return _default_collector
