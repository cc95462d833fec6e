"""Application metrics.

Prometheus-compatible counters and histograms for:
- HTTP requests
- Realtime refetches per collection
- Batch runs and their per-item outcomes
- Conflict lifecycle
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass
class Histogram:
    """Cumulative-bucket histogram for latencies."""

    buckets: tuple[float, ...] = DEFAULT_BUCKETS
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def render(self, name: str, labels: str = "") -> list[str]:
        extra = f", {labels}" if labels else ""
        label_str = f"{{{labels}}}" if labels else ""
        lines = [f'{name}_bucket{{le="{b}"{extra}}} {self.counts[b]}' for b in self.buckets]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{label_str} {self.sum}")
        lines.append(f"{name}_count{label_str} {self.count}")
        return lines


class MetricsRegistry:
    """In-process registry rendered as Prometheus text or JSON."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    @staticmethod
    def _key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        with self._lock:
            self._counters[name][self._key(labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._histograms[name].setdefault(key, Histogram()).observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(self._key(labels), 0)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def to_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name, values in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for key, value in values.items():
                    lines.append(f"{name}{{{key}}} {value}" if key else f"{name} {value}")
                lines.append("")
            for name, histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for key, histogram in histograms.items():
                    lines.extend(histogram.render(name, key))
                lines.append("")
        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


# Global metrics registry
metrics = MetricsRegistry()


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request."""
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("rigalloc_http_requests_total", labels)
    metrics.observe_histogram("rigalloc_http_request_duration_seconds", duration, labels)


def record_refetch(collection: str, outcome: str, duration: float) -> None:
    """Record a realtime refetch of one collection."""
    metrics.inc_counter("rigalloc_refetches_total", {"collection": collection, "outcome": outcome})
    metrics.observe_histogram("rigalloc_refetch_duration_seconds", duration, {"collection": collection})


def record_suppressed(collection: str) -> None:
    """Record a change notification ignored because of optimistic suppression."""
    metrics.inc_counter("rigalloc_notifications_suppressed_total", {"collection": collection})


def record_batch(operation: str, success_count: int, failure_count: int, duration: float) -> None:
    """Record a batch executor run."""
    metrics.inc_counter("rigalloc_batch_items_total", {"operation": operation, "outcome": "success"}, success_count)
    metrics.inc_counter("rigalloc_batch_items_total", {"operation": operation, "outcome": "failure"}, failure_count)
    metrics.observe_histogram("rigalloc_batch_duration_seconds", duration, {"operation": operation})


def record_conflict(action: str) -> None:
    """Record a conflict lifecycle event (detected, resolved_*, withdrawn)."""
    metrics.inc_counter("rigalloc_conflicts_total", {"action": action})
