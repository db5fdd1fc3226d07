"""In-process task metrics.

Counts stage transitions, terminal outcomes and sub-task completions, and
tracks pool capacity gauges. ``metrics.to_prometheus()`` renders the
Prometheus text format for scraping by whatever hosts the engines.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

TASK_DURATION_BUCKETS = [0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    buckets: list[float] = field(default_factory=lambda: list(TASK_DURATION_BUCKETS))
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def to_prometheus(self, name: str, labels: str = "") -> str:
        extra = f", {labels}" if labels else ""
        suffix = f"{{{labels}}}" if labels else ""
        lines = [f'{name}_bucket{{le="{b}"{extra}}} {self.counts[b]}' for b in self.buckets]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{suffix} {self.sum}")
        lines.append(f"{name}_count{suffix} {self.count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Thread-safe registry of labelled counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    @staticmethod
    def _key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        key = self._key(labels)
        with self._lock:
            self._counters[name][key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._gauges[name][key] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            histogram = self._histograms[name].setdefault(key, Histogram())
            histogram.observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(self._key(labels), 0)

    def to_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in series.items():
                    lines.append(f"# TYPE {name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{name}{{{key}}} {value}" if key else f"{name} {value}")
                    lines.append("")
            for name, histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                lines.extend(h.to_prometheus(name, key) for key, h in histograms.items())
                lines.append("")
        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


metrics = MetricsRegistry()


def record_transition(kind: str, substage: str) -> None:
    """Record a committed substage transition."""
    metrics.inc_counter("qalloc_task_transitions_total", {"kind": kind, "substage": substage})


def record_task_finished(kind: str, stage: str, duration: float) -> None:
    """Record a task reaching a terminal stage."""
    metrics.inc_counter("qalloc_tasks_finished_total", {"kind": kind, "stage": stage})
    metrics.observe_histogram("qalloc_task_duration_seconds", duration, {"kind": kind})


def record_subtask(status: str) -> None:
    """Record one fan-out child completing (``success`` or ``failure``)."""
    metrics.inc_counter("qalloc_subtasks_total", {"status": status})


def record_pool_capacity(pool_id: str, total_memory: int, available_memory: int) -> None:
    """Record the capacity figures last written to a pool."""
    metrics.set_gauge("qalloc_pool_memory_bytes", float(total_memory), {"pool": pool_id})
    metrics.set_gauge("qalloc_pool_available_memory_bytes", float(available_memory), {"pool": pool_id})


def record_placements_rebalanced(pool_id: str, count: int) -> None:
    """Record how many placements a rebalance pass mutated."""
    metrics.inc_counter("qalloc_placements_rebalanced_total", {"pool": pool_id}, count)
