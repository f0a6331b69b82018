"""Worker metrics: labelled counters, gauges and duration summaries.

Series are addressed as ``name{label=value,...}`` with labels sorted by key, the
same form the snapshot reports them under, e.g. ``jobs_total{status=failed}``.
"""

from __future__ import annotations

import json
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sandbox_worker.domain.models import JobOutput, JSONValue, KillReason

JOBS_TOTAL: Final[str] = "jobs_total"
JOBS_IN_FLIGHT: Final[str] = "jobs_in_flight"
JOB_DURATION_MS: Final[str] = "job_duration_ms"
JOB_MEMORY_PEAK_MB: Final[str] = "job_memory_peak_mb"
GOVERNOR_KILLS_TOTAL: Final[str] = "governor_kills_total"

# Percentiles are computed over this many most recent samples per series.
SUMMARY_WINDOW: Final[int] = 512


@dataclass(slots=True)
class _Summary:
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf
    recent: deque[float] = field(default_factory=lambda: deque(maxlen=SUMMARY_WINDOW))

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)
        self.recent.append(value)

    def to_dict(self) -> dict[str, JSONValue]:
        ordered = sorted(self.recent)
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count,
            "p50": _nearest_rank(ordered, 0.50),
            "p95": _nearest_rank(ordered, 0.95),
        }


class MetricsRegistry:
    """Process-local metric store; every method is safe to call from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = datetime.now(tz=UTC)
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._summaries: dict[str, _Summary] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Add ``amount`` to a counter; counters never decrease."""

        step = _finite(amount, "amount")
        if step < 0:
            raise ValueError(f"counter {name!r} cannot decrease: amount must be >= 0")
        series = series_id(name, labels)
        with self._lock:
            self._counters[series] = self._counters.get(series, 0.0) + step

    def add_gauge(
        self,
        name: str,
        delta: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        series = series_id(name, labels)
        step = _finite(delta, "delta")
        with self._lock:
            self._gauges[series] = self._gauges.get(series, 0.0) + step

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        series = series_id(name, labels)
        reading = _finite(value, "value")
        with self._lock:
            self._gauges[series] = reading

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        series = series_id(name, labels)
        sample = _finite(value, "value")
        with self._lock:
            self._summaries.setdefault(series, _Summary()).add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        series = series_id(name, labels)
        with self._lock:
            return self._counters.get(series, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        series = series_id(name, labels)
        with self._lock:
            return self._gauges.get(series)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        series = series_id(name, labels)
        with self._lock:
            summary = self._summaries.get(series)
            return None if summary is None else summary.to_dict()

    def reset(self) -> None:
        with self._lock:
            self._counters = {}
            self._gauges = {}
            self._summaries = {}
            self._started_at = datetime.now(tz=UTC)

    def snapshot(self) -> dict[str, JSONValue]:
        """All series, sorted by series id, plus the collection window."""

        with self._lock:
            started_at = self._started_at
            counters: dict[str, JSONValue] = dict(sorted(self._counters.items()))
            gauges: dict[str, JSONValue] = dict(sorted(self._gauges.items()))
            distributions: dict[str, JSONValue] = {
                series: summary.to_dict() for series, summary in sorted(self._summaries.items())
            }

        taken_at = datetime.now(tz=UTC)
        return {
            "window": {
                "started_at": _utc_text(started_at),
                "taken_at": _utc_text(taken_at),
                "seconds": max(0.0, (taken_at - started_at).total_seconds()),
            },
            "counters": counters,
            "gauges": gauges,
            "distributions": distributions,
        }

    def to_json(self, *, indent: int | None = None) -> str:
        separators = (",", ":") if indent is None else None
        return json.dumps(
            self.snapshot(),
            sort_keys=True,
            indent=indent,
            separators=separators,
            ensure_ascii=False,
        )


class WorkerMetrics:
    """What the worker records about each job it handles."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self._registry = registry if registry is not None else MetricsRegistry()

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    def job_started(self) -> None:
        self._registry.add_gauge(JOBS_IN_FLIGHT, 1.0)

    def job_finished(self, output: JobOutput, *, kill_reason: KillReason | None = None) -> None:
        self._registry.add_gauge(JOBS_IN_FLIGHT, -1.0)
        self.job_recorded(output, kill_reason=kill_reason)

    def job_aborted(self) -> None:
        """The job left the in-flight set without producing a result."""
        self._registry.add_gauge(JOBS_IN_FLIGHT, -1.0)

    def job_recorded(self, output: JobOutput, *, kill_reason: KillReason | None = None) -> None:
        """Count a result; also used directly for jobs that never ran."""
        self._registry.inc(JOBS_TOTAL, labels={"status": output.status.value})
        self._registry.observe(JOB_DURATION_MS, float(output.metrics.duration_ms))
        if output.metrics.memory_peak_mb is not None:
            self._registry.observe(JOB_MEMORY_PEAK_MB, output.metrics.memory_peak_mb)
        if kill_reason is not None:
            self._registry.inc(GOVERNOR_KILLS_TOTAL, labels={"reason": kill_reason.value})

    def snapshot(self) -> dict[str, JSONValue]:
        return self._registry.snapshot()


def series_id(name: str, labels: Mapping[str, str] | None = None) -> str:
    """Canonical ``name{k=v,...}`` id; raises ``ValueError`` for blank names or labels."""
    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must not be empty")
    base = name.strip()
    if not labels:
        return base
    pairs: list[str] = []
    for key, value in sorted(labels.items()):
        if not isinstance(value, str) or not key.strip() or not value.strip():
            raise ValueError(f"label {key!r} of {base!r} needs a non-empty string value")
        pairs.append(f"{key.strip()}={value.strip()}")
    return f"{base}{{{','.join(pairs)}}}"


def _nearest_rank(ordered: list[float], quantile: float) -> float:
    rank = max(1, math.ceil(quantile * len(ordered)))
    return ordered[rank - 1]


def _finite(value: float, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{what} must be finite, got {value}")
    return float(value)


def _utc_text(value: datetime) -> str:
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "GOVERNOR_KILLS_TOTAL",
    "JOBS_IN_FLIGHT",
    "JOBS_TOTAL",
    "JOB_DURATION_MS",
    "JOB_MEMORY_PEAK_MB",
    "SUMMARY_WINDOW",
    "MetricsRegistry",
    "WorkerMetrics",
    "series_id",
]
