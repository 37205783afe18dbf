"""Rolling performance window shared by all pipeline executions.

One recorder is shared by every in-flight request, so all counters and the
window live behind a single lock. Each read-modify-write happens inside it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class PerformanceMetrics:
    """Metrics for one completed execution."""

    total_time: float = 0.0  # seconds
    parallel_efficiency: float = 0.0  # 0-1
    cache_hit_rate: float = 0.0  # 0-1
    stage_timings: Dict[str, float] = field(default_factory=dict)
    throughput: float = 0.0  # executions per second at this latency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_time": self.total_time,
            "parallel_efficiency": self.parallel_efficiency,
            "cache_hit_rate": self.cache_hit_rate,
            "stage_timings": dict(self.stage_timings),
            "throughput": self.throughput,
        }


@dataclass
class ExecutionSample:
    metrics: PerformanceMetrics
    success: bool
    quality_score: float


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass
class HealthReport:
    status: HealthStatus
    in_flight: int
    queue_depth: int
    average_execution_time: float
    reasons: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "in_flight": self.in_flight,
            "queue_depth": self.queue_depth,
            "average_execution_time": self.average_execution_time,
            "reasons": list(self.reasons),
        }


# ── Recorder ─────────────────────────────────────────────────────────


class PerformanceRecorder:
    """Bounded window of recent executions plus admission counters."""

    def __init__(
        self,
        window: int = 100,
        max_concurrent: int = 5,
        queue_depth_threshold: int = 10,
        max_average_execution_seconds: float = 30.0,
    ) -> None:
        self._lock = threading.Lock()
        self._samples: Deque[ExecutionSample] = deque(maxlen=window)
        self._in_flight = 0
        self._queue_depth = 0
        self._total_recorded = 0
        self.max_concurrent = max_concurrent
        self.queue_depth_threshold = queue_depth_threshold
        self.max_average_execution_seconds = max_average_execution_seconds

    @classmethod
    def from_settings(cls, settings) -> "PerformanceRecorder":
        return cls(
            window=settings.performance_window,
            max_concurrent=settings.max_concurrent_executions,
            queue_depth_threshold=settings.queue_depth_threshold,
            max_average_execution_seconds=settings.max_average_execution_seconds,
        )

    # ── Admission counters ───────────────────────────────────────────

    def mark_queued(self) -> None:
        with self._lock:
            self._queue_depth += 1

    def mark_dequeued(self) -> None:
        with self._lock:
            self._queue_depth = max(0, self._queue_depth - 1)

    def mark_started(self) -> None:
        with self._lock:
            self._in_flight += 1

    def mark_finished(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return self._queue_depth

    # ── Window ───────────────────────────────────────────────────────

    def record(self, metrics: PerformanceMetrics, success: bool = True, quality_score: float = 0.0) -> None:
        with self._lock:
            self._samples.append(ExecutionSample(metrics, success, quality_score))
            self._total_recorded += 1
            if self._total_recorded % 100 == 0:
                logger.info("Recorded %d pipeline executions", self._total_recorded)

    def _averages_locked(self) -> Dict[str, Any]:
        n = len(self._samples)
        if n == 0:
            return {
                "count": 0,
                "average_execution_time": 0.0,
                "average_parallel_efficiency": 0.0,
                "average_cache_hit_rate": 0.0,
                "average_throughput": 0.0,
                "average_quality": 0.0,
                "success_rate": 0.0,
                "stage_timings": {},
            }

        stage_totals: Dict[str, float] = {}
        stage_counts: Dict[str, int] = {}
        for sample in self._samples:
            for stage, seconds in sample.metrics.stage_timings.items():
                stage_totals[stage] = stage_totals.get(stage, 0.0) + seconds
                stage_counts[stage] = stage_counts.get(stage, 0) + 1

        return {
            "count": n,
            "average_execution_time": sum(s.metrics.total_time for s in self._samples) / n,
            "average_parallel_efficiency": sum(s.metrics.parallel_efficiency for s in self._samples) / n,
            "average_cache_hit_rate": sum(s.metrics.cache_hit_rate for s in self._samples) / n,
            "average_throughput": sum(s.metrics.throughput for s in self._samples) / n,
            "average_quality": sum(s.quality_score for s in self._samples) / n,
            "success_rate": sum(1 for s in self._samples if s.success) / n,
            "stage_timings": {k: stage_totals[k] / stage_counts[k] for k in stage_totals},
        }

    def averages(self) -> Dict[str, Any]:
        with self._lock:
            return self._averages_locked()

    def recent(self, limit: Optional[int] = None) -> List[PerformanceMetrics]:
        with self._lock:
            samples = list(self._samples)
        if limit is not None:
            samples = samples[-limit:]
        return [s.metrics for s in samples]

    def health(self) -> HealthReport:
        """Healthy iff in-flight < max, queue < threshold and average time < ceiling."""
        with self._lock:
            in_flight = self._in_flight
            queue_depth = self._queue_depth
            avg_time = self._averages_locked()["average_execution_time"]

        reasons: List[str] = []
        if in_flight >= self.max_concurrent:
            reasons.append(f"in-flight executions {in_flight} >= {self.max_concurrent}")
        if queue_depth >= self.queue_depth_threshold:
            reasons.append(f"queue depth {queue_depth} >= {self.queue_depth_threshold}")
        if avg_time >= self.max_average_execution_seconds:
            reasons.append(
                f"average execution time {avg_time:.2f}s >= {self.max_average_execution_seconds:.2f}s"
            )
        status = HealthStatus.DEGRADED if reasons else HealthStatus.HEALTHY
        return HealthReport(status, in_flight, queue_depth, avg_time, reasons)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._total_recorded = 0
