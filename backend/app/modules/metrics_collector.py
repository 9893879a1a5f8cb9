"""Processing metrics.

Counters accumulate for the current window under a lock; ``snapshot()``
turns the window into a ProcessingMetrics record and starts a new window.
Window-scoped values (throughput, average latency, error rate) describe only
the last window; counts (processed, anomalies, predictions, alerts, errors)
are totals since start.

error_rate is failed operations over operations in the window. An operation is
a rejected submission, a processed point (failed when any stage or detector,
rule or action inside it failed) or an alert transition. Errors are also
counted by kind, but a point that raised three detector errors is still one
failed operation.

Per-stage success rate is an EWMA seeded at 1.0:

    rate = rate × 0.99 + outcome × 0.01      (outcome 1 = success, 0 = failure)
"""
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Optional

from app.errors import DetectorError, PipelineError
from app.models.metrics import ProcessingMetrics, StageMetrics

logger = logging.getLogger(__name__)

EWMA_DECAY = 0.99


class MetricsCollector:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._queue_depth: Callable[[], int] = lambda: 0
        self._stages: dict[str, StageMetrics] = {}
        # cumulative
        self._processed = 0
        self._anomalies = 0
        self._predictions = 0
        self._alerts = 0
        self._errors_by_kind: Counter[str] = Counter()
        self._detector_errors: Counter[str] = Counter()
        # current window
        self._window_start = clock()
        self._window_processed = 0
        self._window_latency_ms = 0.0
        self._window_attempts = 0
        self._window_errors = 0
        self._latest = ProcessingMetrics()

    # ── Wiring ────────────────────────────────────────────────────────────────

    def set_queue_depth_provider(self, provider: Callable[[], int]) -> None:
        self._queue_depth = provider

    def register_stage(self, stage_id: str, name: str, priority: int, enabled: bool = True) -> None:
        with self._lock:
            self._stages[stage_id] = StageMetrics(stage_id=stage_id, name=name, priority=priority, enabled=enabled)

    def set_stage_enabled(self, stage_id: str, enabled: bool) -> None:
        with self._lock:
            self._stages[stage_id].enabled = enabled

    # ── Recording ─────────────────────────────────────────────────────────────

    def record_submission(self, accepted: bool) -> None:
        """Count a rejection; accepted points are counted once processed."""
        if accepted:
            return
        with self._lock:
            self._errors_by_kind["validation"] += 1
        self.record_outcome(False)

    def record_outcome(self, success: bool) -> None:
        with self._lock:
            self._window_attempts += 1
            if not success:
                self._window_errors += 1

    def record_processed(
        self, latency_ms: float, anomalies: int = 0, predictions: int = 0, success: bool = True
    ) -> None:
        with self._lock:
            self._window_attempts += 1
            if not success:
                self._window_errors += 1
            self._processed += 1
            self._anomalies += anomalies
            self._predictions += predictions
            self._window_processed += 1
            self._window_latency_ms += latency_ms

    def record_alerts(self, count: int = 1) -> None:
        with self._lock:
            self._alerts += count

    def record_error(self, error: PipelineError | str) -> None:
        """Count an error by kind; detector errors are also counted per detector."""
        kind = error if isinstance(error, str) else error.kind
        with self._lock:
            self._errors_by_kind[kind] += 1
            if isinstance(error, DetectorError):
                self._detector_errors[error.detector] += 1

    def record_stage(self, stage_id: str, success: bool, duration_ms: float) -> None:
        with self._lock:
            stage = self._stages.get(stage_id)
            if stage is None:
                return
            outcome = 1.0 if success else 0.0
            stage.success_rate = stage.success_rate * EWMA_DECAY + outcome * (1.0 - EWMA_DECAY)
            stage.last_duration_ms = duration_ms
            stage.runs += 1
            if not success:
                stage.failures += 1

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def snapshot(self) -> ProcessingMetrics:
        """Close the current window and return its metrics."""
        depth = self._queue_depth()
        now = self._clock()
        with self._lock:
            elapsed = max(now - self._window_start, 1e-9)
            metrics = ProcessingMetrics(
                throughput=round(self._window_processed / elapsed, 3),
                avg_latency_ms=round(self._window_latency_ms / self._window_processed, 3)
                if self._window_processed else 0.0,
                error_rate=round(self._window_errors / self._window_attempts, 4)
                if self._window_attempts else 0.0,
                queue_depth=depth,
                processed_count=self._processed,
                anomalies_detected=self._anomalies,
                predictions_generated=self._predictions,
                alerts_created=self._alerts,
                errors_by_kind=dict(self._errors_by_kind),
                detector_errors=dict(self._detector_errors),
                stages=[s.model_copy() for s in sorted(self._stages.values(), key=lambda s: s.priority)],
                window_seconds=round(elapsed, 3),
                collected_at=datetime.now(timezone.utc),
            )
            self._window_start = now
            self._window_processed = 0
            self._window_latency_ms = 0.0
            self._window_attempts = 0
            self._window_errors = 0
            self._latest = metrics
        logger.debug(
            "Metrics: %.1f pts/s, %.1f ms avg, error rate %.3f, queue %d",
            metrics.throughput, metrics.avg_latency_ms, metrics.error_rate, metrics.queue_depth,
        )
        return metrics

    def get_metrics(self) -> ProcessingMetrics:
        """Latest published snapshot."""
        with self._lock:
            return self._latest.model_copy(deep=True)

    def stage(self, stage_id: str) -> Optional[StageMetrics]:
        with self._lock:
            stage = self._stages.get(stage_id)
            return stage.model_copy() if stage else None
