"""Pipeline orchestrator.

Wires the normalizer, detector ensemble, predictive analyzer, cluster
analyzer, rule and correlation engines, alert store, metrics collector and
event bus into one long-running service.

Flow for one telemetry record:

  submit(raw)            normalize synchronously; rejected records return
                         their violations and never reach a worker
      │
  shard by vessel id     one asyncio.PriorityQueue + one worker per shard,
                         ordered by telemetry timestamp, so a vessel's points
                         are always processed by the same worker in order
      │
  process(point)         anomaly_detection → predictive_analysis →
                         alert_generation; each stage is timed, isolated and
                         can be disabled at runtime

Three timers run beside the workers: metrics snapshot, cluster cycle and
pruning of stale correlations and idle vessels. ``stop()`` refuses new work,
drains the queues, cancels the timers and publishes a final metrics snapshot.

Nothing here is a module-level singleton: ``build_pipeline`` constructs a
fully wired instance from Settings and a PipelineConfig.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

from app.config import Settings
from app.errors import PipelineError, PipelineStoppedError, TransitionError
from app.models.alert import Alert, AlertRule, Correlation
from app.models.base import AlertSourceEnum, AlertStatusEnum, Severity
from app.models.metrics import ProcessingMetrics
from app.models.pattern import Cluster, Pattern, Prediction
from app.models.telemetry import TelemetryPoint
from app.modules.alert_store import AlertFilter, AlertStore
from app.modules.cluster_analyzer import ClusterAnalyzer
from app.modules.correlation_engine import CorrelationEngine
from app.modules.detector_base import DetectionContext
from app.modules.detector_ensemble import DetectorEnsemble, default_detectors
from app.modules.event_bus import EventBus
from app.modules.metrics_collector import MetricsCollector
from app.modules.normalize import normalize_telemetry
from app.modules.pipeline_config import PipelineConfig, load_pipeline_config
from app.modules.predictive_analyzer import PredictiveAnalyzer
from app.modules.report import generate_report
from app.modules.rule_engine import RuleContext, RuleEngine
from app.modules.vessel_history import VesselHistory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (stage_id, display name, priority)
STAGES: list[tuple[str, str, int]] = [
    ("data_validation", "Data Validation", 1),
    ("anomaly_detection", "Anomaly Detection", 2),
    ("predictive_analysis", "Predictive Analysis", 3),
    ("alert_generation", "Alert Generation", 4),
]


@dataclass
class SubmissionResult:
    accepted: bool
    point: Optional[TelemetryPoint] = None
    violations: list[str] = field(default_factory=list)
    pattern: Optional[Pattern] = None


@dataclass
class ProcessingOutcome:
    point: TelemetryPoint
    patterns: list[Pattern] = field(default_factory=list)
    predictions: list[Prediction] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    correlations: list[Correlation] = field(default_factory=list)


def shard_for(vessel_id: str, shards: int) -> int:
    """Stable shard index for a vessel (independent of PYTHONHASHSEED)."""
    return zlib.crc32(vessel_id.encode("utf-8")) % shards


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        config: PipelineConfig,
        *,
        history: VesselHistory,
        ensemble: DetectorEnsemble,
        predictor: PredictiveAnalyzer,
        clusters: ClusterAnalyzer,
        store: AlertStore,
        rules: RuleEngine,
        correlations: CorrelationEngine,
        metrics: MetricsCollector,
        bus: EventBus,
    ):
        self.settings = settings
        self.config = config
        self.history = history
        self.ensemble = ensemble
        self.predictor = predictor
        self.clusters = clusters
        self.store = store
        self.rules = rules
        self.correlations = correlations
        self.metrics = metrics
        self.bus = bus

        self._stage_enabled = {stage_id: True for stage_id, _, _ in STAGES}
        for stage_id, name, priority in STAGES:
            metrics.register_stage(stage_id, name, priority)
        metrics.set_queue_depth_provider(self.queue_depth)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queues: list[asyncio.PriorityQueue] = []
        self._workers: list[asyncio.Task] = []
        self._timers: list[asyncio.Task] = []
        self._seq = itertools.count()
        self._in_flight = 0
        self._running = False
        self._stopping = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        shards = max(1, self.settings.WORKER_COUNT)
        self._queues = [asyncio.PriorityQueue() for _ in range(shards)]
        self._workers = [
            asyncio.create_task(self._worker(q), name=f"pipeline-worker-{i}")
            for i, q in enumerate(self._queues)
        ]
        self._timers = [
            asyncio.create_task(
                self._every(self.settings.METRICS_INTERVAL_SECONDS, self.publish_metrics), name="metrics-timer",
            ),
            asyncio.create_task(
                self._every(self.settings.CLUSTER_INTERVAL_SECONDS, self.run_cluster_cycle), name="cluster-timer",
            ),
            asyncio.create_task(
                self._every(self.settings.CORRELATION_PRUNE_SECONDS, self.prune), name="prune-timer",
            ),
        ]
        self._running = True
        logger.info(
            "Pipeline started: %d workers, %d detectors, %d rules",
            shards, len(self.ensemble.detector_names), len(self.rules.list_rules()),
        )

    async def drain(self) -> None:
        """Wait until every queued point has been processed."""
        await asyncio.gather(*(q.join() for q in self._queues))

    async def stop(self, drain_timeout: float | None = 30.0) -> ProcessingMetrics:
        """Stop accepting telemetry, drain queued work and flush metrics."""
        self._stopping = True
        if self._running:
            try:
                await asyncio.wait_for(self.drain(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Drain timed out with %d points still queued", self.queue_depth())
            for task in [*self._timers, *self._workers]:
                task.cancel()
            await asyncio.gather(*self._timers, *self._workers, return_exceptions=True)
            self._timers, self._workers = [], []
            self._running = False
        final = self.publish_metrics()
        logger.info(
            "Pipeline stopped: %d processed, %d alerts, %d anomalies",
            final.processed_count, final.alerts_created, final.anomalies_detected,
        )
        return final

    async def _every(self, interval: float, fn: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                fn()
            except Exception:
                logger.exception("Timer task %s failed", getattr(fn, "__name__", fn))
                self.metrics.record_error("stage")

    async def _worker(self, queue: asyncio.PriorityQueue) -> None:
        while True:
            _, _, point = await queue.get()
            self._in_flight += 1
            try:
                await self.process(point)
            except Exception:
                logger.exception("Unhandled error processing %s", point.vessel_id)
                self.metrics.record_error("stage")
            finally:
                self._in_flight -= 1
                queue.task_done()

    def queue_depth(self) -> int:
        return sum(q.qsize() for q in self._queues) + self._in_flight

    # ── Ingest ────────────────────────────────────────────────────────────────

    def submit(self, raw: Mapping[str, Any] | TelemetryPoint) -> SubmissionResult:
        """Validate and enqueue one record without blocking.

        Raises PipelineStoppedError once ``stop()`` has begun or before
        ``start()``.
        """
        if self._stopping or not self._running:
            raise PipelineStoppedError("Pipeline is not accepting telemetry")

        started = time.perf_counter()
        result = normalize_telemetry(raw, self.config.normalizer)
        self.metrics.record_stage("data_validation", result.ok, (time.perf_counter() - started) * 1000)
        self.metrics.record_submission(result.ok)
        if not result.ok:
            logger.debug("Rejected telemetry: %s", "; ".join(result.violations))
            if result.pattern is not None:
                self.history.add_patterns([result.pattern])
            return SubmissionResult(accepted=False, violations=result.violations, pattern=result.pattern)

        self._enqueue(result.point)
        return SubmissionResult(accepted=True, point=result.point)

    def _enqueue(self, point: TelemetryPoint) -> None:
        queue = self._queues[shard_for(point.vessel_id, len(self._queues))]
        item = (point.timestamp, next(self._seq), point)
        try:
            in_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            in_loop = False
        if in_loop:
            queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(queue.put_nowait, item)

    # ── Processing ────────────────────────────────────────────────────────────

    def _run_stage(
        self, stage_id: str, fn: Callable[[], tuple[T, list[PipelineError]]], default: T, vessel_id: str
    ) -> tuple[T, bool]:
        """Run one stage; returns its value and whether it ran clean.

        ``fn`` returns the stage value with the errors it isolated internally
        (detector or rule failures). Those errors do not abort the stage but
        still count as a failed run.
        """
        if not self._stage_enabled[stage_id]:
            return default, True
        started = time.perf_counter()
        try:
            value, errors = fn()
        except Exception:
            logger.exception("Stage %s failed for %s", stage_id, vessel_id)
            self.metrics.record_stage(stage_id, False, (time.perf_counter() - started) * 1000)
            self.metrics.record_error("stage")
            return default, False
        self.metrics.record_stage(stage_id, not errors, (time.perf_counter() - started) * 1000)
        return value, not errors

    async def process(self, point: TelemetryPoint) -> ProcessingOutcome:
        """Run one normalized point through every enabled stage."""
        started = time.perf_counter()
        vid = point.vessel_id
        context = DetectionContext(
            history=tuple(p for p in self.history.points(vid) if p.timestamp != point.timestamp),
            neighbours=tuple(self.history.latest_points(exclude=vid)),
        )
        self.history.add_point(point)
        self.clusters.observe(point)
        outcome = ProcessingOutcome(point=point)

        outcome.patterns, detected_ok = self._run_stage(
            "anomaly_detection", lambda: self._detect(point, context), [], vid,
        )
        outcome.predictions, predicted_ok = self._run_stage(
            "predictive_analysis", lambda: (self._predict(point), []), [], vid,
        )
        (alerts, correlations), alerted_ok = self._run_stage(
            "alert_generation", lambda: self._generate_alerts(point, outcome), ([], []), vid,
        )
        outcome.alerts, outcome.correlations = alerts, correlations

        self.metrics.record_processed(
            (time.perf_counter() - started) * 1000,
            anomalies=len(outcome.patterns),
            predictions=len(outcome.predictions),
            success=detected_ok and predicted_ok and alerted_ok,
        )
        return outcome

    def _detect(self, point: TelemetryPoint, context: DetectionContext) -> tuple[list[Pattern], list[PipelineError]]:
        result = self.ensemble.run(point, context)
        if result.patterns:
            self.history.add_patterns(result.patterns)
            self.bus.publish("insights", {"type": "patterns", "vessel_id": point.vessel_id, "items": result.patterns})
        return result.patterns, list(result.errors)

    def _predict(self, point: TelemetryPoint) -> list[Prediction]:
        since = point.timestamp - timedelta(hours=self.config.prediction.pattern_lookback_hours)
        predictions = self.predictor.analyze(
            point, self.history.points(point.vessel_id), self.history.patterns(point.vessel_id, since=since),
        )
        if predictions:
            self.bus.publish("insights", {"type": "predictions", "vessel_id": point.vessel_id, "items": predictions})
        return predictions

    def _generate_alerts(
        self, point: TelemetryPoint, outcome: ProcessingOutcome
    ) -> tuple[tuple[list[Alert], list[Correlation]], list[PipelineError]]:
        alerts = []
        for pattern in outcome.patterns:
            if (
                pattern.severity == Severity.CRITICAL
                and pattern.confidence >= self.config.alerting.direct_alert_min_confidence
            ):
                alert, _ = self.store.record(detector_alert(pattern))
                alerts.append(alert)
        ctx = RuleContext(now=point.timestamp, point=point, patterns=outcome.patterns, predictions=outcome.predictions)
        alerts.extend(self.rules.evaluate(ctx))
        return (alerts, self._dispatch_alerts(alerts)), ctx.errors

    def _dispatch_alerts(self, alerts: list[Alert]) -> list[Correlation]:
        """Publish alerts; correlate and count the newly created ones."""
        correlations = []
        for alert in alerts:
            self.bus.publish("alerts", alert)
            if alert.occurrences > 1:
                continue
            self.metrics.record_alerts()
            correlation = self.correlations.on_new_alert(alert)
            if correlation is not None:
                correlations.append(correlation)
                self.bus.publish("correlations", correlation)
        return correlations

    # ── Timed tasks ───────────────────────────────────────────────────────────

    def publish_metrics(self) -> ProcessingMetrics:
        snapshot = self.metrics.snapshot()
        self.bus.publish("metrics", snapshot)
        return snapshot

    def run_cluster_cycle(self, now: datetime | None = None) -> list[Cluster]:
        now = now or datetime.now(timezone.utc)
        clusters = self.clusters.run_cycle(now)
        self.bus.publish("insights", {"type": "clusters", "items": clusters})
        alerts = []
        for cluster in clusters:
            alerts.extend(self.rules.evaluate(RuleContext(now=now, cluster=cluster)))
        self._dispatch_alerts(alerts)
        return clusters

    def prune(self) -> tuple[int, int]:
        """Drop stale correlations and idle vessels; returns both counts."""
        return self.correlations.prune(), self.history.evict_idle()

    # ── Controls ──────────────────────────────────────────────────────────────

    def set_stage_enabled(self, stage_id: str, enabled: bool) -> None:
        if stage_id not in self._stage_enabled:
            raise KeyError(stage_id)
        if stage_id == "data_validation" and not enabled:
            raise ValueError("data_validation cannot be disabled; unvalidated telemetry never reaches workers")
        self._stage_enabled[stage_id] = enabled
        self.metrics.set_stage_enabled(stage_id, enabled)
        logger.info("Stage %s %s", stage_id, "enabled" if enabled else "disabled")

    # ── Query / command API ───────────────────────────────────────────────────

    def subscribe_alerts(self, callback: Callable[[Alert], None], replay_latest: bool = True) -> Callable[[], None]:
        return self.bus.subscribe("alerts", callback, replay_latest)

    def subscribe_insights(self, callback: Callable[[dict], None], replay_latest: bool = True) -> Callable[[], None]:
        return self.bus.subscribe("insights", callback, replay_latest)

    def subscribe_metrics(
        self, callback: Callable[[ProcessingMetrics], None], replay_latest: bool = True
    ) -> Callable[[], None]:
        return self.bus.subscribe("metrics", callback, replay_latest)

    def list_alerts(self, alert_filter: AlertFilter | None = None) -> list[Alert]:
        return self.store.list_alerts(alert_filter)

    def get_alert(self, alert_id: str) -> Alert:
        return self.store.get(alert_id)

    def create_alert(self, alert: Alert) -> Alert:
        """Create a manual alert (no dedup) and correlate it."""
        stored = self.store.create(alert.model_copy(update={"source": AlertSourceEnum.MANUAL, "dedup_key": None}))
        self._dispatch_alerts([stored])
        return stored

    def transition_alert(self, alert_id: str, status: AlertStatusEnum | str, reason: str | None = None) -> Alert:
        try:
            alert = self.store.transition(alert_id, status, reason=reason)
        except TransitionError as err:
            self.metrics.record_error(err)
            self.metrics.record_outcome(False)
            raise
        self.metrics.record_outcome(True)
        self.bus.publish("alerts", alert)
        return alert

    def get_metrics(self) -> ProcessingMetrics:
        return self.metrics.get_metrics()

    def list_rules(self) -> list[AlertRule]:
        return self.rules.list_rules()

    def add_rule(self, rule: AlertRule | dict[str, Any]) -> AlertRule:
        return self.rules.add_rule(rule)

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> AlertRule:
        return self.rules.update_rule(rule_id, updates)

    def remove_rule(self, rule_id: str) -> None:
        self.rules.remove_rule(rule_id)

    def list_correlations(self) -> list[Correlation]:
        return self.correlations.list_correlations()

    def list_clusters(self) -> list[Cluster]:
        return self.clusters.clusters

    def vessel_patterns(self, vessel_id: str) -> list[Pattern]:
        return self.history.patterns(vessel_id)

    def generate_report(self, date_from: datetime, date_to: datetime, **filters: Any) -> dict[str, Any]:
        return generate_report(self.store, date_from, date_to, **filters)


def detector_alert(pattern: Pattern) -> Alert:
    """Alert raised directly from a critical, high-confidence detector finding."""
    label = pattern.kind.value.replace("_", " ")
    return Alert(
        kind=pattern.kind.value,
        severity=pattern.severity,
        title=f"Critical {label} anomaly: {pattern.vessel_id}",
        description=pattern.description,
        location=pattern.location,
        timestamp=pattern.detected_at,
        source=AlertSourceEnum.DETECTOR,
        metadata={
            "vessel_id": pattern.vessel_id,
            "pattern_id": pattern.id,
            "detector": pattern.detector,
            "confidence": pattern.confidence,
            "evidence": pattern.evidence,
        },
        dedup_key=f"{pattern.vessel_id}:{pattern.kind.value}",
    )


def _resolve_config_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute() or candidate.exists():
        return candidate
    # Relative paths also resolve against the repository root
    return Path(__file__).resolve().parents[3] / path


def build_pipeline(settings: Settings | None = None, config: PipelineConfig | None = None) -> Pipeline:
    """Construct a fully wired, not yet started Pipeline."""
    if settings is None:
        from app.config import settings as default_settings
        settings = default_settings
    if config is None:
        config = load_pipeline_config(_resolve_config_path(settings.PIPELINE_CONFIG))

    metrics = MetricsCollector()
    bus = EventBus(on_error=metrics.record_error)
    store = AlertStore(capacity=settings.ALERT_HISTORY_SIZE)
    return Pipeline(
        settings,
        config,
        history=VesselHistory(
            settings.HISTORY_POINTS,
            settings.HISTORY_PATTERNS,
            idle_after=timedelta(hours=max(settings.HISTORY_IDLE_HOURS, config.detection.ais_gap.window_hours)),
        ),
        ensemble=DetectorEnsemble(default_detectors(config.detection), on_error=metrics.record_error),
        predictor=PredictiveAnalyzer(config.prediction),
        clusters=ClusterAnalyzer(config.clustering, buffer_size=settings.CLUSTER_BUFFER_SIZE),
        store=store,
        rules=RuleEngine(
            store,
            bus,
            rules=config.rules,
            zones=config.detection.geospatial.zones,
            config=config.alerting,
            on_error=metrics.record_error,
        ),
        correlations=CorrelationEngine(
            store, config.alerting, retention=timedelta(hours=settings.CORRELATION_RETENTION_HOURS),
        ),
        metrics=metrics,
        bus=bus,
    )
