"""Alert rule evaluation.

A rule is a weighted list of conditions. For one evaluation context each
condition scores 1 (met) or 0, and the rule fires when the weighted average

    Σ(weight × score) / Σ(weight)  >  0.7

Rules are evaluated in priority order (1 first); disabled rules and rules in
cooldown are skipped. Cooldowns run on the engine clock (wall clock by
default), not on telemetry time: shards and the cluster timer evaluate rules
in no particular event-time order. The cooldown check and
``last_triggered_at`` update happen under a per-rule lock, so two concurrent
contexts can never both fire the same rule inside its cooldown.

A firing rule records an alert (merged into the open alert with the same
``<rule id>:<vessel or cluster>`` key if there is one) and, for a newly
created alert, runs the rule's actions in order. Each action is isolated.

A condition that raises turns into RuleEvaluationError: the rule is skipped
for this context and the remaining rules still run. Condition and action
errors are reported to ``on_error`` and collected on ``RuleContext.errors``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from app.errors import DuplicateRuleError, PipelineError, RuleEvaluationError, RuleNotFoundError, TransitionError
from app.models.alert import Alert, AlertRule, RuleAction, RuleCondition
from app.models.base import (
    ActionTypeEnum,
    AlertSourceEnum,
    AlertStatusEnum,
    ConditionTypeEnum,
    OperatorEnum,
    PatternKind,
    Severity,
)
from app.models.pattern import Cluster, Pattern, Prediction
from app.models.telemetry import GeoPoint, TelemetryPoint
from app.modules.alert_store import AlertStore
from app.modules.event_bus import EventBus
from app.modules.geospatial_detector import find_restricted_zone
from app.modules.pipeline_config import AlertingConfig, RestrictedZone
from app.utils.geo import KM_PER_DEGREE, degree_distance

logger = logging.getLogger(__name__)

RULE_ALERT_KIND = "rule_match"

_RISK_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


# ── Evaluation context ────────────────────────────────────────────────────────

@dataclass
class RuleContext:
    """Everything one rule evaluation may look at.

    Telemetry contexts carry a point with its patterns and predictions;
    cluster contexts carry only a cluster.
    """

    now: datetime
    point: Optional[TelemetryPoint] = None
    patterns: Sequence[Pattern] = field(default_factory=list)
    predictions: Sequence[Prediction] = field(default_factory=list)
    cluster: Optional[Cluster] = None
    errors: list[PipelineError] = field(default_factory=list)

    @property
    def vessel_id(self) -> Optional[str]:
        return self.point.vessel_id if self.point is not None else None

    @property
    def findings(self) -> list[Pattern]:
        return [p for p in self.patterns if p.kind != PatternKind.VALIDATION]

    @property
    def anomaly_score(self) -> float:
        """Highest finding confidence on a 0–100 scale."""
        return max((p.confidence * 100.0 for p in self.findings), default=0.0)

    @property
    def max_severity(self) -> Optional[Severity]:
        severities = [p.severity for p in self.findings]
        if self.cluster is not None:
            severities.append(self.cluster.severity)
        return Severity.max(*severities) if severities else None

    @property
    def location(self) -> Optional[GeoPoint]:
        if self.point is not None:
            return self.point.location
        if self.cluster is not None:
            return self.cluster.centroid
        return None

    @property
    def subject(self) -> str:
        if self.point is not None:
            return self.point.vessel_id
        if self.cluster is not None:
            return self.cluster.id
        return "global"


def compare(actual: Any, operator: OperatorEnum, expected: Any) -> bool:
    if operator == OperatorEnum.GT:
        return actual > expected
    if operator == OperatorEnum.GTE:
        return actual >= expected
    if operator == OperatorEnum.LT:
        return actual < expected
    if operator == OperatorEnum.LTE:
        return actual <= expected
    if operator == OperatorEnum.EQ:
        return actual == expected
    raise ValueError(f"operator {operator.value!r} does not apply to {type(actual).__name__} values")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple, set)) else [value]


# ── Engine ────────────────────────────────────────────────────────────────────

class RuleEngine:
    def __init__(
        self,
        store: AlertStore,
        bus: EventBus,
        rules: Sequence[AlertRule] = (),
        zones: Sequence[RestrictedZone] = (),
        config: AlertingConfig | None = None,
        on_error: Optional[Callable[[PipelineError], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.clock = clock
        self.bus = bus
        self.zones = list(zones)
        self.config = config or AlertingConfig()
        self.on_error = on_error
        self._rules: dict[str, AlertRule] = {}
        self._rule_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        for rule in rules:
            self.add_rule(rule)

    # ── CRUD ──────────────────────────────────────────────────────────────────

    def list_rules(self) -> list[AlertRule]:
        with self._lock:
            rules = [r.model_copy(deep=True) for r in self._rules.values()]
        return sorted(rules, key=lambda r: (r.priority, r.id))

    def get_rule(self, rule_id: str) -> AlertRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            return rule.model_copy(deep=True)

    def add_rule(self, rule: AlertRule | dict[str, Any]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            rule = AlertRule.model_validate(rule)
        with self._lock:
            if rule.id in self._rules:
                raise DuplicateRuleError(rule.id)
            self._rules[rule.id] = rule.model_copy(deep=True)
            self._rule_locks[rule.id] = threading.Lock()
        logger.info("Added rule %s (priority %d)", rule.id, rule.priority)
        return rule.model_copy(deep=True)

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> AlertRule:
        """Apply a validated partial update; the rule id cannot change."""
        updates = {k: v for k, v in updates.items() if k != "id"}
        lock = self._rule_lock(rule_id)
        with lock:
            with self._lock:
                current = self._rules.get(rule_id)
                if current is None:
                    raise RuleNotFoundError(rule_id)
                merged = {**current.model_dump(), **updates, "id": rule_id}
                if "cooldown_minutes" in updates:
                    merged.pop("cooldown_period", None)
            updated = AlertRule.model_validate(merged)
            with self._lock:
                self._rules[rule_id] = updated
        logger.info("Updated rule %s: %s", rule_id, ", ".join(sorted(updates)) or "no changes")
        return updated.model_copy(deep=True)

    def remove_rule(self, rule_id: str) -> None:
        with self._lock:
            if self._rules.pop(rule_id, None) is None:
                raise RuleNotFoundError(rule_id)
            self._rule_locks.pop(rule_id, None)
        logger.info("Removed rule %s", rule_id)

    def _rule_lock(self, rule_id: str) -> threading.Lock:
        with self._lock:
            lock = self._rule_locks.get(rule_id)
        if lock is None:
            raise RuleNotFoundError(rule_id)
        return lock

    # ── Conditions ────────────────────────────────────────────────────────────

    def condition_met(self, condition: RuleCondition, ctx: RuleContext) -> bool:
        ctype, op, value = condition.type, condition.operator, condition.value

        if ctype == ConditionTypeEnum.ANOMALY_SCORE:
            return compare(ctx.anomaly_score, op, float(value))

        if ctype == ConditionTypeEnum.PATTERN_MATCH:
            kinds = {p.kind.value for p in ctx.findings}
            wanted = {PatternKind(v).value for v in _as_list(value)}
            if op in (OperatorEnum.CONTAINS, OperatorEnum.EQ):
                return bool(kinds & wanted)
            raise ValueError(f"pattern_match does not support {op.value!r}")

        if ctype == ConditionTypeEnum.SEVERITY:
            severity = ctx.max_severity
            if severity is None:
                return False
            return compare(severity.rank, op, Severity(value).rank)

        if ctype == ConditionTypeEnum.LOCATION:
            return self._location_met(op, value, ctx)

        if ctype == ConditionTypeEnum.VESSEL_TYPE:
            if ctx.point is None:
                return False
            vessel_type = ctx.point.vessel_type.lower()
            if op == OperatorEnum.EQ:
                return vessel_type == str(value).lower()
            if op in (OperatorEnum.CONTAINS, OperatorEnum.WITHIN):
                return vessel_type in {str(v).lower() for v in _as_list(value)}
            raise ValueError(f"vessel_type does not support {op.value!r}")

        if ctype == ConditionTypeEnum.TIME_RANGE:
            ts = ctx.point.timestamp if ctx.point is not None else ctx.now
            hour = ts.hour + ts.minute / 60.0
            start, end = float(value["start_hour"]), float(value["end_hour"])
            inside = start <= hour < end if start <= end else (hour >= start or hour < end)
            if op == OperatorEnum.WITHIN:
                return inside
            raise ValueError(f"time_range does not support {op.value!r}")

        if ctype == ConditionTypeEnum.PREDICTION:
            return self._prediction_met(op, value, ctx)

        if ctype == ConditionTypeEnum.CLUSTER_RISK:
            if ctx.cluster is None:
                return False
            return compare(_RISK_RANK[ctx.cluster.risk_level.value], op, _RISK_RANK[str(value).lower()])

        raise ValueError(f"unsupported condition type {ctype!r}")

    def _location_met(self, op: OperatorEnum, value: Any, ctx: RuleContext) -> bool:
        if op != OperatorEnum.WITHIN:
            raise ValueError(f"location does not support {op.value!r}")
        location = ctx.location
        if location is None:
            return False
        value = value or {}
        buffer_km = float(value.get("buffer_km", 0.0))
        if "lat" in value and "lng" in value:
            radius = float(value["radius_km"]) + buffer_km
            return degree_distance(location.lat, location.lng, value["lat"], value["lng"]) < radius / KM_PER_DEGREE
        return find_restricted_zone(location.lat, location.lng, self.zones, buffer_km) is not None

    @staticmethod
    def _prediction_met(op: OperatorEnum, value: Any, ctx: RuleContext) -> bool:
        if op in (OperatorEnum.CONTAINS, OperatorEnum.EQ) and not isinstance(value, dict):
            return any(p.kind.value == value for p in ctx.predictions)
        kind = value["kind"]
        field_name = value.get("field", "confidence")
        threshold = value["threshold"]
        for prediction in ctx.predictions:
            if prediction.kind.value != kind:
                continue
            actual = prediction.confidence if field_name == "confidence" else prediction.payload.get(field_name)
            if actual is not None and compare(actual, op, threshold):
                return True
        return False

    def score(self, rule: AlertRule, ctx: RuleContext) -> float:
        """Weighted average of condition outcomes; raises RuleEvaluationError."""
        total = weighted = 0.0
        for condition in rule.conditions:
            try:
                met = self.condition_met(condition, ctx)
            except Exception as exc:
                raise RuleEvaluationError(rule.id, exc) from exc
            total += condition.weight
            weighted += condition.weight * (1.0 if met else 0.0)
        return weighted / total if total else 0.0

    # ── Evaluation ────────────────────────────────────────────────────────────

    def _try_trigger(self, rule_id: str, now: datetime) -> bool:
        """Atomically check the cooldown and mark the rule triggered."""
        try:
            lock = self._rule_lock(rule_id)
        except RuleNotFoundError:
            return False
        with lock:
            with self._lock:
                rule = self._rules.get(rule_id)
                if rule is None or not rule.enabled or rule.in_cooldown(now):
                    return False
                rule.last_triggered_at = now
        return True

    def evaluate(self, ctx: RuleContext) -> list[Alert]:
        """Evaluate every rule against ``ctx``; returns alerts recorded."""
        alerts = []
        for rule in self.list_rules():
            if not rule.enabled or rule.in_cooldown(self.clock()):
                continue
            try:
                score = self.score(rule, ctx)
            except RuleEvaluationError as err:
                logger.warning("%s; skipping rule for %s", err, ctx.subject)
                self._report(err, ctx)
                continue
            if score <= self.config.rule_fire_threshold:
                continue
            if not self._try_trigger(rule.id, self.clock()):
                continue
            alert = self._fire(rule, score, ctx)
            if alert is not None:
                alerts.append(alert)
        return alerts

    def _build_alert(self, rule: AlertRule, score: float, ctx: RuleContext) -> Alert:
        findings = ctx.findings
        severity = rule.severity or ctx.max_severity or Severity.MEDIUM
        for action in rule.actions:
            level = action.parameters.get("level")
            if action.type == ActionTypeEnum.ESCALATE and level in {s.value for s in Severity}:
                severity = Severity.max(severity, Severity(level))

        metadata: dict[str, Any] = {
            "rule_id": rule.id,
            "rule_score": round(score, 3),
            "priority": rule.priority,
        }
        if ctx.point is not None:
            metadata.update({
                "vessel_id": ctx.point.vessel_id,
                "vessel_type": ctx.point.vessel_type,
                "anomaly_score": round(ctx.anomaly_score, 1),
                "pattern_ids": [p.id for p in findings],
                "pattern_kinds": sorted({p.kind.value for p in findings}),
            })
        if ctx.cluster is not None:
            metadata.update({
                "cluster_id": ctx.cluster.id,
                "cluster_kind": ctx.cluster.cluster_kind.value,
                "vessel_ids": list(ctx.cluster.vessel_ids),
            })

        if findings:
            description = "; ".join(p.description for p in findings if p.description)
        elif ctx.cluster is not None:
            description = ", ".join(ctx.cluster.characteristics)
        else:
            description = rule.description

        return Alert(
            kind=RULE_ALERT_KIND,
            severity=severity,
            title=f"{rule.name or rule.id}: {ctx.subject}",
            description=description or rule.description,
            location=ctx.location,
            timestamp=ctx.now,
            source=AlertSourceEnum.RULE_ENGINE,
            metadata=metadata,
            dedup_key=f"{rule.id}:{ctx.subject}",
        )

    def _fire(self, rule: AlertRule, score: float, ctx: RuleContext) -> Optional[Alert]:
        alert, created = self.store.record(self._build_alert(rule, score, ctx))
        logger.info(
            "Rule %s fired for %s (score %.2f) → alert %s%s",
            rule.id, ctx.subject, score, alert.id, "" if created else " (merged)",
        )
        if not created:
            return alert
        for action in rule.actions:
            try:
                alert = self._run_action(action, alert, rule, ctx) or alert
            except Exception as exc:
                err = RuleEvaluationError(rule.id, exc)
                logger.error("Action %s of %s failed: %s", action.type.value, rule.id, exc, exc_info=True)
                self._report(err, ctx)
        return alert

    def _report(self, err: PipelineError, ctx: RuleContext) -> None:
        ctx.errors.append(err)
        if self.on_error is not None:
            self.on_error(err)

    def _run_action(self, action: RuleAction, alert: Alert, rule: AlertRule, ctx: RuleContext) -> Optional[Alert]:
        params = action.parameters
        if action.type == ActionTypeEnum.ESCALATE:
            if alert.status == AlertStatusEnum.NEW:
                try:
                    return self.store.transition(alert.id, AlertStatusEnum.ESCALATED, reason=f"rule {rule.id}")
                except TransitionError as err:
                    logger.debug("Escalation of %s skipped: %s", alert.id, err)
            return None
        if action.type == ActionTypeEnum.NOTIFY:
            self.bus.publish("notifications", {
                "alert_id": alert.id,
                "rule_id": rule.id,
                "severity": alert.severity.value,
                "title": alert.title,
                "channels": params.get("channels", params.get("notify", [])),
            })
            return None
        if action.type == ActionTypeEnum.AUTO_INVESTIGATE:
            return self.store.annotate(alert.id, "investigation", {
                **params,
                "requested_at": ctx.now.isoformat(),
                "rule_id": rule.id,
            })
        if action.type == ActionTypeEnum.BLOCK_VESSEL:
            return self.store.annotate(alert.id, "block_request", {
                **params,
                "vessel_id": ctx.vessel_id,
                "requested_at": ctx.now.isoformat(),
            })
        raise ValueError(f"unsupported action {action.type!r}")
