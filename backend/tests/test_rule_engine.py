"""Tests for RuleEngine: CRUD, condition types, cooldowns, actions, failure isolation."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.errors import DuplicateRuleError, RuleEvaluationError, RuleNotFoundError
from app.models.alert import AlertRule
from app.models.base import (
    AlertSourceEnum,
    AlertStatusEnum,
    ClusterKind,
    OperatorEnum,
    PatternKind,
    PredictionKind,
    RiskLevel,
    Severity,
)
from app.models.pattern import Cluster, Pattern, Prediction
from app.modules.alert_store import AlertStore
from app.modules.event_bus import EventBus
from app.modules.pipeline_config import GeospatialConfig
from app.modules.rule_engine import RULE_ALERT_KIND, RuleContext, RuleEngine, compare

from factories import BASE_TIME, make_point


def _rule(rule_id="r1", conditions=None, **extra):
    data = {
        "id": rule_id,
        "name": f"Rule {rule_id}",
        "conditions": conditions or [{"type": "anomaly_score", "operator": "gt", "value": 85}],
    }
    data.update(extra)
    return AlertRule.model_validate(data)


def _pattern(kind=PatternKind.SPEED, severity=Severity.CRITICAL, confidence=0.95, vessel_id="V-1"):
    return Pattern(vessel_id=vessel_id, kind=kind, severity=severity, confidence=confidence,
                   detected_at=BASE_TIME, description=f"{kind.value} finding")


def _ctx(patterns=(), point=None, now=BASE_TIME, **kw):
    point = point or make_point(timestamp=now)
    return RuleContext(now=now, point=point, patterns=list(patterns), **kw)


@pytest.fixture
def store():
    return AlertStore()


@pytest.fixture
def bus():
    return EventBus()


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, bus, clock):
    return RuleEngine(store, bus, zones=GeospatialConfig().zones, clock=clock)


# ── CRUD ──────────────────────────────────────────────────────────────────────

class TestRuleCrud:
    def test_rules_listed_by_priority(self, engine):
        engine.add_rule(_rule("low", priority=5))
        engine.add_rule(_rule("urgent", priority=1))
        assert [r.id for r in engine.list_rules()] == ["urgent", "low"]

    def test_add_from_dict(self, engine):
        rule = engine.add_rule({"id": "d", "conditions": [{"type": "severity", "operator": "gte", "value": "high"}],
                                "cooldown_minutes": 10})
        assert rule.cooldown_period == timedelta(minutes=10)

    def test_duplicate_rejected(self, engine):
        engine.add_rule(_rule())
        with pytest.raises(DuplicateRuleError):
            engine.add_rule(_rule())

    def test_update_keeps_id(self, engine):
        engine.add_rule(_rule())
        updated = engine.update_rule("r1", {"id": "other", "priority": 2, "enabled": False})
        assert updated.id == "r1"
        assert updated.priority == 2
        assert engine.get_rule("r1").enabled is False

    def test_update_cooldown_minutes(self, engine):
        engine.add_rule(_rule(cooldown_minutes=5))
        assert engine.update_rule("r1", {"cooldown_minutes": 30}).cooldown_period == timedelta(minutes=30)

    def test_remove(self, engine):
        engine.add_rule(_rule())
        engine.remove_rule("r1")
        with pytest.raises(RuleNotFoundError):
            engine.get_rule("r1")
        with pytest.raises(RuleNotFoundError):
            engine.remove_rule("r1")

    def test_returned_rules_are_copies(self, engine):
        engine.add_rule(_rule())
        engine.get_rule("r1").priority = 99
        assert engine.get_rule("r1").priority == 5


# ── Conditions ────────────────────────────────────────────────────────────────

class TestConditions:
    def test_compare(self):
        assert compare(5, OperatorEnum.GT, 4)
        assert compare(4, OperatorEnum.LTE, 4)
        with pytest.raises(ValueError):
            compare(1, OperatorEnum.WITHIN, 2)

    def test_anomaly_score_uses_highest_confidence(self, engine):
        ctx = _ctx([_pattern(confidence=0.5), _pattern(confidence=0.9)])
        assert ctx.anomaly_score == pytest.approx(90.0)

    def test_validation_patterns_are_not_findings(self):
        ctx = _ctx([_pattern(kind=PatternKind.VALIDATION)])
        assert ctx.findings == []
        assert ctx.max_severity is None

    def test_pattern_match(self, engine):
        rule = _rule(conditions=[{"type": "pattern_match", "operator": "contains", "value": ["ais_gap", "loitering"]}])
        assert engine.score(rule, _ctx([_pattern(kind=PatternKind.LOITERING)])) == 1.0
        assert engine.score(rule, _ctx([_pattern()])) == 0.0

    def test_severity(self, engine):
        rule = _rule(conditions=[{"type": "severity", "operator": "gte", "value": "high"}])
        assert engine.score(rule, _ctx([_pattern(severity=Severity.HIGH)])) == 1.0
        assert engine.score(rule, _ctx([_pattern(severity=Severity.MEDIUM)])) == 0.0

    def test_location_in_configured_zone(self, engine):
        rule = _rule(conditions=[{"type": "location", "operator": "within", "value": {"buffer_km": 1.0}}])
        assert engine.score(rule, _ctx(point=make_point(lat=60.1, lng=30.1))) == 1.0
        assert engine.score(rule, _ctx()) == 0.0

    def test_location_explicit_circle(self, engine):
        rule = _rule(conditions=[{"type": "location", "operator": "within",
                                  "value": {"lat": 35.0, "lng": 20.0, "radius_km": 5}}])
        assert engine.score(rule, _ctx()) == 1.0

    def test_vessel_type(self, engine):
        rule = _rule(conditions=[{"type": "vessel_type", "operator": "contains", "value": ["Tanker", "cargo"]}])
        assert engine.score(rule, _ctx()) == 1.0

    def test_time_range_wraps_midnight(self, engine):
        rule = _rule(conditions=[{"type": "time_range", "operator": "within",
                                  "value": {"start_hour": 22, "end_hour": 4}}])
        night = BASE_TIME.replace(hour=1)
        assert engine.score(rule, _ctx(point=make_point(timestamp=night), now=night)) == 1.0
        assert engine.score(rule, _ctx()) == 0.0

    def test_prediction_threshold(self, engine):
        prediction = Prediction(vessel_id="V-1", kind=PredictionKind.RISK_ASSESSMENT,
                                payload={"risk_score": 85.0}, confidence=0.79,
                                time_horizon=timedelta(hours=24), generated_at=BASE_TIME)
        rule = _rule(conditions=[{"type": "prediction", "operator": "gte",
                                  "value": {"kind": "risk_assessment", "field": "risk_score", "threshold": 80}}])
        assert engine.score(rule, _ctx(predictions=[prediction])) == 1.0

    def test_cluster_risk(self, engine):
        cluster = Cluster(id="behavior_slow", vessel_ids=["A", "B", "C"], cluster_kind=ClusterKind.BEHAVIOR_PATTERN,
                          risk_level=RiskLevel.HIGH, generated_at=BASE_TIME)
        rule = _rule(conditions=[{"type": "cluster_risk", "operator": "gte", "value": "high"}])
        assert engine.score(rule, RuleContext(now=BASE_TIME, cluster=cluster)) == 1.0
        assert engine.score(rule, _ctx()) == 0.0

    def test_weighted_average(self, engine):
        rule = _rule(conditions=[
            {"type": "anomaly_score", "operator": "gt", "value": 85, "weight": 0.8},
            {"type": "vessel_type", "operator": "eq", "value": "tanker", "weight": 0.2},
        ])
        assert engine.score(rule, _ctx([_pattern()])) == pytest.approx(0.8)

    def test_bad_condition_raises_rule_evaluation_error(self, engine):
        rule = _rule(conditions=[{"type": "pattern_match", "operator": "contains", "value": "not-a-kind"}])
        with pytest.raises(RuleEvaluationError):
            engine.score(rule, _ctx([_pattern()]))


# ── Evaluation ────────────────────────────────────────────────────────────────

class TestEvaluate:
    def test_rule_fires_and_records_alert(self, engine, store):
        engine.add_rule(_rule(severity="critical"))
        alerts = engine.evaluate(_ctx([_pattern()]))
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.kind == RULE_ALERT_KIND
        assert alert.source == AlertSourceEnum.RULE_ENGINE
        assert alert.severity == Severity.CRITICAL
        assert alert.metadata["vessel_id"] == "V-1"
        assert alert.metadata["rule_id"] == "r1"
        assert alert.dedup_key == "r1:V-1"
        assert len(store) == 1

    def test_score_at_threshold_does_not_fire(self, engine):
        engine.add_rule(_rule(conditions=[
            {"type": "anomaly_score", "operator": "gt", "value": 85, "weight": 0.7},
            {"type": "vessel_type", "operator": "eq", "value": "tanker", "weight": 0.3},
        ]))
        assert engine.evaluate(_ctx([_pattern()])) == []

    def test_disabled_rule_skipped(self, engine):
        engine.add_rule(_rule(enabled=False))
        assert engine.evaluate(_ctx([_pattern()])) == []

    def test_cooldown_blocks_second_fire(self, engine, clock):
        engine.add_rule(_rule(cooldown_minutes=5))
        assert len(engine.evaluate(_ctx([_pattern()]))) == 1
        clock.advance(minutes=3)
        assert engine.evaluate(_ctx([_pattern()])) == []
        clock.advance(minutes=3)
        assert len(engine.evaluate(_ctx([_pattern()]))) == 1

    def test_cooldown_ignores_telemetry_time(self, engine, clock):
        engine.add_rule(_rule(cooldown_minutes=5))
        assert len(engine.evaluate(_ctx([_pattern()]))) == 1
        # a much later event time does not end the cooldown early
        later = BASE_TIME + timedelta(hours=6)
        assert engine.evaluate(_ctx([_pattern()], now=later)) == []

    def test_out_of_order_point_fires_rule_without_cooldown(self, engine):
        engine.add_rule(_rule("zone", conditions=[
            {"type": "pattern_match", "operator": "contains", "value": "geospatial"},
        ]))
        first = _ctx([_pattern(kind=PatternKind.GEOSPATIAL, vessel_id="A")],
                     point=make_point(vessel_id="A", timestamp=BASE_TIME))
        earlier = BASE_TIME - timedelta(minutes=1)
        second = _ctx([_pattern(kind=PatternKind.GEOSPATIAL, vessel_id="B")],
                      point=make_point(vessel_id="B", timestamp=earlier), now=earlier)
        assert len(engine.evaluate(first)) == 1
        assert len(engine.evaluate(second)) == 1

    def test_clock_stepping_back_does_not_extend_cooldown(self, engine, clock):
        engine.add_rule(_rule(cooldown_minutes=5))
        engine.evaluate(_ctx([_pattern()]))
        clock.advance(minutes=-10)
        assert len(engine.evaluate(_ctx([_pattern()]))) == 1

    def test_disabling_active_rule_via_update_stops_it_firing(self, engine, store):
        engine.add_rule(_rule())
        assert len(engine.evaluate(_ctx([_pattern()]))) == 1
        engine.update_rule("r1", {"enabled": False})
        matching = _ctx([_pattern(vessel_id="V-2")], point=make_point(vessel_id="V-2"))
        assert engine.evaluate(matching) == []
        assert len(store) == 1

    def test_repeat_without_cooldown_merges(self, engine, store):
        engine.add_rule(_rule())
        engine.evaluate(_ctx([_pattern()]))
        second = engine.evaluate(_ctx([_pattern()], now=BASE_TIME + timedelta(minutes=1)))
        assert second[0].occurrences == 2
        assert len(store) == 1

    def test_concurrent_contexts_fire_once(self, engine, store):
        engine.add_rule(_rule(cooldown_minutes=5))
        results = []
        barrier = threading.Barrier(8)

        def worker(i):
            barrier.wait()
            point = make_point(vessel_id=f"V-{i}")
            results.extend(engine.evaluate(_ctx([_pattern(vessel_id=f"V-{i}")], point=point)))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 1
        assert len(store) == 1

    def test_failing_rule_skipped_others_run(self, store, bus):
        errors = []
        engine = RuleEngine(store, bus, on_error=errors.append)
        engine.add_rule(_rule("broken", priority=1,
                              conditions=[{"type": "pattern_match", "operator": "gt", "value": "speed"}]))
        engine.add_rule(_rule("ok", priority=2))
        alerts = engine.evaluate(_ctx([_pattern()]))
        assert [a.metadata["rule_id"] for a in alerts] == ["ok"]
        assert len(errors) == 1
        assert errors[0].rule_id == "broken"

    def test_rule_errors_collected_on_context(self, engine):
        engine.add_rule(_rule("broken", conditions=[{"type": "pattern_match", "operator": "gt", "value": "speed"}]))
        ctx = _ctx([_pattern()])
        engine.evaluate(ctx)
        assert [e.rule_id for e in ctx.errors] == ["broken"]

    def test_cluster_context_alert(self, engine):
        cluster = Cluster(id="route_3_2", vessel_ids=["A", "B"], cluster_kind=ClusterKind.ROUTE_SIMILARITY,
                          risk_level=RiskLevel.HIGH, generated_at=BASE_TIME)
        engine.add_rule(_rule(conditions=[{"type": "cluster_risk", "operator": "eq", "value": "high"}]))
        alert = engine.evaluate(RuleContext(now=BASE_TIME, cluster=cluster))[0]
        assert alert.dedup_key == "r1:route_3_2"
        assert alert.metadata["vessel_ids"] == ["A", "B"]
        assert alert.vessel_id is None


# ── Actions ───────────────────────────────────────────────────────────────────

class TestActions:
    def test_escalate_transitions_and_raises_severity(self, engine):
        engine.add_rule(_rule(severity="medium",
                              actions=[{"type": "escalate", "parameters": {"level": "critical"}}]))
        alert = engine.evaluate(_ctx([_pattern()]))[0]
        assert alert.status == AlertStatusEnum.ESCALATED
        assert alert.severity == Severity.CRITICAL

    def test_notify_publishes(self, engine, bus):
        received = []
        bus.subscribe("notifications", received.append)
        engine.add_rule(_rule(actions=[{"type": "notify", "parameters": {"channels": ["dashboard"]}}]))
        alert = engine.evaluate(_ctx([_pattern()]))[0]
        assert received == [{
            "alert_id": alert.id, "rule_id": "r1", "severity": "critical",
            "title": alert.title, "channels": ["dashboard"],
        }]

    def test_investigate_and_block_annotate(self, engine):
        engine.add_rule(_rule(actions=[
            {"type": "auto_investigate", "parameters": {"depth": "enhanced"}},
            {"type": "block_vessel"},
        ]))
        alert = engine.evaluate(_ctx([_pattern()]))[0]
        assert alert.metadata["investigation"]["depth"] == "enhanced"
        assert alert.metadata["block_request"]["vessel_id"] == "V-1"

    def test_actions_only_for_new_alerts(self, engine, bus):
        received = []
        bus.subscribe("notifications", received.append)
        engine.add_rule(_rule(actions=[{"type": "notify"}]))
        engine.evaluate(_ctx([_pattern()]))
        engine.evaluate(_ctx([_pattern()], now=BASE_TIME + timedelta(minutes=1)))
        assert len(received) == 1

    def test_failing_subscriber_does_not_block_next_action(self, engine, bus):
        def explode(payload):
            raise RuntimeError("subscriber down")

        bus.subscribe("notifications", explode)
        engine.add_rule(_rule(actions=[{"type": "notify"}, {"type": "block_vessel"}]))
        alert = engine.evaluate(_ctx([_pattern()]))[0]
        assert "block_request" in alert.metadata
