"""Tests for AlertStore: status machine, dedup merging, eviction, filtering."""
import threading
from datetime import timedelta

import pytest

from app.errors import AlertNotFoundError, TransitionError
from app.models.alert import Alert
from app.models.base import AlertSourceEnum, AlertStatusEnum, Severity
from app.models.telemetry import GeoPoint
from app.modules.alert_store import AlertFilter, AlertStore, can_transition, rank_alerts

from factories import BASE_TIME


def _alert(severity=Severity.HIGH, kind="speed", vessel_id="V-1", ts=BASE_TIME, dedup_key=None, **extra):
    return Alert(
        kind=kind,
        severity=severity,
        title=f"{kind} on {vessel_id}",
        timestamp=ts,
        source=AlertSourceEnum.DETECTOR,
        metadata={"vessel_id": vessel_id},
        dedup_key=dedup_key,
        **extra,
    )


class TestCreate:
    def test_ids_are_sequential(self):
        store = AlertStore()
        assert store.create(_alert()).id == "ALR-000001"
        assert store.create(_alert()).id == "ALR-000002"

    def test_new_alert_starts_new_with_history(self):
        alert = AlertStore().create(_alert(status=AlertStatusEnum.RESOLVED))
        assert alert.status == AlertStatusEnum.NEW
        assert [c.status for c in alert.status_history] == [AlertStatusEnum.NEW]
        assert alert.last_seen_at == BASE_TIME

    def test_reads_are_copies(self):
        store = AlertStore()
        alert = store.create(_alert())
        alert.metadata["vessel_id"] = "tampered"
        assert store.get(alert.id).vessel_id == "V-1"

    def test_unknown_id(self):
        with pytest.raises(AlertNotFoundError):
            AlertStore().get("ALR-999999")

    def test_oldest_evicted_at_capacity(self):
        evicted = []
        store = AlertStore(capacity=2, on_evict=evicted.append)
        first = store.create(_alert())
        store.create(_alert())
        store.create(_alert())
        assert len(store) == 2
        assert first.id not in store
        assert [a.id for a in evicted] == [first.id]


class TestDedup:
    def test_same_key_merges(self):
        store = AlertStore()
        first, created = store.record(_alert(severity=Severity.MEDIUM, dedup_key="V-1:speed"))
        assert created
        later = BASE_TIME + timedelta(minutes=5)
        merged, created = store.record(_alert(severity=Severity.CRITICAL, dedup_key="V-1:speed", ts=later))
        assert not created
        assert merged.id == first.id
        assert merged.occurrences == 2
        assert merged.last_seen_at == later
        assert merged.severity == Severity.CRITICAL
        assert len(store) == 1

    def test_resolved_alert_is_not_reopened(self):
        store = AlertStore()
        first, _ = store.record(_alert(dedup_key="k"))
        store.transition(first.id, AlertStatusEnum.RESOLVED)
        second, created = store.record(_alert(dedup_key="k"))
        assert created
        assert second.id != first.id

    def test_no_key_always_creates(self):
        store = AlertStore()
        store.record(_alert())
        _, created = store.record(_alert())
        assert created
        assert len(store) == 2

    def test_concurrent_records_merge_into_one(self):
        store = AlertStore()
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            store.record(_alert(dedup_key="V-1:speed"))

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        alerts = store.snapshot()
        assert len(alerts) == 1
        assert alerts[0].occurrences == 10


class TestTransitions:
    @pytest.mark.parametrize("current,requested,allowed", [
        (AlertStatusEnum.NEW, AlertStatusEnum.ACKNOWLEDGED, True),
        (AlertStatusEnum.NEW, AlertStatusEnum.ESCALATED, True),
        (AlertStatusEnum.NEW, AlertStatusEnum.INVESTIGATING, False),
        (AlertStatusEnum.ACKNOWLEDGED, AlertStatusEnum.INVESTIGATING, True),
        (AlertStatusEnum.INVESTIGATING, AlertStatusEnum.ESCALATED, True),
        (AlertStatusEnum.ESCALATED, AlertStatusEnum.ACKNOWLEDGED, False),
        (AlertStatusEnum.RESOLVED, AlertStatusEnum.NEW, False),
        (AlertStatusEnum.NEW, AlertStatusEnum.NEW, False),
    ])
    def test_state_machine(self, current, requested, allowed):
        assert can_transition(current, requested) is allowed

    def test_full_lifecycle(self):
        store = AlertStore()
        alert = store.create(_alert())
        for status in ("acknowledged", "investigating", "escalated", "resolved"):
            alert = store.transition(alert.id, status, reason="operator")
        assert alert.status == AlertStatusEnum.RESOLVED
        assert len(alert.status_history) == 5
        assert alert.status_history[-1].reason == "operator"

    def test_invalid_transition_raises_with_current_status(self):
        store = AlertStore()
        alert = store.create(_alert())
        store.transition(alert.id, AlertStatusEnum.RESOLVED)
        with pytest.raises(TransitionError) as exc_info:
            store.transition(alert.id, AlertStatusEnum.ACKNOWLEDGED)
        assert exc_info.value.current_status == "resolved"
        assert store.get(alert.id).status == AlertStatusEnum.RESOLVED

    def test_unknown_status_rejected(self):
        store = AlertStore()
        alert = store.create(_alert())
        with pytest.raises(ValueError):
            store.transition(alert.id, "closed")

    def test_annotate(self):
        store = AlertStore()
        alert = store.create(_alert())
        assert store.annotate(alert.id, "note", "checked").metadata == {"vessel_id": "V-1", "note": "checked"}


class TestQueries:
    def test_ranked_by_severity_then_recency(self):
        medium = _alert(Severity.MEDIUM, ts=BASE_TIME + timedelta(hours=2))
        old_critical = _alert(Severity.CRITICAL, ts=BASE_TIME)
        new_critical = _alert(Severity.CRITICAL, ts=BASE_TIME + timedelta(hours=1))
        ranked = rank_alerts([medium, old_critical, new_critical])
        assert ranked == [new_critical, old_critical, medium]

    def test_filters(self):
        store = AlertStore()
        store.create(_alert(Severity.HIGH, kind="speed", vessel_id="A"))
        store.create(_alert(Severity.LOW, kind="ais_gap", vessel_id="B",
                            location=GeoPoint(lat=1, lng=2, name="Strait of Hormuz")))
        assert [a.vessel_id for a in store.list_alerts(AlertFilter(severity=Severity.LOW))] == ["B"]
        assert [a.vessel_id for a in store.list_alerts(AlertFilter(kind="speed"))] == ["A"]
        assert [a.vessel_id for a in store.list_alerts(AlertFilter(search="hormuz"))] == ["B"]
        assert [a.vessel_id for a in store.list_alerts(AlertFilter(vessel_id="A"))] == ["A"]
        assert len(store.list_alerts(AlertFilter(limit=1))) == 1

    def test_time_window_filter(self):
        store = AlertStore()
        store.create(_alert(ts=BASE_TIME))
        store.create(_alert(ts=BASE_TIME + timedelta(days=2)))
        window = AlertFilter(since=BASE_TIME + timedelta(days=1))
        assert len(store.list_alerts(window)) == 1

    def test_recent(self):
        store = AlertStore()
        store.create(_alert(ts=BASE_TIME))
        store.create(_alert(ts=BASE_TIME + timedelta(hours=3)))
        assert len(store.recent(BASE_TIME + timedelta(hours=1))) == 1
