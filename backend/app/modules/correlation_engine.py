"""Alert correlation.

After each newly created alert, every stored alert whose timestamp lies
within ±1 h of it and whose location is within 50 km (haversine) is grouped
with it. Three or more members form a Correlation:

    confidence = min(0.95, 0.2 × members)

A new group that covers an existing correlation (existing members ⊆ group)
replaces it and keeps its id, so a growing incident stays one correlation.
At confidence ≥ 0.8 (four or more alerts) members still in ``new`` are
escalated.

Correlations are pruned once their oldest member is older than the retention
window or a member has been evicted from the alert store.
"""
from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.errors import AlertNotFoundError, TransitionError
from app.models.alert import Alert, Correlation
from app.models.base import AlertStatusEnum, Severity
from app.models.telemetry import GeoPoint
from app.modules.alert_store import AlertStore
from app.modules.pipeline_config import AlertingConfig
from app.utils.geo import haversine_km

logger = logging.getLogger(__name__)


def correlation_confidence(members: int) -> float:
    return min(0.95, round(0.2 * members, 2))


def _recommended_action(confidence: float, severity: Severity) -> str:
    if confidence >= 0.8 or severity == Severity.CRITICAL:
        return "Coordinated activity likely: dispatch an asset and open a joint investigation"
    if severity == Severity.HIGH:
        return "Review the grouped alerts together and raise tracking frequency in the area"
    return "Monitor the area for further activity"


class CorrelationEngine:
    def __init__(
        self,
        store: AlertStore,
        config: AlertingConfig | None = None,
        retention: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.config = config or AlertingConfig()
        self.retention = retention
        self._correlations: dict[str, Correlation] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    def list_correlations(self) -> list[Correlation]:
        with self._lock:
            return sorted(self._correlations.values(), key=lambda c: c.created_at, reverse=True)

    def _group_for(self, alert: Alert) -> list[Alert]:
        if alert.location is None:
            return []
        window = timedelta(minutes=self.config.correlation_window_minutes)
        group = []
        for other in self.store.snapshot():
            if other.location is None:
                continue
            if abs(other.timestamp - alert.timestamp) > window:
                continue
            dist = haversine_km(alert.location.lat, alert.location.lng, other.location.lat, other.location.lng)
            if dist <= self.config.correlation_radius_km:
                group.append(other)
        if not any(a.id == alert.id for a in group):
            group.append(alert)
        return group

    def on_new_alert(self, alert: Alert) -> Optional[Correlation]:
        """Correlate a newly created alert; returns the emitted correlation if any."""
        group = self._group_for(alert)
        if len(group) < self.config.correlation_min_alerts:
            return None

        member_ids = sorted(a.id for a in group)
        member_set = set(member_ids)
        confidence = correlation_confidence(len(group))
        severity = Severity.max(*(a.severity for a in group))
        vessels = sorted({a.vessel_id for a in group if a.vessel_id})

        with self._lock:
            replaced = [c for c in self._correlations.values() if set(c.alert_ids) <= member_set]
            corr_id = replaced[0].id if replaced else f"COR-{next(self._seq):06d}"
            for old in replaced[1:]:
                del self._correlations[old.id]
            correlation = Correlation(
                id=corr_id,
                alert_ids=member_ids,
                confidence=confidence,
                summary=(
                    f"{len(group)} alerts within {self.config.correlation_radius_km:g} km and "
                    f"{self.config.correlation_window_minutes:g} min"
                    + (f" involving {', '.join(vessels)}" if vessels else "")
                ),
                recommended_action=_recommended_action(confidence, severity),
                location=GeoPoint(lat=alert.location.lat, lng=alert.location.lng, name=alert.location.name),
                created_at=alert.timestamp,
            )
            self._correlations[corr_id] = correlation

        logger.info("Correlation %s: %d alerts, confidence %.2f", corr_id, len(group), confidence)
        if confidence >= self.config.critical_correlation_confidence:
            self._escalate_members(correlation, group)
        return correlation

    def _escalate_members(self, correlation: Correlation, group: list[Alert]) -> None:
        for member in group:
            if member.status != AlertStatusEnum.NEW:
                continue
            try:
                self.store.transition(member.id, AlertStatusEnum.ESCALATED, reason=f"correlation {correlation.id}")
            except (TransitionError, AlertNotFoundError) as err:
                # status changed or alert evicted since the snapshot
                logger.debug("Correlation escalation skipped: %s", err)

    def prune(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.retention
        alerts = {a.id: a for a in self.store.snapshot()}
        removed = 0
        with self._lock:
            for corr_id, corr in list(self._correlations.items()):
                members = [alerts.get(aid) for aid in corr.alert_ids]
                if any(m is None for m in members) or min(m.timestamp for m in members) < cutoff:
                    del self._correlations[corr_id]
                    removed += 1
        if removed:
            logger.debug("Pruned %d correlations", removed)
        return removed
