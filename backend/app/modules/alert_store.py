"""Alert lifecycle store.

Owns alert identity, deduplication, status transitions and bounded history.

Lock order is dedup → alert → store. The store lock only guards the index
(insertion-ordered dict, dedup map) and is never held while waiting on an
alert lock, so transitions on different alerts never contend beyond the
brief index update.

Status state machine:

    new ──────────► acknowledged ──► investigating ──► escalated
     │                   │                 │               │
     ├──► escalated      │                 │               │
     └───────────────────┴─────────────────┴───────────────┴──► resolved

Nothing leaves ``resolved``; a transition to the current status is invalid.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.errors import AlertNotFoundError, TransitionError
from app.models.alert import Alert, StatusChange
from app.models.base import AlertStatusEnum, Severity

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AlertStatusEnum, frozenset[AlertStatusEnum]] = {
    AlertStatusEnum.NEW: frozenset({
        AlertStatusEnum.ACKNOWLEDGED, AlertStatusEnum.ESCALATED, AlertStatusEnum.RESOLVED,
    }),
    AlertStatusEnum.ACKNOWLEDGED: frozenset({AlertStatusEnum.INVESTIGATING, AlertStatusEnum.RESOLVED}),
    AlertStatusEnum.INVESTIGATING: frozenset({AlertStatusEnum.ESCALATED, AlertStatusEnum.RESOLVED}),
    AlertStatusEnum.ESCALATED: frozenset({AlertStatusEnum.RESOLVED}),
    AlertStatusEnum.RESOLVED: frozenset(),
}


def can_transition(current: AlertStatusEnum, requested: AlertStatusEnum) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


@dataclass
class AlertFilter:
    severity: Optional[Severity] = None
    kind: Optional[str] = None
    status: Optional[AlertStatusEnum] = None
    vessel_id: Optional[str] = None
    search: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, alert: Alert) -> bool:
        if self.severity is not None and alert.severity != self.severity:
            return False
        if self.kind is not None and alert.kind != self.kind:
            return False
        if self.status is not None and alert.status != self.status:
            return False
        if self.vessel_id is not None and alert.vessel_id != self.vessel_id:
            return False
        if self.since is not None and alert.timestamp < self.since:
            return False
        if self.until is not None and alert.timestamp > self.until:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = [alert.title, alert.description, alert.vessel_id or ""]
            if alert.location is not None and alert.location.name:
                haystack.append(alert.location.name)
            if not any(needle in text.lower() for text in haystack):
                return False
        return True


def rank_alerts(alerts: list[Alert]) -> list[Alert]:
    """Highest severity first, most recent first within a severity."""
    return sorted(
        alerts,
        key=lambda a: (a.severity.rank, a.last_seen_at or a.timestamp),
        reverse=True,
    )


class AlertStore:
    def __init__(self, capacity: int = 1000, on_evict: Optional[Callable[[Alert], None]] = None):
        self.capacity = capacity
        self.on_evict = on_evict
        self._alerts: OrderedDict[str, Alert] = OrderedDict()
        self._by_dedup: dict[str, str] = {}
        self._alert_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._dedup_lock = threading.Lock()
        self._seq = itertools.count(1)

    # ── Creation ──────────────────────────────────────────────────────────────

    def create(self, alert: Alert) -> Alert:
        """Store ``alert`` under a fresh id and return a copy."""
        stored = alert.model_copy(update={
            "status": AlertStatusEnum.NEW,
            "occurrences": max(1, alert.occurrences),
            "last_seen_at": alert.last_seen_at or alert.timestamp,
            "status_history": [StatusChange(status=AlertStatusEnum.NEW, at=alert.timestamp)],
            "metadata": dict(alert.metadata),
        })
        evicted: list[Alert] = []
        with self._lock:
            stored.id = f"ALR-{next(self._seq):06d}"
            self._alerts[stored.id] = stored
            self._alert_locks[stored.id] = threading.Lock()
            if stored.dedup_key:
                self._by_dedup[stored.dedup_key] = stored.id
            while len(self._alerts) > self.capacity:
                old_id, old = self._alerts.popitem(last=False)
                self._alert_locks.pop(old_id, None)
                if old.dedup_key and self._by_dedup.get(old.dedup_key) == old_id:
                    del self._by_dedup[old.dedup_key]
                evicted.append(old)
            result = stored.model_copy(deep=True)

        for old in evicted:
            logger.debug("Evicted alert %s (%s) at capacity %d", old.id, old.kind, self.capacity)
            if self.on_evict is not None:
                self.on_evict(old)
        return result

    def record(self, alert: Alert) -> tuple[Alert, bool]:
        """Create ``alert`` or merge it into the open alert with the same dedup key.

        Returns (stored alert copy, created). A merge increments occurrences,
        moves last_seen_at forward and raises severity to the higher of the two.
        """
        if not alert.dedup_key:
            return self.create(alert), True

        with self._dedup_lock:
            with self._lock:
                existing_id = self._by_dedup.get(alert.dedup_key)
                lock = self._alert_locks.get(existing_id) if existing_id else None
            if lock is not None:
                with lock:
                    with self._lock:
                        current = self._alerts.get(existing_id)
                        if current is not None and current.is_open:
                            last_seen = max(current.last_seen_at or current.timestamp, alert.timestamp)
                            merged = current.model_copy(update={
                                "occurrences": current.occurrences + 1,
                                "last_seen_at": last_seen,
                                "severity": Severity.max(current.severity, alert.severity),
                                "metadata": {**current.metadata, **alert.metadata},
                            })
                            self._alerts[existing_id] = merged
                            return merged.model_copy(deep=True), False
            return self.create(alert), True

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            return alert.model_copy(deep=True)

    def __contains__(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._alerts

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

    def snapshot(self) -> list[Alert]:
        """Insertion-ordered copy of every retained alert."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._alerts.values()]

    def list_alerts(self, alert_filter: AlertFilter | None = None) -> list[Alert]:
        alert_filter = alert_filter or AlertFilter()
        ranked = rank_alerts([a for a in self.snapshot() if alert_filter.matches(a)])
        if alert_filter.limit is not None:
            ranked = ranked[: alert_filter.limit]
        return ranked

    def recent(self, since: datetime) -> list[Alert]:
        return [a for a in self.snapshot() if (a.last_seen_at or a.timestamp) >= since]

    # ── Mutation ──────────────────────────────────────────────────────────────

    def _lock_for(self, alert_id: str) -> threading.Lock:
        with self._lock:
            lock = self._alert_locks.get(alert_id)
        if lock is None:
            raise AlertNotFoundError(alert_id)
        return lock

    def transition(
        self,
        alert_id: str,
        status: AlertStatusEnum | str,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> Alert:
        """Move an alert to ``status``; raises TransitionError if not allowed."""
        requested = AlertStatusEnum(status)
        with self._lock_for(alert_id):
            with self._lock:
                current = self._alerts.get(alert_id)
                if current is None:
                    raise AlertNotFoundError(alert_id)
                if not can_transition(current.status, requested):
                    raise TransitionError(alert_id, current.status.value, requested.value)
                change = StatusChange(status=requested, at=at or datetime.now(timezone.utc), reason=reason)
                updated = current.model_copy(update={
                    "status": requested,
                    "status_history": [*current.status_history, change],
                })
                self._alerts[alert_id] = updated
                logger.info("Alert %s: %s -> %s", alert_id, current.status.value, requested.value)
                return updated.model_copy(deep=True)

    def annotate(self, alert_id: str, key: str, value: Any) -> Alert:
        """Set ``metadata[key]`` on an alert."""
        with self._lock_for(alert_id):
            with self._lock:
                current = self._alerts.get(alert_id)
                if current is None:
                    raise AlertNotFoundError(alert_id)
                updated = current.model_copy(update={"metadata": {**current.metadata, key: value}})
                self._alerts[alert_id] = updated
                return updated.model_copy(deep=True)
