"""In-process publish/subscribe for pipeline outputs.

Topics: alerts, insights, metrics, correlations, notifications.

Publishing iterates a snapshot of the subscriber list, so a callback may
unsubscribe itself (or others) mid-delivery. Each callback is isolated: a
raising subscriber is logged as a DistributionError and reported to the
error hook, and the remaining subscribers still receive the event. The last
value published on each topic is retained and replayed to new subscribers.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from app.errors import DistributionError

logger = logging.getLogger(__name__)

TOPICS = ("alerts", "insights", "metrics", "correlations", "notifications")

_MISSING = object()


class EventBus:
    def __init__(self, on_error: Optional[Callable[[DistributionError], None]] = None):
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {t: [] for t in TOPICS}
        self._latest: dict[str, Any] = {}
        self._lock = threading.Lock()
        self.on_error = on_error

    def _check_topic(self, topic: str) -> None:
        if topic not in self._subscribers:
            raise ValueError(f"Unknown topic {topic!r}; expected one of {', '.join(TOPICS)}")

    def subscribe(
        self,
        topic: str,
        callback: Callable[[Any], None],
        replay_latest: bool = True,
    ) -> Callable[[], None]:
        """Register ``callback`` on ``topic``; returns an unsubscribe function."""
        self._check_topic(topic)
        with self._lock:
            self._subscribers[topic].append(callback)
            latest = self._latest.get(topic, _MISSING)

        if replay_latest and latest is not _MISSING:
            self._deliver(topic, callback, latest)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers[topic].remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def publish(self, topic: str, payload: Any) -> list[DistributionError]:
        self._check_topic(topic)
        with self._lock:
            self._latest[topic] = payload
            subscribers = list(self._subscribers[topic])

        errors = []
        for callback in subscribers:
            err = self._deliver(topic, callback, payload)
            if err is not None:
                errors.append(err)
        return errors

    def _deliver(self, topic: str, callback: Callable[[Any], None], payload: Any) -> DistributionError | None:
        try:
            callback(payload)
        except Exception as exc:
            err = DistributionError(topic, exc)
            logger.error("%s", err, exc_info=True)
            if self.on_error is not None:
                self.on_error(err)
            return err
        return None

    def latest(self, topic: str) -> Any:
        self._check_topic(topic)
        with self._lock:
            return self._latest.get(topic)

    def subscriber_count(self, topic: str) -> int:
        self._check_topic(topic)
        with self._lock:
            return len(self._subscribers[topic])
