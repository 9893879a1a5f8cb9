"""Bounded per-vessel history of telemetry and detector findings.

Points are kept in timestamp order even when the stream delivers them out of
order; only the most recent ``max_points`` survive. Patterns are kept most
recent first, capped at ``max_patterns``. The latest point of every vessel is
also indexed so detectors that look across vessels (rendezvous) can read a
snapshot without touching another vessel's history.

``evict_idle`` drops every vessel whose newest point (or, for vessels only
ever rejected, newest pattern) is older than ``idle_after`` before the newest
telemetry timestamp seen.
"""
from __future__ import annotations

import bisect
import threading
from collections import deque
import logging
from datetime import datetime, timedelta
from typing import Iterable

from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint

logger = logging.getLogger(__name__)


class VesselHistory:
    def __init__(self, max_points: int = 50, max_patterns: int = 100, idle_after: timedelta = timedelta(hours=48)):
        self.max_points = max_points
        self.max_patterns = max_patterns
        self.idle_after = idle_after
        self._newest: datetime | None = None
        self._points: dict[str, list[TelemetryPoint]] = {}
        self._patterns: dict[str, deque[Pattern]] = {}
        self._latest: dict[str, TelemetryPoint] = {}
        self._lock = threading.Lock()

    # ── Points ────────────────────────────────────────────────────────────────

    def points(self, vessel_id: str) -> list[TelemetryPoint]:
        """Timestamp-ordered copy of the vessel's retained points."""
        with self._lock:
            return list(self._points.get(vessel_id, ()))

    def add_point(self, point: TelemetryPoint) -> None:
        with self._lock:
            track = self._points.setdefault(point.vessel_id, [])
            keys = [p.timestamp for p in track]
            idx = bisect.bisect_right(keys, point.timestamp)
            track.insert(idx, point)
            if len(track) > self.max_points:
                del track[: len(track) - self.max_points]
            latest = self._latest.get(point.vessel_id)
            if latest is None or point.timestamp >= latest.timestamp:
                self._latest[point.vessel_id] = point
            if self._newest is None or point.timestamp > self._newest:
                self._newest = point.timestamp

    def latest_points(self, exclude: str | None = None) -> list[TelemetryPoint]:
        """Snapshot of every vessel's most recent point."""
        with self._lock:
            return [p for vid, p in self._latest.items() if vid != exclude]

    # ── Patterns ──────────────────────────────────────────────────────────────

    def add_patterns(self, patterns: Iterable[Pattern]) -> None:
        with self._lock:
            for pattern in patterns:
                recent = self._patterns.setdefault(
                    pattern.vessel_id, deque(maxlen=self.max_patterns)
                )
                recent.appendleft(pattern)

    def patterns(self, vessel_id: str, since: datetime | None = None) -> list[Pattern]:
        """Most-recent-first copy of the vessel's retained patterns."""
        with self._lock:
            recent = list(self._patterns.get(vessel_id, ()))
        if since is not None:
            recent = [p for p in recent if p.detected_at >= since]
        return recent

    # ── Eviction ──────────────────────────────────────────────────────────────

    def evict_idle(self, now: datetime | None = None) -> int:
        """Forget vessels idle for longer than ``idle_after``; returns how many."""
        with self._lock:
            now = now or self._newest
            if now is None:
                return 0
            cutoff = now - self.idle_after
            idle = {vid for vid, p in self._latest.items() if p.timestamp < cutoff}
            idle.update(
                vid for vid, recent in self._patterns.items()
                if vid not in self._latest and (not recent or recent[0].detected_at < cutoff)
            )
            for vid in idle:
                self._points.pop(vid, None)
                self._patterns.pop(vid, None)
                self._latest.pop(vid, None)
        if idle:
            logger.debug("Evicted %d idle vessels from history", len(idle))
        return len(idle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._latest)
