"""AIS gap detection.

Finds the largest interval between consecutive transmissions of one vessel
inside the observation window (default 48 h, ending at the point under
evaluation), the point itself included.

  gap > 4 h   → medium
  gap > 12 h  → high
  gap > 24 h  → critical

confidence = min(0.95, 0.6 + gap / 48 h)
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Sequence

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import AISGapConfig

logger = logging.getLogger(__name__)


def largest_gap(track: Sequence[TelemetryPoint]) -> tuple[float, TelemetryPoint | None, TelemetryPoint | None]:
    """Return (gap_hours, point_before, point_after) for the widest gap.

    ``track`` must be timestamp-ordered. (0.0, None, None) if fewer than two points.
    """
    best = 0.0
    before = after = None
    for prev, curr in zip(track, track[1:]):
        hours = (curr.timestamp - prev.timestamp).total_seconds() / 3600.0
        if hours > best:
            best, before, after = hours, prev, curr
    return best, before, after


class AISGapDetector(BaseDetector):
    name = "ais_gap"
    kind = PatternKind.AIS_GAP

    def __init__(self, config: AISGapConfig | None = None):
        self.config = config or AISGapConfig()

    def _severity(self, gap_hours: float) -> Severity:
        if gap_hours > self.config.critical_hours:
            return Severity.CRITICAL
        if gap_hours > self.config.high_hours:
            return Severity.HIGH
        return Severity.MEDIUM

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        window_start = point.timestamp - timedelta(hours=self.config.window_hours)
        track = [p for p in context.track(point) if window_start <= p.timestamp <= point.timestamp]
        gap_hours, before, after = largest_gap(track)
        if gap_hours <= self.config.trigger_hours:
            return None

        confidence = min(
            self.config.max_confidence,
            self.config.base_confidence + gap_hours / self.config.confidence_scale_hours,
        )
        return self._pattern(
            point,
            self._severity(gap_hours),
            confidence,
            f"AIS signal gap of {gap_hours:.1f} hours detected",
            {
                "gap_hours": round(gap_hours, 2),
                "gap_start": before.timestamp.isoformat(),
                "gap_end": after.timestamp.isoformat(),
                "gap_start_position": {"lat": before.lat, "lng": before.lng},
            },
        )
