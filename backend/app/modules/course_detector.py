"""Route deviation (course form).

Counts course changes sharper than 90° between consecutive samples inside the
trailing window. Three or more → medium severity, confidence 0.7.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import RouteDeviationConfig
from app.utils.geo import heading_diff


class RouteDeviationDetector(BaseDetector):
    name = "route_deviation"
    kind = PatternKind.ROUTE_DEVIATION

    def __init__(self, config: RouteDeviationConfig | None = None):
        self.config = config or RouteDeviationConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        window_start = point.timestamp - timedelta(hours=self.config.window_hours)
        track = [p for p in context.track(point) if window_start <= p.timestamp <= point.timestamp]
        sharp = [
            heading_diff(a.course, b.course)
            for a, b in zip(track, track[1:])
            if heading_diff(a.course, b.course) > self.config.change_degrees
        ]
        if len(sharp) < self.config.min_changes:
            return None
        return self._pattern(
            point,
            Severity.MEDIUM,
            self.config.confidence,
            f"{len(sharp)} sharp course changes in {self.config.window_hours:g} h",
            {"course_changes": len(sharp), "max_change_deg": round(max(sharp), 1)},
        )
