"""Off-hours activity: high speed between 23:00 and 03:00 UTC."""
from __future__ import annotations

from typing import Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import TemporalConfig


def fractional_hour(point: TelemetryPoint) -> float:
    ts = point.timestamp
    return ts.hour + ts.minute / 60.0 + ts.second / 3600.0


class TemporalDetector(BaseDetector):
    name = "temporal"
    kind = PatternKind.TEMPORAL

    def __init__(self, config: TemporalConfig | None = None):
        self.config = config or TemporalConfig()

    def in_night_window(self, hour: float) -> bool:
        return hour < self.config.night_end_hour or hour > self.config.night_start_hour

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        hour = fractional_hour(point)
        if not (self.in_night_window(hour) and point.speed > self.config.min_speed):
            return None
        return self._pattern(
            point,
            Severity.MEDIUM,
            self.config.confidence,
            f"Unusual activity during off-hours ({point.timestamp:%H:%M} UTC at {point.speed:.1f} kn)",
            {"hour_utc": round(hour, 2), "speed_kn": point.speed},
        )
