"""Speed anomaly detection.

Compares reported speed over ground to the expected cruising speed for the
vessel type:

  deviation = |speed − expected| / expected

  deviation > 0.5   → medium
  deviation > high  → high      (configurable, default 0.75)
  deviation > 1.0   → critical

confidence = min(0.95, 0.6 + deviation)

The high band starts at 0.75 rather than 0.8 so that a cargo vessel at 25 kn
against its expected 14 kn (deviation 0.786) is reported as high. Raise
``speed.high_deviation`` in pipeline.yaml to 0.8 for the stricter band.
"""
from __future__ import annotations

import logging
from typing import Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import SpeedConfig

logger = logging.getLogger(__name__)


def speed_deviation(speed: float, expected: float) -> float:
    """Relative deviation of ``speed`` from ``expected`` (expected > 0)."""
    return abs(speed - expected) / expected


def classify_speed_deviation(deviation: float, config: SpeedConfig) -> Optional[Severity]:
    if deviation <= config.trigger_deviation:
        return None
    if deviation > config.critical_deviation:
        return Severity.CRITICAL
    if deviation > config.high_deviation:
        return Severity.HIGH
    return Severity.MEDIUM


class SpeedDetector(BaseDetector):
    name = "speed"
    kind = PatternKind.SPEED

    def __init__(self, config: SpeedConfig | None = None):
        self.config = config or SpeedConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        expected = self.config.expected_for(point.vessel_type)
        deviation = speed_deviation(point.speed, expected)
        severity = classify_speed_deviation(deviation, self.config)
        if severity is None:
            return None
        confidence = min(self.config.max_confidence, self.config.base_confidence + deviation)
        return self._pattern(
            point,
            severity,
            confidence,
            f"Speed anomaly: {point.speed:.1f} kn (expected {expected:.0f} kn for {point.vessel_type})",
            {
                "speed_kn": point.speed,
                "expected_kn": expected,
                "deviation": round(deviation, 3),
                "vessel_type": point.vessel_type,
            },
        )
