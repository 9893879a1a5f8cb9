"""Behavioral composite scoring.

score = min(1, 0.4·speed_deviation + 0.3·course_variation + 0.3·(1 − signal_strength))

course_variation is the mean absolute course change between consecutive
samples in the vessel's recent track, normalized to [0, 1] by 180°.
Fires above 0.75; critical above 0.9, otherwise high.
"""
from __future__ import annotations

from typing import Optional, Sequence

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import BehavioralConfig, SpeedConfig
from app.modules.speed_detector import speed_deviation
from app.utils.geo import heading_diff


def course_variation_factor(track: Sequence[TelemetryPoint]) -> float:
    """Mean absolute course change across ``track`` / 180, in [0, 1]."""
    if len(track) < 2:
        return 0.0
    changes = [heading_diff(a.course, b.course) for a, b in zip(track, track[1:])]
    return min(1.0, (sum(changes) / len(changes)) / 180.0)


def behavior_score(
    point: TelemetryPoint,
    track: Sequence[TelemetryPoint],
    config: BehavioralConfig,
    speed_config: SpeedConfig,
) -> tuple[float, dict[str, float]]:
    expected = speed_config.expected_for(point.vessel_type)
    components = {
        "speed_deviation": speed_deviation(point.speed, expected),
        "course_variation": course_variation_factor(track),
        "signal_loss": 1.0 - point.signal_strength,
    }
    score = (
        config.speed_weight * components["speed_deviation"]
        + config.course_weight * components["course_variation"]
        + config.signal_weight * components["signal_loss"]
    )
    return min(1.0, score), components


class BehavioralDetector(BaseDetector):
    name = "behavioral"
    kind = PatternKind.BEHAVIORAL

    def __init__(self, config: BehavioralConfig | None = None, speed_config: SpeedConfig | None = None):
        self.config = config or BehavioralConfig()
        self.speed_config = speed_config or SpeedConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        score, components = behavior_score(point, context.track(point), self.config, self.speed_config)
        if score <= self.config.trigger_score:
            return None
        severity = Severity.CRITICAL if score > self.config.critical_score else Severity.HIGH
        return self._pattern(
            point,
            severity,
            self.config.confidence,
            f"Unusual behavioral profile (score {score:.2f})",
            {"score": round(score, 3), **{k: round(v, 3) for k, v in components.items()}},
        )
