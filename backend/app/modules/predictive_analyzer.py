"""Forward-looking per-vessel estimates.

Runs on every accepted point, independently of the detector ensemble. It
reads the vessel's track and its recent patterns but never creates alerts;
rules can weight predictions through the ``prediction`` condition.

route_completion
    Dead-reckoned position at the horizon (default 6 h) from SOG/COG. If the
    vessel declares a destination, remaining distance and ETA are added.
    confidence = 0.84 × (1 − 0.5 × course_variation). Vessels below 0.5 kn
    are not making way and get no estimate.

behavior_change
    likelihood = 0.4 × course_variation + 0.3 × speed_trend + 0.3 × pattern_rate
    Emitted above 0.5, confidence 0.72, horizon 48 h.

risk_assessment
    Each recent pattern scores severity_weight × confidence (low 25, medium 50,
    high 75, critical 100). risk = mean × min(2, 1 + 0.1·n), capped at 100.
    critical ≥ 80, high ≥ 60, medium ≥ 30. Emitted at medium and above,
    confidence 0.79, horizon 24 h.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Sequence

from app.models.base import PatternKind, PredictionKind, Severity
from app.models.pattern import Pattern, Prediction
from app.models.telemetry import TelemetryPoint
from app.modules.behavioral_detector import course_variation_factor
from app.modules.pipeline_config import PredictionConfig
from app.utils.geo import haversine_nm, project_position

logger = logging.getLogger(__name__)

_SEVERITY_WEIGHT = {
    Severity.LOW: 25.0,
    Severity.MEDIUM: 50.0,
    Severity.HIGH: 75.0,
    Severity.CRITICAL: 100.0,
}

_BEHAVIOR_HORIZON = timedelta(hours=48)
_RISK_HORIZON = timedelta(hours=24)
_PATTERN_RATE_SATURATION = 10

_RECOMMENDATIONS = {
    "critical": ["Dispatch patrol asset", "Notify port state control", "Flag vessel for boarding"],
    "high": ["Increase tracking frequency", "Cross-check declared identity"],
    "medium": ["Add vessel to watch list"],
}


def risk_score(patterns: Sequence[Pattern]) -> float:
    if not patterns:
        return 0.0
    scores = [_SEVERITY_WEIGHT[p.severity] * p.confidence for p in patterns]
    multiplier = min(2.0, 1.0 + 0.1 * len(patterns))
    return min(100.0, (sum(scores) / len(scores)) * multiplier)


def risk_level(score: float) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def speed_trend(track: Sequence[TelemetryPoint]) -> float:
    """|latest − mean of earlier speeds| / mean, in [0, 1]."""
    if len(track) < 2:
        return 0.0
    earlier = [p.speed for p in track[:-1]]
    mean = sum(earlier) / len(earlier)
    return min(1.0, abs(track[-1].speed - mean) / max(mean, 1.0))


class PredictiveAnalyzer:
    def __init__(self, config: PredictionConfig | None = None):
        self.config = config or PredictionConfig()

    def analyze(
        self,
        point: TelemetryPoint,
        track: Sequence[TelemetryPoint],
        recent_patterns: Sequence[Pattern],
    ) -> list[Prediction]:
        """Return the predictions for ``point``.

        Args:
            track: the vessel's timestamp-ordered points, ``point`` included.
            recent_patterns: the vessel's patterns within the lookback window.
        """
        patterns = [p for p in recent_patterns if p.kind != PatternKind.VALIDATION]
        variation = course_variation_factor(track)
        predictions = []

        route = self._route_completion(point, variation)
        if route is not None:
            predictions.append(route)
        behavior = self._behavior_change(point, track, patterns, variation)
        if behavior is not None:
            predictions.append(behavior)
        risk = self._risk_assessment(point, patterns)
        if risk is not None:
            predictions.append(risk)
        return predictions

    def _route_completion(self, point: TelemetryPoint, variation: float) -> Prediction | None:
        if point.speed <= self.config.min_speed_kn:
            return None
        horizon = timedelta(hours=self.config.horizon_hours)
        proj_lat, proj_lng = project_position(
            point.lat, point.lng, point.course, point.speed * self.config.horizon_hours
        )
        payload = {
            "projected_position": {"lat": round(proj_lat, 5), "lng": round(proj_lng, 5)},
            "horizon_hours": self.config.horizon_hours,
        }
        factors = ["speed_over_ground", "course_over_ground"]
        if point.destination_lat is not None and point.destination_lng is not None:
            remaining = haversine_nm(point.lat, point.lng, point.destination_lat, point.destination_lng)
            eta_hours = remaining / point.speed
            payload["remaining_nm"] = round(remaining, 2)
            payload["eta_hours"] = round(eta_hours, 2)
            payload["eta"] = (point.timestamp + timedelta(hours=eta_hours)).isoformat()
            factors.append("declared_destination")
        if variation > 0:
            factors.append("course_variability")

        return Prediction(
            vessel_id=point.vessel_id,
            kind=PredictionKind.ROUTE_COMPLETION,
            payload=payload,
            confidence=round(self.config.route_base_confidence * (1.0 - 0.5 * variation), 4),
            time_horizon=horizon,
            factors=factors,
            generated_at=point.timestamp,
        )

    def _behavior_change(
        self,
        point: TelemetryPoint,
        track: Sequence[TelemetryPoint],
        patterns: Sequence[Pattern],
        variation: float,
    ) -> Prediction | None:
        trend = speed_trend(track)
        pattern_rate = min(1.0, len(patterns) / _PATTERN_RATE_SATURATION)
        likelihood = 0.4 * variation + 0.3 * trend + 0.3 * pattern_rate
        if likelihood <= self.config.behavior_change_threshold:
            return None
        return Prediction(
            vessel_id=point.vessel_id,
            kind=PredictionKind.BEHAVIOR_CHANGE,
            payload={
                "likelihood": round(likelihood, 3),
                "course_variation": round(variation, 3),
                "speed_trend": round(trend, 3),
                "pattern_rate": round(pattern_rate, 3),
            },
            confidence=self.config.behavior_change_confidence,
            time_horizon=_BEHAVIOR_HORIZON,
            factors=[name for name, v in (
                ("course_variability", variation), ("speed_trend", trend), ("recent_patterns", pattern_rate),
            ) if v > 0],
            generated_at=point.timestamp,
        )

    def _risk_assessment(self, point: TelemetryPoint, patterns: Sequence[Pattern]) -> Prediction | None:
        score = risk_score(patterns)
        level = risk_level(score)
        if level == "low":
            return None
        return Prediction(
            vessel_id=point.vessel_id,
            kind=PredictionKind.RISK_ASSESSMENT,
            payload={
                "risk_score": round(score, 1),
                "risk_level": level,
                "pattern_count": len(patterns),
                "recommendations": _RECOMMENDATIONS[level],
            },
            confidence=self.config.risk_confidence,
            time_horizon=_RISK_HORIZON,
            factors=sorted({p.kind.value for p in patterns}),
            generated_at=point.timestamp,
        )
