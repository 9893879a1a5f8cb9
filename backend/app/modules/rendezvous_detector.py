"""Rendezvous (ship-to-ship proximity) detection.

Fires when another vessel's latest position is within 0.5 km of this one,
both vessels are below 3 kn, and the neighbour was seen within 30 minutes of
this point. The closest qualifying neighbour is reported.

Severity: high. Confidence: 0.82.
"""
from __future__ import annotations

from typing import Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import RendezvousConfig
from app.utils.geo import haversine_km


class RendezvousDetector(BaseDetector):
    name = "rendezvous"
    kind = PatternKind.RENDEZVOUS

    def __init__(self, config: RendezvousConfig | None = None):
        self.config = config or RendezvousConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        if point.speed >= self.config.max_speed_kn:
            return None

        best: tuple[float, TelemetryPoint] | None = None
        max_age = self.config.max_age_minutes * 60.0
        for other in context.neighbours:
            if other.vessel_id == point.vessel_id or other.speed >= self.config.max_speed_kn:
                continue
            if abs((point.timestamp - other.timestamp).total_seconds()) > max_age:
                continue
            dist = haversine_km(point.lat, point.lng, other.lat, other.lng)
            if dist <= self.config.max_distance_km and (best is None or dist < best[0]):
                best = (dist, other)

        if best is None:
            return None
        dist, other = best
        return self._pattern(
            point,
            Severity.HIGH,
            self.config.confidence,
            f"Close approach with {other.vessel_id} ({dist * 1000:.0f} m, both under {self.config.max_speed_kn:g} kn)",
            {
                "other_vessel_id": other.vessel_id,
                "distance_km": round(dist, 3),
                "speed_kn": point.speed,
                "other_speed_kn": other.speed,
            },
        )
