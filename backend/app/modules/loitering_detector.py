"""Loitering detection.

Takes the vessel's last K positions (default 10, at least 5 required) and
measures the radius around their centroid with an equirectangular
approximation. If every position sits within 5 km of the centroid and the
positions span more than 8 hours, the vessel is loitering.

Severity: medium. Confidence: 0.75.
"""
from __future__ import annotations

import logging
from typing import Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import GeoPoint, TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import LoiteringConfig
from app.utils.geo import local_km_offset

logger = logging.getLogger(__name__)


class LoiteringDetector(BaseDetector):
    name = "loitering"
    kind = PatternKind.LOITERING

    def __init__(self, config: LoiteringConfig | None = None):
        self.config = config or LoiteringConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        recent = context.track(point)[-self.config.positions:]
        if len(recent) < self.config.min_positions:
            return None

        centroid_lat = sum(p.lat for p in recent) / len(recent)
        centroid_lng = sum(p.lng for p in recent) / len(recent)
        max_radius = max(local_km_offset(p.lat, p.lng, centroid_lat, centroid_lng) for p in recent)
        if max_radius >= self.config.radius_km:
            return None

        duration_hours = (recent[-1].timestamp - recent[0].timestamp).total_seconds() / 3600.0
        if duration_hours <= self.config.min_hours:
            return None

        return self._pattern(
            point,
            Severity.MEDIUM,
            self.config.confidence,
            f"Loitering for {duration_hours:.1f} h within {max_radius:.1f} km",
            {
                "duration_hours": round(duration_hours, 2),
                "radius_km": round(max_radius, 3),
                "positions": len(recent),
            },
            location=GeoPoint(lat=centroid_lat, lng=centroid_lng),
        )
