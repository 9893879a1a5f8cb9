"""Restricted-zone detection.

Zones are circles (centre + radius in km) from pipeline.yaml. Membership uses
the flat Euclidean distance in degrees against radius_km / 111, which is
coarse but adequate for zone radii of tens to hundreds of km.
"""
from __future__ import annotations

from typing import Optional, Sequence

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import GeospatialConfig, RestrictedZone
from app.utils.geo import KM_PER_DEGREE, degree_distance


def find_restricted_zone(
    lat: float,
    lng: float,
    zones: Sequence[RestrictedZone],
    buffer_km: float = 0.0,
) -> Optional[RestrictedZone]:
    """Return the first zone containing (lat, lng), widened by ``buffer_km``."""
    for zone in zones:
        if degree_distance(lat, lng, zone.lat, zone.lng) < (zone.radius_km + buffer_km) / KM_PER_DEGREE:
            return zone
    return None


class GeospatialDetector(BaseDetector):
    name = "geospatial"
    kind = PatternKind.GEOSPATIAL

    def __init__(self, config: GeospatialConfig | None = None):
        self.config = config or GeospatialConfig()

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        zone = find_restricted_zone(point.lat, point.lng, self.config.zones)
        if zone is None:
            return None
        return self._pattern(
            point,
            Severity.HIGH,
            self.config.confidence,
            f"Vessel inside restricted area: {zone.name}",
            {"zone": zone.name, "zone_center": {"lat": zone.lat, "lng": zone.lng}, "radius_km": zone.radius_km},
        )
