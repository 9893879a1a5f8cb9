"""Canonical telemetry record produced by the normalizer."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    name: Optional[str] = None


class TelemetryPoint(BaseModel):
    """One timestamped position/kinematics report for a vessel.

    Immutable once created. Only the normalizer constructs these, so range
    checks live there and not here.
    """

    model_config = ConfigDict(frozen=True)

    vessel_id: str
    lat: float
    lng: float
    speed: float
    course: float
    timestamp: datetime
    vessel_type: str = "unknown"
    signal_strength: float = 1.0
    source_feed: str = "unknown"
    # Declared identity (static AIS data); optional per message
    vessel_name: Optional[str] = None
    callsign: Optional[str] = None
    imo: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)

    @property
    def has_identity(self) -> bool:
        return bool(self.vessel_name or self.callsign or self.imo)
