"""Telemetry normalization and validation.

Raw position reports arrive from several feeds with different field names,
numeric types and timestamp formats. ``normalize_telemetry`` maps them onto a
canonical TelemetryPoint or, when any range check fails, onto exactly one
data-quality Pattern listing every violated field. Rejected points never
reach the detectors.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import GeoPoint, TelemetryPoint
from app.modules.pipeline_config import NormalizerConfig

logger = logging.getLogger(__name__)

VALIDATION_SEVERITY = Severity.MEDIUM
VALIDATION_CONFIDENCE = 0.95


# --- Shared helpers ---

_COMMON_TIMESTAMP_FORMATS = [
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
]

# Feed-specific field names → canonical TelemetryPoint field names
_FIELD_ALIASES = {
    "mmsi": "vessel_id",
    "MMSI": "vessel_id",
    "vesselId": "vessel_id",
    "latitude": "lat",
    "LAT": "lat",
    "longitude": "lng",
    "lon": "lng",
    "LON": "lng",
    "sog": "speed",
    "SPEED": "speed",
    "speed_knots": "speed",
    "cog": "course",
    "COURSE": "course",
    "course_degrees": "course",
    "time": "timestamp",
    "datetime": "timestamp",
    "timestamp_utc": "timestamp",
    "TIMESTAMP": "timestamp",
    "vesselType": "vessel_type",
    "ship_type": "vessel_type",
    "signalStrength": "signal_strength",
    "aisSignalStrength": "signal_strength",
    "reliability": "signal_strength",
    "sourceFeed": "source_feed",
    "source": "source_feed",
    "shipname": "vessel_name",
    "ship_name": "vessel_name",
    "NAME": "vessel_name",
    "IMO": "imo",
}


def parse_timestamp_flexible(ts: Any) -> datetime | None:
    """Parse a timestamp from various formats and return it in UTC.

    Supports: datetime objects, ISO 8601, Unix epoch, and common strftime
    formats. Naive values are taken to be UTC. Returns None if parsing fails.
    """
    parsed: datetime | None = None
    if isinstance(ts, datetime):
        parsed = ts
    elif isinstance(ts, (int, float, Decimal)) and not isinstance(ts, bool) and ts > 1_000_000_000:
        try:
            parsed = datetime.fromtimestamp(float(ts), tz=timezone.utc)
        except (OSError, ValueError, OverflowError):
            return None
    elif isinstance(ts, str):
        ts_str = ts.strip()
        if not ts_str:
            return None
        try:
            parsed = datetime.fromisoformat(ts_str.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _COMMON_TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(ts_str, fmt)
                    break
                except ValueError:
                    continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_float(value: Any) -> Optional[float]:
    """Coerce str/int/Decimal/float to a finite float; None if impossible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            value = Decimal(value.strip())
        result = float(value)
    except (TypeError, ValueError, InvalidOperation):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def canonicalize_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Rename feed-specific keys to canonical names; canonical keys win."""
    row: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = _FIELD_ALIASES.get(key, key)
        if canonical != key and canonical in raw:
            continue
        row[canonical] = value
    return row


@dataclass
class NormalizationResult:
    point: Optional[TelemetryPoint] = None
    violations: list[str] = field(default_factory=list)
    pattern: Optional[Pattern] = None

    @property
    def ok(self) -> bool:
        return self.point is not None


def validate_telemetry_row(row: dict[str, Any], config: NormalizerConfig) -> list[str]:
    """Validate a canonicalized row in place; return every violation found.

    Numeric fields are replaced by floats and the timestamp by a UTC datetime
    so that a clean row can be fed straight to TelemetryPoint.
    """
    violations: list[str] = []

    vessel_id = str(row.get("vessel_id") or "").strip()
    if not vessel_id:
        violations.append("vessel_id: missing")
    row["vessel_id"] = vessel_id

    lat = _to_float(row.get("lat"))
    if lat is None:
        violations.append(f"lat: not a number ({row.get('lat')!r})")
    elif not (-90.0 <= lat <= 90.0):
        violations.append(f"lat: out of range [-90, 90] ({lat})")
    row["lat"] = lat

    lng = _to_float(row.get("lng"))
    if lng is None:
        violations.append(f"lng: not a number ({row.get('lng')!r})")
    elif not (-180.0 <= lng <= 180.0):
        violations.append(f"lng: out of range [-180, 180] ({lng})")
    row["lng"] = lng

    speed = _to_float(row.get("speed"))
    if speed is None:
        violations.append(f"speed: not a number ({row.get('speed')!r})")
    elif speed < 0:
        violations.append(f"speed: negative ({speed})")
    elif speed > config.max_speed_kn:
        violations.append(f"speed: exceeds {config.max_speed_kn} kn ({speed})")
    row["speed"] = speed

    course = _to_float(row.get("course"))
    if course is None:
        violations.append(f"course: not a number ({row.get('course')!r})")
    elif course == 360.0:
        course = 0.0
    elif not (0.0 <= course < 360.0):
        violations.append(f"course: out of range [0, 360) ({course})")
    row["course"] = course

    if row.get("signal_strength") is None:
        row["signal_strength"] = 1.0
    else:
        signal = _to_float(row.get("signal_strength"))
        if signal is None or not (0.0 <= signal <= 1.0):
            violations.append(f"signal_strength: out of range [0, 1] ({row.get('signal_strength')!r})")
        row["signal_strength"] = signal

    ts = parse_timestamp_flexible(row.get("timestamp"))
    if ts is None:
        violations.append(f"timestamp: unparseable ({row.get('timestamp')!r})")
    row["timestamp"] = ts

    for key in ("destination_lat", "destination_lng"):
        if row.get(key) is not None:
            row[key] = _to_float(row[key])
    if row.get("destination_lat") is not None and not (-90.0 <= row["destination_lat"] <= 90.0):
        violations.append(f"destination_lat: out of range ({row['destination_lat']})")
    if row.get("destination_lng") is not None and not (-180.0 <= row["destination_lng"] <= 180.0):
        violations.append(f"destination_lng: out of range ({row['destination_lng']})")

    return violations


def _validation_pattern(raw: Mapping[str, Any], row: dict[str, Any], violations: list[str]) -> Pattern:
    lat, lng = row.get("lat"), row.get("lng")
    location = None
    if lat is not None and lng is not None and -90 <= lat <= 90 and -180 <= lng <= 180:
        location = GeoPoint(lat=lat, lng=lng)
    return Pattern(
        vessel_id=row.get("vessel_id") or "unknown",
        kind=PatternKind.VALIDATION,
        severity=VALIDATION_SEVERITY,
        confidence=VALIDATION_CONFIDENCE,
        location=location,
        description=f"Data quality issues: {', '.join(v.split(':')[0] for v in violations)}",
        evidence={
            "violations": violations,
            "fields": sorted({v.split(":")[0] for v in violations}),
            "raw": {k: str(v) for k, v in raw.items()},
        },
        detected_at=row.get("timestamp") or datetime.now(timezone.utc),
        detector="normalizer",
    )


_POINT_FIELDS = set(TelemetryPoint.model_fields)


def normalize_telemetry(raw: Mapping[str, Any] | TelemetryPoint, config: NormalizerConfig | None = None) -> NormalizationResult:
    """Convert a raw record to a TelemetryPoint, or to a validation Pattern."""
    config = config or NormalizerConfig()
    if isinstance(raw, TelemetryPoint):
        raw = raw.model_dump()
    row = canonicalize_fields(raw)
    violations = validate_telemetry_row(row, config)
    if violations:
        logger.debug("Rejected telemetry for %s: %s", row.get("vessel_id") or "?", violations)
        return NormalizationResult(violations=violations, pattern=_validation_pattern(raw, row, violations))

    values = {k: v for k, v in row.items() if k in _POINT_FIELDS and v is not None}
    for key in ("vessel_type", "source_feed", "vessel_name", "callsign", "imo"):
        if key in values:
            values[key] = str(values[key]).strip()
    if "vessel_type" in values:
        values["vessel_type"] = values["vessel_type"].lower() or "unknown"
    return NormalizationResult(point=TelemetryPoint(**values))
