"""Pipeline tuning configuration.

Detector thresholds, restricted zones, clustering bins, alerting constants and
the default alert rules are all read from ``pipeline.yaml`` so they can be
tuned without a redeploy. Every value has a built-in default: a missing file
or a missing section falls back to those defaults with a warning.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from app.models.alert import AlertRule

logger = logging.getLogger(__name__)


# ── Detector thresholds ───────────────────────────────────────────────────────

class SpeedConfig(BaseModel):
    expected_speeds: dict[str, float] = Field(default_factory=lambda: {
        "cargo": 14.0,
        "tanker": 12.0,
        "container": 16.0,
        "fishing": 8.0,
        "passenger": 18.0,
        "naval": 20.0,
    })
    default_expected_speed: float = 12.0
    trigger_deviation: float = 0.5
    high_deviation: float = 0.75
    critical_deviation: float = 1.0
    base_confidence: float = 0.6
    max_confidence: float = 0.95

    def expected_for(self, vessel_type: str) -> float:
        return self.expected_speeds.get((vessel_type or "").lower(), self.default_expected_speed)


class AISGapConfig(BaseModel):
    trigger_hours: float = 4.0
    high_hours: float = 12.0
    critical_hours: float = 24.0
    window_hours: float = 48.0
    confidence_scale_hours: float = 48.0
    base_confidence: float = 0.6
    max_confidence: float = 0.95


class BehavioralConfig(BaseModel):
    speed_weight: float = 0.4
    course_weight: float = 0.3
    signal_weight: float = 0.3
    trigger_score: float = 0.75
    critical_score: float = 0.9
    confidence: float = 0.78


class TemporalConfig(BaseModel):
    # Fractional UTC hours; the night window wraps midnight
    night_start_hour: float = 23.0
    night_end_hour: float = 3.0
    min_speed: float = 15.0
    confidence: float = 0.65


class RestrictedZone(BaseModel):
    name: str
    lat: float
    lng: float
    radius_km: float


class GeospatialConfig(BaseModel):
    zones: list[RestrictedZone] = Field(default_factory=lambda: [
        RestrictedZone(name="Gulf of Finland approaches", lat=60.0, lng=30.0, radius_km=100.0),
        RestrictedZone(name="Gulf of Guinea exclusion box", lat=0.0, lng=0.0, radius_km=50.0),
        RestrictedZone(name="Southern Ocean survey area", lat=-60.0, lng=0.0, radius_km=200.0),
    ])
    confidence: float = 0.88


class LoiteringConfig(BaseModel):
    positions: int = 10
    min_positions: int = 5
    radius_km: float = 5.0
    min_hours: float = 8.0
    confidence: float = 0.75


class RouteDeviationConfig(BaseModel):
    min_changes: int = 3
    change_degrees: float = 90.0
    window_hours: float = 6.0
    confidence: float = 0.7


class RendezvousConfig(BaseModel):
    max_distance_km: float = 0.5
    max_speed_kn: float = 3.0
    max_age_minutes: float = 30.0
    confidence: float = 0.82


class IdentityConfig(BaseModel):
    name_similarity_threshold: int = 85
    confidence: float = 0.91


class DetectionConfig(BaseModel):
    speed: SpeedConfig = Field(default_factory=SpeedConfig)
    ais_gap: AISGapConfig = Field(default_factory=AISGapConfig)
    behavioral: BehavioralConfig = Field(default_factory=BehavioralConfig)
    temporal: TemporalConfig = Field(default_factory=TemporalConfig)
    geospatial: GeospatialConfig = Field(default_factory=GeospatialConfig)
    loitering: LoiteringConfig = Field(default_factory=LoiteringConfig)
    route_deviation: RouteDeviationConfig = Field(default_factory=RouteDeviationConfig)
    rendezvous: RendezvousConfig = Field(default_factory=RendezvousConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)


# ── Normalizer, predictor, clustering, alerting ───────────────────────────────

class NormalizerConfig(BaseModel):
    # AIS SOG 102.3 means "not available"; anything at or above it is rejected
    max_speed_kn: float = 102.2


class PredictionConfig(BaseModel):
    horizon_hours: float = 6.0
    min_speed_kn: float = 0.5
    route_base_confidence: float = 0.84
    behavior_change_threshold: float = 0.5
    behavior_change_confidence: float = 0.72
    risk_confidence: float = 0.79
    pattern_lookback_hours: float = 24.0


class ClusteringConfig(BaseModel):
    grid_degrees: float = 10.0
    spatial_min_members: int = 2
    spatial_high_risk_members: int = 6
    behavior_min_members: int = 3
    slow_below_kn: float = 5.0
    medium_below_kn: float = 15.0


class AlertingConfig(BaseModel):
    rule_fire_threshold: float = 0.7
    direct_alert_min_confidence: float = 0.9
    correlation_radius_km: float = 50.0
    correlation_window_minutes: float = 60.0
    correlation_min_alerts: int = 3
    critical_correlation_confidence: float = 0.8


DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "high-anomaly-critical",
        "name": "Critical Anomaly Detection",
        "conditions": [{"type": "anomaly_score", "operator": "gt", "value": 85, "weight": 1.0}],
        "actions": [{"type": "escalate", "parameters": {"level": "critical", "notify": ["security-team"]}}],
        "priority": 1,
        "cooldown_minutes": 5,
        "severity": "critical",
    },
    {
        "id": "ghost-vessel-pattern",
        "name": "Ghost Vessel Detection",
        "conditions": [
            {"type": "pattern_match", "operator": "contains", "value": "ais_gap", "weight": 0.8},
            {"type": "anomaly_score", "operator": "gt", "value": 60, "weight": 0.6},
        ],
        "actions": [
            {"type": "auto_investigate", "parameters": {"depth": "enhanced", "duration": 60}},
            {"type": "notify", "parameters": {"channels": ["dashboard", "mobile"]}},
        ],
        "priority": 2,
        "cooldown_minutes": 15,
        "severity": "high",
    },
    {
        "id": "restricted-area-violation",
        "name": "Restricted Area Violation",
        "conditions": [{"type": "location", "operator": "within", "value": {"buffer_km": 1.0}, "weight": 0.9}],
        "actions": [{"type": "escalate", "parameters": {"level": "high", "immediate": True}}],
        "priority": 1,
        "cooldown_minutes": 0,
        "severity": "high",
    },
    {
        "id": "dark-loitering-rendezvous",
        "name": "Loitering With Rendezvous",
        "conditions": [
            {"type": "pattern_match", "operator": "eq", "value": "loitering", "weight": 0.5},
            {"type": "pattern_match", "operator": "eq", "value": "rendezvous", "weight": 0.5},
        ],
        "actions": [{"type": "notify", "parameters": {"channels": ["dashboard"]}}],
        "priority": 3,
        "cooldown_minutes": 30,
        "severity": "high",
    },
]


class PipelineConfig(BaseModel):
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    prediction: PredictionConfig = Field(default_factory=PredictionConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    rules: list[AlertRule] = Field(default_factory=lambda: [AlertRule.model_validate(r) for r in DEFAULT_RULES])


_EXPECTED_SECTIONS = ["normalizer", "detection", "prediction", "clustering", "alerting", "rules"]


def load_pipeline_config(path: str | Path | None = None) -> PipelineConfig:
    """Load ``pipeline.yaml`` into a validated PipelineConfig.

    Missing file → built-in defaults. Missing sections are logged and take
    their defaults; unknown sections are logged and ignored.
    """
    if path is None:
        return PipelineConfig()
    config_path = Path(path)
    if not config_path.exists():
        logger.warning("pipeline.yaml not found at %s: using built-in defaults", config_path)
        return PipelineConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be a mapping, got {type(raw).__name__}")

    missing = [s for s in _EXPECTED_SECTIONS if s not in raw]
    if missing:
        logger.warning("pipeline.yaml missing sections: %s", ", ".join(missing))
    unknown = [s for s in raw if s not in _EXPECTED_SECTIONS]
    if unknown:
        logger.warning("pipeline.yaml has unknown sections (ignored): %s", ", ".join(unknown))
        raw = {k: v for k, v in raw.items() if k in _EXPECTED_SECTIONS}

    config = PipelineConfig.model_validate(raw)
    logger.info(
        "Loaded pipeline config from %s (%d rules, %d restricted zones)",
        config_path, len(config.rules), len(config.detection.geospatial.zones),
    )
    return config
