"""Shared enums for all pipeline records."""
from __future__ import annotations

import enum


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def max(cls, *values: "Severity") -> "Severity":
        return max(values, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class PatternKind(str, enum.Enum):
    SPEED = "speed"
    ROUTE_DEVIATION = "route_deviation"
    BEHAVIORAL = "behavioral"
    TEMPORAL = "temporal"
    GEOSPATIAL = "geospatial"
    AIS_GAP = "ais_gap"
    LOITERING = "loitering"
    RENDEZVOUS = "rendezvous"
    IDENTITY_SWITCH = "identity_switch"
    # Data-quality finding emitted by the normalizer, never by a detector
    VALIDATION = "validation"


class PredictionKind(str, enum.Enum):
    ROUTE_COMPLETION = "route_completion"
    BEHAVIOR_CHANGE = "behavior_change"
    RISK_ASSESSMENT = "risk_assessment"


class ClusterKind(str, enum.Enum):
    ROUTE_SIMILARITY = "route_similarity"
    BEHAVIOR_PATTERN = "behavior_pattern"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertStatusEnum(str, enum.Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class AlertSourceEnum(str, enum.Enum):
    DETECTOR = "detector"
    RULE_ENGINE = "rule_engine"
    MANUAL = "manual"
    SYSTEM = "system"


class ConditionTypeEnum(str, enum.Enum):
    ANOMALY_SCORE = "anomaly_score"
    PATTERN_MATCH = "pattern_match"
    SEVERITY = "severity"
    LOCATION = "location"
    VESSEL_TYPE = "vessel_type"
    TIME_RANGE = "time_range"
    PREDICTION = "prediction"
    CLUSTER_RISK = "cluster_risk"


class OperatorEnum(str, enum.Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    CONTAINS = "contains"
    WITHIN = "within"


class ActionTypeEnum(str, enum.Enum):
    NOTIFY = "notify"
    ESCALATE = "escalate"
    AUTO_INVESTIGATE = "auto_investigate"
    BLOCK_VESSEL = "block_vessel"
