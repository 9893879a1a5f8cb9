"""Pipeline record types."""
from app.models.base import (
    ActionTypeEnum,
    AlertSourceEnum,
    AlertStatusEnum,
    ClusterKind,
    ConditionTypeEnum,
    OperatorEnum,
    PatternKind,
    PredictionKind,
    RiskLevel,
    Severity,
)
from app.models.telemetry import GeoPoint, TelemetryPoint
from app.models.pattern import Cluster, Pattern, Prediction
from app.models.alert import Alert, AlertRule, Correlation, RuleAction, RuleCondition, StatusChange
from app.models.metrics import ProcessingMetrics, StageMetrics
