"""Alerts, alert rules and correlations."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.base import (
    ActionTypeEnum,
    AlertSourceEnum,
    AlertStatusEnum,
    ConditionTypeEnum,
    OperatorEnum,
    Severity,
)
from app.models.telemetry import GeoPoint


class StatusChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: AlertStatusEnum
    at: datetime
    reason: Optional[str] = None


class Alert(BaseModel):
    """Actionable, stateful record surfaced to operators.

    Only the alert store mutates these; every read hands out a copy.
    """

    id: str = ""
    kind: str
    severity: Severity
    title: str
    description: str = ""
    location: Optional[GeoPoint] = None
    timestamp: datetime
    status: AlertStatusEnum = AlertStatusEnum.NEW
    source: AlertSourceEnum
    metadata: dict[str, Any] = Field(default_factory=dict)
    dedup_key: Optional[str] = None
    occurrences: int = 1
    last_seen_at: Optional[datetime] = None
    status_history: list[StatusChange] = Field(default_factory=list)

    @property
    def vessel_id(self) -> Optional[str]:
        return self.metadata.get("vessel_id")

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatusEnum.RESOLVED


class RuleCondition(BaseModel):
    type: ConditionTypeEnum
    operator: OperatorEnum
    value: Any = None
    weight: float = Field(default=1.0, gt=0.0, le=1.0)


class RuleAction(BaseModel):
    type: ActionTypeEnum
    parameters: dict[str, Any] = Field(default_factory=dict)


class AlertRule(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    conditions: list[RuleCondition] = Field(min_length=1)
    actions: list[RuleAction] = Field(default_factory=list)
    priority: int = 5
    enabled: bool = True
    cooldown_period: timedelta = timedelta(0)
    last_triggered_at: Optional[datetime] = None
    # When unset the alert takes the highest severity among the inputs
    severity: Optional[Severity] = None

    @model_validator(mode="before")
    @classmethod
    def _cooldown_minutes(cls, data: Any) -> Any:
        """Accept ``cooldown_minutes`` as written in pipeline.yaml."""
        if isinstance(data, dict) and "cooldown_minutes" in data:
            data = dict(data)
            minutes = data.pop("cooldown_minutes")
            data.setdefault("cooldown_period", timedelta(minutes=float(minutes or 0)))
        return data

    def in_cooldown(self, now: datetime) -> bool:
        if self.last_triggered_at is None:
            return False
        elapsed = now - self.last_triggered_at
        # a clock that stepped backwards never extends the cooldown
        return timedelta(0) <= elapsed < self.cooldown_period


class Correlation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    alert_ids: list[str] = Field(min_length=3)
    confidence: float
    summary: str
    recommended_action: str
    location: Optional[GeoPoint] = None
    created_at: datetime
