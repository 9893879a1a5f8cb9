"""Detector, predictor and cluster findings.

All three are read-only once produced.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.base import ClusterKind, PatternKind, PredictionKind, RiskLevel, Severity
from app.models.telemetry import GeoPoint


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Pattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("PAT"))
    vessel_id: str
    kind: PatternKind
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    location: Optional[GeoPoint] = None
    description: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime
    detector: str = ""


class Prediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("PRED"))
    vessel_id: str
    kind: PredictionKind
    payload: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    time_horizon: timedelta
    factors: list[str] = Field(default_factory=list)
    generated_at: datetime


class Cluster(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vessel_ids: list[str]
    cluster_kind: ClusterKind
    characteristics: list[str] = Field(default_factory=list)
    risk_level: RiskLevel
    centroid: Optional[GeoPoint] = None
    generated_at: datetime

    @property
    def severity(self) -> Severity:
        return Severity(self.risk_level.value)
