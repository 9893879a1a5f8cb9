"""Pydantic schemas for alert operations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models.base import AlertStatusEnum, Severity


class AlertStatusUpdate(BaseModel):
    status: AlertStatusEnum
    reason: Optional[str] = None


class ManualAlertCreate(BaseModel):
    kind: str = "manual"
    severity: Severity
    title: str = Field(..., min_length=1)
    description: str = ""
    vessel_id: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    location_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
