"""Pydantic schemas for alert rule management."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from app.models.alert import RuleAction, RuleCondition
from app.models.base import Severity


class RuleUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    conditions: Optional[list[RuleCondition]] = Field(default=None, min_length=1)
    actions: Optional[list[RuleAction]] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    cooldown_minutes: Optional[float] = Field(default=None, ge=0)
    severity: Optional[Severity] = None


class StageToggleRequest(BaseModel):
    enabled: bool
