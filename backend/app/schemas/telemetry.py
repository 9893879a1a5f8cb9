"""Pydantic schemas for telemetry ingestion."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TelemetryBatchRequest(BaseModel):
    # Raw records; field aliases (latitude/lon/sog/cog/mmsi/...) are resolved by the normalizer
    records: list[dict[str, Any]] = Field(..., min_length=1, max_length=10_000)


class SubmissionResponse(BaseModel):
    accepted: bool
    vessel_id: Optional[str] = None
    violations: list[str] = Field(default_factory=list)
    pattern_id: Optional[str] = None


class BatchSubmissionResponse(BaseModel):
    accepted: int
    rejected: int
    results: list[SubmissionResponse]
