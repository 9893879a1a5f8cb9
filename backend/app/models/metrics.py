"""Processing metrics snapshot published by the metrics collector."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class StageMetrics(BaseModel):
    stage_id: str
    name: str
    priority: int
    enabled: bool = True
    success_rate: float = 1.0
    last_duration_ms: float = 0.0
    runs: int = 0
    failures: int = 0


class ProcessingMetrics(BaseModel):
    throughput: float = 0.0          # points per second over the last window
    avg_latency_ms: float = 0.0
    error_rate: float = 0.0          # failed operations / operations over the last window
    queue_depth: int = 0
    processed_count: int = 0
    anomalies_detected: int = 0
    predictions_generated: int = 0
    alerts_created: int = 0
    errors_by_kind: dict[str, int] = Field(default_factory=dict)
    detector_errors: dict[str, int] = Field(default_factory=dict)
    stages: list[StageMetrics] = Field(default_factory=list)
    window_seconds: float = 0.0
    collected_at: Optional[datetime] = None
