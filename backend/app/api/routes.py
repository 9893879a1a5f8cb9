from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from app.config import settings
from app.errors import ValidationError
from app.models.alert import Alert, AlertRule
from app.models.base import AlertSourceEnum, AlertStatusEnum, Severity
from app.models.telemetry import GeoPoint
from app.modules.alert_store import AlertFilter
from app.modules.pipeline import Pipeline, SubmissionResult
from app.modules.report import export_detection_data
from app.schemas.alerts import AlertStatusUpdate, ManualAlertCreate
from app.schemas.rules import RuleUpdateRequest, StageToggleRequest
from app.schemas.telemetry import BatchSubmissionResponse, SubmissionResponse, TelemetryBatchRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return pipeline


def _submission_response(result: SubmissionResult) -> SubmissionResponse:
    return SubmissionResponse(
        accepted=result.accepted,
        vessel_id=result.point.vessel_id if result.point else (result.pattern.vessel_id if result.pattern else None),
        violations=result.violations,
        pattern_id=result.pattern.id if result.pattern else None,
    )


def _validate_date_range(date_from: Optional[datetime], date_to: Optional[datetime]) -> None:
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=422, detail="date_from must not be after date_to")


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

@router.post("/telemetry", tags=["telemetry"], status_code=202)
async def submit_telemetry(
    record: dict[str, Any] = Body(...),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Submit one telemetry record. 202 when queued, 422 with violations when rejected."""
    result = pipeline.submit(record)
    if not result.accepted:
        raise ValidationError(result.violations)
    return _submission_response(result)


@router.post("/telemetry/batch", tags=["telemetry"], response_model=BatchSubmissionResponse)
async def submit_telemetry_batch(body: TelemetryBatchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """Submit many records; each is validated independently."""
    results = [_submission_response(pipeline.submit(r)) for r in body.records]
    accepted = sum(1 for r in results if r.accepted)
    return BatchSubmissionResponse(accepted=accepted, rejected=len(results) - accepted, results=results)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/alerts", tags=["alerts"])
def list_alerts(
    severity: Optional[Severity] = None,
    kind: Optional[str] = None,
    status: Optional[AlertStatusEnum] = None,
    vessel_id: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """List alerts ranked by severity, then recency."""
    _validate_date_range(date_from, date_to)
    limit = min(limit, settings.MAX_QUERY_LIMIT)
    alerts = pipeline.list_alerts(AlertFilter(
        severity=severity, kind=kind, status=status, vessel_id=vessel_id,
        search=search, since=date_from, until=date_to,
    ))
    return {"items": alerts[skip: skip + limit], "total": len(alerts)}


@router.post("/alerts", tags=["alerts"], status_code=201)
def create_manual_alert(body: ManualAlertCreate, pipeline: Pipeline = Depends(get_pipeline)) -> Alert:
    location = None
    if body.lat is not None and body.lng is not None:
        location = GeoPoint(lat=body.lat, lng=body.lng, name=body.location_name)
    metadata = dict(body.metadata)
    if body.vessel_id:
        metadata["vessel_id"] = body.vessel_id
    return pipeline.create_alert(Alert(
        kind=body.kind,
        severity=body.severity,
        title=body.title,
        description=body.description,
        location=location,
        timestamp=body.timestamp or datetime.now(timezone.utc),
        source=AlertSourceEnum.MANUAL,
        metadata=metadata,
    ))


@router.get("/alerts/{alert_id}", tags=["alerts"])
def get_alert(alert_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> Alert:
    return pipeline.get_alert(alert_id)


@router.post("/alerts/{alert_id}/status", tags=["alerts"])
def update_alert_status(alert_id: str, body: AlertStatusUpdate, pipeline: Pipeline = Depends(get_pipeline)):
    """Move an alert through its lifecycle. 409 with the current status if not allowed."""
    alert = pipeline.transition_alert(alert_id, body.status, reason=body.reason)
    return {"status": "ok", "new_status": alert.status.value, "alert": alert}


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@router.get("/rules", tags=["rules"])
def list_rules(pipeline: Pipeline = Depends(get_pipeline)) -> list[AlertRule]:
    return pipeline.list_rules()


@router.post("/rules", tags=["rules"], status_code=201)
def add_rule(rule: AlertRule, pipeline: Pipeline = Depends(get_pipeline)) -> AlertRule:
    return pipeline.add_rule(rule)


@router.patch("/rules/{rule_id}", tags=["rules"])
def update_rule(rule_id: str, body: RuleUpdateRequest, pipeline: Pipeline = Depends(get_pipeline)) -> AlertRule:
    return pipeline.update_rule(rule_id, body.model_dump(exclude_unset=True))


@router.delete("/rules/{rule_id}", tags=["rules"], status_code=204)
def delete_rule(rule_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    pipeline.remove_rule(rule_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Insights, metrics, reports
# ---------------------------------------------------------------------------

@router.get("/metrics", tags=["metrics"])
def get_metrics(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.get_metrics()


@router.patch("/stages/{stage_id}", tags=["metrics"])
def toggle_stage(stage_id: str, body: StageToggleRequest, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        pipeline.set_stage_enabled(stage_id, body.enabled)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Stage {stage_id} not found")
    return {"stage_id": stage_id, "enabled": body.enabled}


@router.get("/correlations", tags=["insights"])
def list_correlations(pipeline: Pipeline = Depends(get_pipeline)):
    return {"items": pipeline.list_correlations()}


@router.get("/clusters", tags=["insights"])
def list_clusters(pipeline: Pipeline = Depends(get_pipeline)):
    return {"items": pipeline.list_clusters()}


@router.get("/vessels/{vessel_id}/patterns", tags=["insights"])
def vessel_patterns(vessel_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    patterns = pipeline.vessel_patterns(vessel_id)
    return {"vessel_id": vessel_id, "items": patterns, "total": len(patterns)}


@router.get("/reports", tags=["reports"])
def get_report(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    severity: Optional[Severity] = None,
    kind: Optional[str] = None,
    status: Optional[AlertStatusEnum] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Alert report for a date range (default: the last 7 days)."""
    date_to = date_to or datetime.now(timezone.utc)
    date_from = date_from or date_to - timedelta(days=7)
    _validate_date_range(date_from, date_to)
    return pipeline.generate_report(date_from, date_to, severity=severity, kind=kind, status=status)


@router.get("/export", tags=["reports"])
def export_data(pipeline: Pipeline = Depends(get_pipeline)):
    """JSON export of every retained alert, correlation and the latest metrics."""
    content = export_detection_data(pipeline.store, pipeline.get_metrics(), pipeline.list_correlations())
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": "attachment; filename=tidewatch_export.json"},
    )


@router.get("/health", tags=["metrics"])
def pipeline_health(pipeline: Pipeline = Depends(get_pipeline)):
    metrics = pipeline.get_metrics()
    return {
        "status": "ok" if pipeline.running else "stopped",
        "queue_depth": pipeline.queue_depth(),
        "processed_count": metrics.processed_count,
        "error_rate": metrics.error_rate,
    }
