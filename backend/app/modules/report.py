"""Alert reports and detection-data export.

A report covers the alerts whose timestamp falls in [date_from, date_to],
optionally narrowed by severity, kind and status. Summary counts are
zero-filled so every severity, status and known alert kind is always
present.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from app.models.base import AlertStatusEnum, PatternKind, Severity
from app.modules.alert_store import AlertFilter, AlertStore

if TYPE_CHECKING:
    from app.models.alert import Alert, Correlation
    from app.models.metrics import ProcessingMetrics

logger = logging.getLogger(__name__)

ALERT_KINDS: list[str] = [k.value for k in PatternKind if k != PatternKind.VALIDATION] + ["rule_match", "manual"]


def summarize(alerts: list["Alert"]) -> dict[str, Any]:
    by_severity = {s.value: 0 for s in Severity}
    by_status = {s.value: 0 for s in AlertStatusEnum}
    by_kind = {k: 0 for k in ALERT_KINDS}
    for alert in alerts:
        by_severity[alert.severity.value] += 1
        by_status[alert.status.value] += 1
        by_kind[alert.kind] = by_kind.get(alert.kind, 0) + 1
    return {
        "total": len(alerts),
        "by_severity": by_severity,
        "by_status": by_status,
        "by_kind": by_kind,
    }


def generate_report(
    store: AlertStore,
    date_from: datetime,
    date_to: datetime,
    severity: Optional[Severity | str] = None,
    kind: Optional[str] = None,
    status: Optional[AlertStatusEnum | str] = None,
) -> dict[str, Any]:
    if date_from > date_to:
        raise ValueError("date_from must not be after date_to")
    alert_filter = AlertFilter(
        severity=Severity(severity) if severity else None,
        kind=kind or None,
        status=AlertStatusEnum(status) if status else None,
        since=date_from,
        until=date_to,
    )
    alerts = store.list_alerts(alert_filter)
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "date_range": {"from": date_from.isoformat(), "to": date_to.isoformat()},
        "filters": {
            "severity": alert_filter.severity.value if alert_filter.severity else "all",
            "kind": alert_filter.kind or "all",
            "status": alert_filter.status.value if alert_filter.status else "all",
        },
        "summary": summarize(alerts),
        "alerts": [a.model_dump(mode="json") for a in alerts],
    }


def export_detection_data(
    store: AlertStore,
    metrics: "ProcessingMetrics",
    correlations: list["Correlation"] = (),
    indent: int | None = 2,
) -> str:
    """Serialize every retained alert, its summary, correlations and metrics as JSON."""
    alerts = store.list_alerts()
    payload = {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "summary": summarize(alerts),
        "alerts": [a.model_dump(mode="json") for a in alerts],
        "correlations": [c.model_dump(mode="json") for c in correlations],
        "metrics": metrics.model_dump(mode="json"),
    }
    logger.info("Exported %d alerts, %d correlations", len(alerts), len(payload["correlations"]))
    return json.dumps(payload, indent=indent)
