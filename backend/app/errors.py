"""Exception taxonomy for the detection-and-alerting pipeline.

None of these are fatal to the pipeline: each is raised at a component
boundary, caught by the caller that owns the failure domain, logged and
counted in metrics.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "pipeline"


class ValidationError(PipelineError):
    """Malformed telemetry rejected before detection."""

    kind = "validation"

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__("Invalid telemetry: " + "; ".join(self.violations))


class DetectorError(PipelineError):
    """A single detector failed on a single point."""

    kind = "detector"

    def __init__(self, detector: str, vessel_id: str, cause: BaseException):
        self.detector = detector
        self.vessel_id = vessel_id
        self.cause = cause
        super().__init__(f"Detector {detector!r} failed for vessel {vessel_id}: {cause}")


class RuleEvaluationError(PipelineError):
    """A rule condition raised; the rule is skipped for this cycle."""

    kind = "rule"

    def __init__(self, rule_id: str, cause: BaseException):
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(f"Rule {rule_id!r} could not be evaluated: {cause}")


class TransitionError(PipelineError):
    """Requested alert status change is not allowed from the current status."""

    kind = "transition"

    def __init__(self, alert_id: str, current_status: str, requested_status: str):
        self.alert_id = alert_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Alert {alert_id}: cannot transition {current_status} -> {requested_status}"
        )


class DistributionError(PipelineError):
    """A subscriber callback raised while receiving a published event."""

    kind = "distribution"

    def __init__(self, topic: str, cause: BaseException):
        self.topic = topic
        self.cause = cause
        super().__init__(f"Subscriber on {topic!r} failed: {cause}")


class AlertNotFoundError(PipelineError, KeyError):
    kind = "not_found"

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")

    def __str__(self) -> str:
        return f"Alert {self.alert_id} not found"


class RuleNotFoundError(PipelineError, KeyError):
    kind = "not_found"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")

    def __str__(self) -> str:
        return f"Rule {self.rule_id} not found"


class DuplicateRuleError(PipelineError):
    kind = "conflict"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} already exists")


class PipelineStoppedError(PipelineError):
    """Telemetry submitted after shutdown began."""

    kind = "stopped"
