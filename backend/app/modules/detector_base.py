"""
Base detector abstraction.

Every detector (speed, AIS gap, loitering, etc.) inherits from BaseDetector
and implements ``detect``: a pure function of one TelemetryPoint plus the
vessel's short history, returning at most one Pattern. Detectors hold only
their own configuration; all state they read arrives in DetectionContext, so
a trained classifier or geofence lookup can replace a heuristic without
touching the ensemble.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import GeoPoint, TelemetryPoint


@dataclass(frozen=True)
class DetectionContext:
    """Read-only inputs a detector may use beyond the point itself.

    history: the vessel's retained points, timestamp-ordered, excluding the
        point under evaluation.
    neighbours: latest point of every other vessel at evaluation time.
    """

    history: tuple[TelemetryPoint, ...] = ()
    neighbours: tuple[TelemetryPoint, ...] = field(default_factory=tuple)

    def track(self, point: TelemetryPoint) -> list[TelemetryPoint]:
        """History plus ``point``, timestamp-ordered, without duplicates."""
        merged = [p for p in self.history if p.timestamp != point.timestamp]
        merged.append(point)
        merged.sort(key=lambda p: p.timestamp)
        return merged


class BaseDetector(ABC):
    """
    Abstract base class for detection logic.

    Subclasses set ``name`` and ``kind`` and implement ``detect``.
    """

    name: str
    kind: PatternKind

    @abstractmethod
    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        """
        Evaluate one point.

        Args:
            point: The normalized point under evaluation.
            context: The vessel's recent history and a fleet snapshot.

        Returns:
            A Pattern if the detector fires, otherwise None.
        """

    def _pattern(
        self,
        point: TelemetryPoint,
        severity: Severity,
        confidence: float,
        description: str,
        evidence: dict[str, Any],
        location: GeoPoint | None = None,
    ) -> Pattern:
        return Pattern(
            vessel_id=point.vessel_id,
            kind=self.kind,
            severity=severity,
            confidence=round(min(1.0, max(0.0, confidence)), 4),
            location=location or point.location,
            description=description,
            evidence=evidence,
            detected_at=point.timestamp,
            detector=self.name,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
