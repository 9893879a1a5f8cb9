"""Detector ensemble.

Runs every registered detector against one point. Each detector is isolated:
an exception becomes a DetectorError that is logged, passed to the error
callback (the metrics collector counts it per detector) and returned to the
caller, while the remaining detectors still run.

Detectors are registered by name and may be swapped at runtime.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.errors import DetectorError
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.behavioral_detector import BehavioralDetector
from app.modules.course_detector import RouteDeviationDetector
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.gap_detector import AISGapDetector
from app.modules.geospatial_detector import GeospatialDetector
from app.modules.identity_detector import IdentitySwitchDetector
from app.modules.loitering_detector import LoiteringDetector
from app.modules.pipeline_config import DetectionConfig
from app.modules.rendezvous_detector import RendezvousDetector
from app.modules.speed_detector import SpeedDetector
from app.modules.temporal_detector import TemporalDetector

logger = logging.getLogger(__name__)


@dataclass
class EnsembleResult:
    patterns: list[Pattern] = field(default_factory=list)
    errors: list[DetectorError] = field(default_factory=list)


def default_detectors(config: DetectionConfig | None = None) -> list[BaseDetector]:
    config = config or DetectionConfig()
    return [
        SpeedDetector(config.speed),
        RouteDeviationDetector(config.route_deviation),
        BehavioralDetector(config.behavioral, config.speed),
        TemporalDetector(config.temporal),
        GeospatialDetector(config.geospatial),
        AISGapDetector(config.ais_gap),
        LoiteringDetector(config.loitering),
        RendezvousDetector(config.rendezvous),
        IdentitySwitchDetector(config.identity),
    ]


class DetectorEnsemble:
    def __init__(
        self,
        detectors: Optional[list[BaseDetector]] = None,
        on_error: Optional[Callable[[DetectorError], None]] = None,
    ):
        self._detectors: dict[str, BaseDetector] = {}
        self._lock = threading.Lock()
        self.on_error = on_error
        for detector in detectors if detectors is not None else default_detectors():
            self.register(detector)

    def register(self, detector: BaseDetector) -> None:
        """Add or replace the detector registered under ``detector.name``."""
        with self._lock:
            if detector.name in self._detectors:
                logger.info("Replacing detector %s", detector.name)
            self._detectors[detector.name] = detector

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._detectors.pop(name, None) is not None

    @property
    def detector_names(self) -> list[str]:
        with self._lock:
            return list(self._detectors)

    def run(self, point: TelemetryPoint, context: DetectionContext) -> EnsembleResult:
        with self._lock:
            detectors = list(self._detectors.values())

        result = EnsembleResult()
        for detector in detectors:
            try:
                pattern = detector.detect(point, context)
            except Exception as exc:
                err = DetectorError(detector.name, point.vessel_id, exc)
                logger.warning("%s", err, exc_info=True)
                result.errors.append(err)
                if self.on_error is not None:
                    self.on_error(err)
                continue
            if pattern is not None:
                result.patterns.append(pattern)
        return result
