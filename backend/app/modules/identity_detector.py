"""Identity-switch detection.

Compares the identity a vessel declares on this point (IMO, callsign, name)
with the most recent identity previously observed on the same channel
(vessel_id). A change of IMO or callsign is a switch outright. Names are
compared fuzzily after transliteration so that "ВОЛГА" and "VOLGA" or
"M/V Ocean Star" and "OCEAN STAR" don't trip the detector.

Severity: high. Confidence: 0.91.
"""
from __future__ import annotations

import re
from typing import Optional

from rapidfuzz import fuzz
from unidecode import unidecode

from app.models.base import PatternKind, Severity
from app.models.pattern import Pattern
from app.models.telemetry import TelemetryPoint
from app.modules.detector_base import BaseDetector, DetectionContext
from app.modules.pipeline_config import IdentityConfig

_PREFIX_RE = re.compile(r"^(M/?V|M/?T|MV|MT|SS)\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")
_MULTI_SPACE_RE = re.compile(r"\s+")


def normalize_vessel_name(name: str | None) -> str:
    """Transliterate, uppercase, drop M/V-style prefixes and punctuation."""
    if not name:
        return ""
    text = unidecode(name).upper().strip()
    text = _PREFIX_RE.sub("", text)
    text = _PUNCT_RE.sub(" ", text)
    return _MULTI_SPACE_RE.sub(" ", text).strip()


def _norm_code(value: str | None) -> str:
    return (value or "").strip().upper()


class IdentitySwitchDetector(BaseDetector):
    name = "identity_switch"
    kind = PatternKind.IDENTITY_SWITCH

    def __init__(self, config: IdentityConfig | None = None):
        self.config = config or IdentityConfig()

    def _conflicts(self, previous: TelemetryPoint, point: TelemetryPoint) -> list[str]:
        conflicts = []
        for field in ("imo", "callsign"):
            old, new = _norm_code(getattr(previous, field)), _norm_code(getattr(point, field))
            if old and new and old != new:
                conflicts.append(field)
        old_name = normalize_vessel_name(previous.vessel_name)
        new_name = normalize_vessel_name(point.vessel_name)
        if old_name and new_name:
            if fuzz.token_sort_ratio(old_name, new_name) < self.config.name_similarity_threshold:
                conflicts.append("vessel_name")
        return conflicts

    def detect(self, point: TelemetryPoint, context: DetectionContext) -> Optional[Pattern]:
        if not point.has_identity:
            return None
        previous = next(
            (p for p in reversed(context.history) if p.has_identity and p.timestamp <= point.timestamp),
            None,
        )
        if previous is None:
            return None

        conflicts = self._conflicts(previous, point)
        if not conflicts:
            return None
        return self._pattern(
            point,
            Severity.HIGH,
            self.config.confidence,
            f"Declared identity changed ({', '.join(conflicts)})",
            {
                "conflicting_fields": conflicts,
                "previous": {
                    "vessel_name": previous.vessel_name,
                    "imo": previous.imo,
                    "callsign": previous.callsign,
                    "seen_at": previous.timestamp.isoformat(),
                },
                "current": {"vessel_name": point.vessel_name, "imo": point.imo, "callsign": point.callsign},
            },
        )
