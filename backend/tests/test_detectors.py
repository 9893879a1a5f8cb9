"""Tests for the individual detectors.

All tests are unit-level: each detector is handed a point and a hand-built
DetectionContext.
"""
from datetime import timedelta

import pytest

from app.models.base import PatternKind, Severity
from app.modules.behavioral_detector import BehavioralDetector, course_variation_factor
from app.modules.course_detector import RouteDeviationDetector
from app.modules.detector_base import DetectionContext
from app.modules.gap_detector import AISGapDetector, largest_gap
from app.modules.geospatial_detector import GeospatialDetector, find_restricted_zone
from app.modules.identity_detector import IdentitySwitchDetector, normalize_vessel_name
from app.modules.loitering_detector import LoiteringDetector
from app.modules.pipeline_config import GeospatialConfig, SpeedConfig
from app.modules.rendezvous_detector import RendezvousDetector
from app.modules.speed_detector import SpeedDetector, classify_speed_deviation
from app.modules.temporal_detector import TemporalDetector

from factories import BASE_TIME, make_point

EMPTY = DetectionContext()


def _ctx(history=(), neighbours=()):
    return DetectionContext(history=tuple(history), neighbours=tuple(neighbours))


# ── Speed ────────────────────────────────────────────────────────────────────

class TestSpeedDetector:
    def test_tanker_at_40_knots_is_critical(self):
        pattern = SpeedDetector().detect(make_point(vessel_type="tanker", speed=40), EMPTY)
        assert pattern.kind == PatternKind.SPEED
        assert pattern.severity == Severity.CRITICAL
        assert pattern.confidence == 0.95
        assert pattern.evidence["expected_kn"] == 12.0

    def test_cargo_at_25_knots_is_high(self):
        pattern = SpeedDetector().detect(make_point(vessel_type="cargo", speed=25), EMPTY)
        assert pattern.severity == Severity.HIGH

    def test_small_deviation_is_medium(self):
        # (22 − 14) / 14 = 0.571
        pattern = SpeedDetector().detect(make_point(vessel_type="cargo", speed=22), EMPTY)
        assert pattern.severity == Severity.MEDIUM

    def test_within_half_of_expected_is_silent(self):
        assert SpeedDetector().detect(make_point(vessel_type="cargo", speed=20), EMPTY) is None

    def test_unknown_type_uses_default_speed(self):
        pattern = SpeedDetector().detect(make_point(vessel_type="yacht", speed=30), EMPTY)
        assert pattern.evidence["expected_kn"] == 12.0

    def test_confidence_is_capped(self):
        pattern = SpeedDetector().detect(make_point(vessel_type="fishing", speed=60), EMPTY)
        assert pattern.confidence <= 0.95

    def test_detected_at_is_telemetry_timestamp(self):
        pattern = SpeedDetector().detect(make_point(vessel_type="tanker", speed=40), EMPTY)
        assert pattern.detected_at == BASE_TIME

    @pytest.mark.parametrize("deviation,expected", [
        (0.5, None), (0.6, Severity.MEDIUM), (0.76, Severity.HIGH), (1.0, Severity.HIGH), (1.01, Severity.CRITICAL),
    ])
    def test_thresholds(self, deviation, expected):
        assert classify_speed_deviation(deviation, SpeedConfig()) == expected


# ── AIS gap ──────────────────────────────────────────────────────────────────

class TestAISGapDetector:
    def _after_gap(self, hours):
        before = [make_point(timestamp=BASE_TIME + timedelta(minutes=10 * i)) for i in range(3)]
        point = make_point(timestamp=before[-1].timestamp + timedelta(hours=hours))
        return point, _ctx(before)

    def test_five_hour_gap_is_medium(self):
        point, ctx = self._after_gap(5)
        pattern = AISGapDetector().detect(point, ctx)
        assert pattern.severity == Severity.MEDIUM
        assert pattern.confidence == pytest.approx(0.6 + 5 / 48, abs=1e-4)
        assert pattern.evidence["gap_hours"] == 5.0

    def test_thirteen_hour_gap_is_high(self):
        point, ctx = self._after_gap(13)
        assert AISGapDetector().detect(point, ctx).severity == Severity.HIGH

    def test_day_long_gap_is_critical(self):
        point, ctx = self._after_gap(25)
        pattern = AISGapDetector().detect(point, ctx)
        assert pattern.severity == Severity.CRITICAL
        assert pattern.confidence == 0.95

    def test_regular_reporting_is_silent(self):
        point, ctx = self._after_gap(0.5)
        assert AISGapDetector().detect(point, ctx) is None

    def test_exactly_four_hours_is_silent(self):
        point, ctx = self._after_gap(4)
        assert AISGapDetector().detect(point, ctx) is None

    def test_gap_older_than_window_is_ignored(self):
        old = make_point(timestamp=BASE_TIME - timedelta(hours=60))
        recent = [make_point(timestamp=BASE_TIME + timedelta(minutes=10 * i)) for i in range(3)]
        point = make_point(timestamp=recent[-1].timestamp + timedelta(minutes=10))
        assert AISGapDetector().detect(point, _ctx([old, *recent])) is None

    def test_first_point_is_silent(self):
        assert AISGapDetector().detect(make_point(), EMPTY) is None

    def test_largest_gap_helper(self):
        pts = [make_point(timestamp=BASE_TIME + timedelta(hours=h)) for h in (0, 1, 7, 8)]
        hours, before, after = largest_gap(pts)
        assert hours == 6
        assert before.timestamp == BASE_TIME + timedelta(hours=1)
        assert after.timestamp == BASE_TIME + timedelta(hours=7)


# ── Behavioral ───────────────────────────────────────────────────────────────

def _zigzag_history(n=4):
    return [
        make_point(timestamp=BASE_TIME - timedelta(minutes=10 * (n - i)), course=0.0 if i % 2 == 0 else 180.0)
        for i in range(n)
    ]


class TestBehavioralDetector:
    def test_course_variation_factor(self):
        assert course_variation_factor(_zigzag_history()) == 1.0
        assert course_variation_factor([make_point()]) == 0.0

    def test_extreme_profile_is_critical(self):
        point = make_point(vessel_type="tanker", speed=40, signal_strength=0.5, course=0.0)
        pattern = BehavioralDetector().detect(point, _ctx(_zigzag_history()))
        assert pattern.severity == Severity.CRITICAL
        assert pattern.confidence == 0.78
        assert pattern.evidence["score"] == 1.0

    def test_moderate_profile_is_high(self):
        # 0.4·1.0 + 0.3·1.0 + 0.3·0.2 = 0.76
        point = make_point(vessel_type="cargo", speed=28, signal_strength=0.8, course=0.0)
        pattern = BehavioralDetector().detect(point, _ctx(_zigzag_history()))
        assert pattern.severity == Severity.HIGH

    def test_normal_profile_is_silent(self):
        assert BehavioralDetector().detect(make_point(), _ctx(_zigzag_history())) is None


# ── Temporal ─────────────────────────────────────────────────────────────────

class TestTemporalDetector:
    @pytest.mark.parametrize("hour,minute", [(23, 30), (0, 0), (2, 59)])
    def test_fast_at_night_fires(self, hour, minute):
        point = make_point(speed=20, timestamp=BASE_TIME.replace(hour=hour, minute=minute))
        pattern = TemporalDetector().detect(point, EMPTY)
        assert pattern.severity == Severity.MEDIUM
        assert pattern.confidence == 0.65

    @pytest.mark.parametrize("hour,minute", [(23, 0), (3, 0), (12, 0)])
    def test_outside_window_is_silent(self, hour, minute):
        point = make_point(speed=20, timestamp=BASE_TIME.replace(hour=hour, minute=minute))
        assert TemporalDetector().detect(point, EMPTY) is None

    def test_slow_at_night_is_silent(self):
        point = make_point(speed=15, timestamp=BASE_TIME.replace(hour=1))
        assert TemporalDetector().detect(point, EMPTY) is None


# ── Geospatial ───────────────────────────────────────────────────────────────

class TestGeospatialDetector:
    def test_inside_zone_is_high(self):
        pattern = GeospatialDetector().detect(make_point(lat=60.1, lng=30.1), EMPTY)
        assert pattern.kind == PatternKind.GEOSPATIAL
        assert pattern.severity == Severity.HIGH
        assert pattern.confidence == 0.88
        assert pattern.evidence["zone"] == "Gulf of Finland approaches"

    def test_outside_zones_is_silent(self):
        assert GeospatialDetector().detect(make_point(lat=35.0, lng=20.0), EMPTY) is None

    def test_just_outside_radius(self):
        # 100 km / 111 ≈ 0.9009°
        assert GeospatialDetector().detect(make_point(lat=60.95, lng=30.0), EMPTY) is None

    def test_buffer_widens_zone(self):
        zones = GeospatialConfig().zones
        assert find_restricted_zone(60.95, 30.0, zones) is None
        assert find_restricted_zone(60.95, 30.0, zones, buffer_km=10).name == "Gulf of Finland approaches"


# ── Loitering ────────────────────────────────────────────────────────────────

def _stationary(n, hours_apart, lat=36.52, lng=22.70):
    return [
        make_point(timestamp=BASE_TIME + timedelta(hours=hours_apart * i), lat=lat + 0.001 * (i % 2), lng=lng, speed=0.5)
        for i in range(n)
    ]


class TestLoiteringDetector:
    def test_nine_hours_in_place_is_medium(self):
        track = _stationary(10, 1)
        pattern = LoiteringDetector().detect(track[-1], _ctx(track[:-1]))
        assert pattern.kind == PatternKind.LOITERING
        assert pattern.severity == Severity.MEDIUM
        assert pattern.confidence == 0.75
        assert pattern.evidence["duration_hours"] == 9.0

    def test_too_few_positions(self):
        track = _stationary(4, 4)
        assert LoiteringDetector().detect(track[-1], _ctx(track[:-1])) is None

    def test_short_stay_is_silent(self):
        track = _stationary(10, 0.5)
        assert LoiteringDetector().detect(track[-1], _ctx(track[:-1])) is None

    def test_moving_vessel_is_silent(self):
        track = [make_point(timestamp=BASE_TIME + timedelta(hours=i), lat=36.0 + 0.1 * i) for i in range(10)]
        assert LoiteringDetector().detect(track[-1], _ctx(track[:-1])) is None


# ── Route deviation ──────────────────────────────────────────────────────────

class TestRouteDeviationDetector:
    def _track(self, courses, step_minutes=10):
        return [
            make_point(timestamp=BASE_TIME + timedelta(minutes=step_minutes * i), course=c)
            for i, c in enumerate(courses)
        ]

    def test_three_reversals_fire(self):
        track = self._track([0, 180, 0, 180])
        pattern = RouteDeviationDetector().detect(track[-1], _ctx(track[:-1]))
        assert pattern.kind == PatternKind.ROUTE_DEVIATION
        assert pattern.severity == Severity.MEDIUM
        assert pattern.confidence == 0.7
        assert pattern.evidence["course_changes"] == 3

    def test_two_reversals_are_silent(self):
        track = self._track([0, 180, 0])
        assert RouteDeviationDetector().detect(track[-1], _ctx(track[:-1])) is None

    def test_gentle_turns_are_silent(self):
        track = self._track([0, 80, 160, 240, 320])
        assert RouteDeviationDetector().detect(track[-1], _ctx(track[:-1])) is None

    def test_changes_outside_window_ignored(self):
        track = self._track([0, 180, 0, 180], step_minutes=180)
        assert RouteDeviationDetector().detect(track[-1], _ctx(track[:-1])) is None


# ── Rendezvous ───────────────────────────────────────────────────────────────

class TestRendezvousDetector:
    def test_slow_close_neighbour_fires(self):
        point = make_point(vessel_id="A", lat=36.520, lng=22.700, speed=1.0)
        other = make_point(vessel_id="B", lat=36.5215, lng=22.700, speed=0.5,
                           timestamp=BASE_TIME - timedelta(minutes=10))
        pattern = RendezvousDetector().detect(point, _ctx(neighbours=[other]))
        assert pattern.kind == PatternKind.RENDEZVOUS
        assert pattern.severity == Severity.HIGH
        assert pattern.confidence == 0.82
        assert pattern.evidence["other_vessel_id"] == "B"

    @pytest.mark.parametrize("lat,speed,minutes_ago", [
        (36.54, 0.5, 10),    # ~2.2 km away
        (36.5215, 5.0, 10),  # neighbour making way
        (36.5215, 0.5, 45),  # stale neighbour position
    ])
    def test_no_rendezvous(self, lat, speed, minutes_ago):
        point = make_point(vessel_id="A", lat=36.520, lng=22.700, speed=1.0)
        other = make_point(vessel_id="B", lat=lat, lng=22.700, speed=speed,
                           timestamp=BASE_TIME - timedelta(minutes=minutes_ago))
        assert RendezvousDetector().detect(point, _ctx(neighbours=[other])) is None

    def test_fast_vessel_is_silent(self):
        point = make_point(vessel_id="A", lat=36.520, lng=22.700, speed=10.0)
        other = make_point(vessel_id="B", lat=36.5201, lng=22.700, speed=0.5)
        assert RendezvousDetector().detect(point, _ctx(neighbours=[other])) is None


# ── Identity switch ──────────────────────────────────────────────────────────

class TestIdentitySwitchDetector:
    def _history(self, **identity):
        return [make_point(timestamp=BASE_TIME - timedelta(minutes=10), **identity)]

    def test_name_change_fires(self):
        history = self._history(vessel_name="OCEAN STAR", imo="9300005")
        point = make_point(vessel_name="NORTHERN LIGHT", imo="9300005")
        pattern = IdentitySwitchDetector().detect(point, _ctx(history))
        assert pattern.kind == PatternKind.IDENTITY_SWITCH
        assert pattern.severity == Severity.HIGH
        assert pattern.confidence == 0.91
        assert pattern.evidence["conflicting_fields"] == ["vessel_name"]

    def test_imo_change_fires(self):
        history = self._history(vessel_name="OCEAN STAR", imo="9300005")
        point = make_point(vessel_name="OCEAN STAR", imo="9411223")
        assert IdentitySwitchDetector().detect(point, _ctx(history)).evidence["conflicting_fields"] == ["imo"]

    def test_cosmetic_name_difference_is_silent(self):
        history = self._history(vessel_name="OCEAN STAR")
        point = make_point(vessel_name="M/V Ocean Star")
        assert IdentitySwitchDetector().detect(point, _ctx(history)) is None

    def test_transliterated_name_is_silent(self):
        history = self._history(vessel_name="VOLGA")
        point = make_point(vessel_name="ВОЛГА")
        assert IdentitySwitchDetector().detect(point, _ctx(history)) is None

    def test_no_prior_identity_is_silent(self):
        point = make_point(vessel_name="OCEAN STAR")
        assert IdentitySwitchDetector().detect(point, _ctx([make_point(timestamp=BASE_TIME - timedelta(hours=1))])) is None

    def test_point_without_identity_is_silent(self):
        history = self._history(vessel_name="OCEAN STAR")
        assert IdentitySwitchDetector().detect(make_point(), _ctx(history)) is None

    def test_normalize_vessel_name(self):
        assert normalize_vessel_name("M/T  Sea-Breeze!") == "SEA BREEZE"
        assert normalize_vessel_name(None) == ""
