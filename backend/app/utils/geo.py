"""Shared geodesic distance utilities.

Canonical implementations of haversine distance used across the detectors,
the predictive analyzer and the correlation engine.
"""
from __future__ import annotations

import math

_EARTH_RADIUS_NM: float = 3440.065   # Earth mean radius in nautical miles
_EARTH_RADIUS_KM: float = 6371.0     # Earth mean radius in kilometres
KM_PER_DEGREE: float = 111.0


def _central_angle(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_nm(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in nautical miles between two WGS-84 coordinates."""
    return _EARTH_RADIUS_NM * _central_angle(lat1, lon1, lat2, lon2)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two WGS-84 coordinates."""
    return _EARTH_RADIUS_KM * _central_angle(lat1, lon1, lat2, lon2)


def degree_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Flat Euclidean distance in degrees (coarse zone checks only)."""
    return math.sqrt((lat1 - lat2) ** 2 + (lon1 - lon2) ** 2)


def local_km_offset(lat: float, lon: float, ref_lat: float, ref_lon: float) -> float:
    """Equirectangular distance in km from a reference point; fine below ~50 km."""
    dy = (lat - ref_lat) * KM_PER_DEGREE
    dx = (lon - ref_lon) * KM_PER_DEGREE * math.cos(math.radians(ref_lat))
    return math.sqrt(dx * dx + dy * dy)


def heading_diff(h1: float, h2: float) -> float:
    """Minimum angular difference between two headings, result in [0, 180]."""
    diff = abs(h1 - h2) % 360.0
    return diff if diff <= 180.0 else 360.0 - diff


def project_position(lat: float, lon: float, course_deg: float, distance_nm: float) -> tuple[float, float]:
    """Dead-reckon a position along a great circle.

    Returns (lat, lon) with longitude wrapped to [-180, 180).
    """
    delta = distance_nm / _EARTH_RADIUS_NM
    theta = math.radians(course_deg)
    phi1 = math.radians(lat)
    lam1 = math.radians(lon)
    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    lon2 = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return math.degrees(phi2), lon2
