"""Geodesy helpers shared by the aggregation engine and trip rollups."""

from __future__ import annotations

import math

# Earth radius in meters (for Haversine).
EARTH_RADIUS_M = 6_371_000.0

# Length of one degree of latitude, in meters.
METERS_PER_DEG_LAT = 111_320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def meters_to_lon_deg(meters: float, lat: float) -> float:
    """Degrees of longitude spanning ``meters`` at latitude ``lat``.

    Clamped to 180 near the poles where a degree of longitude shrinks to zero.
    """
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return 180.0
    return min(meters / (METERS_PER_DEG_LAT * cos_lat), 180.0)


def bbox_around(lat: float, lon: float, half_lat_deg: float,
                half_lon_deg: float | None = None) -> tuple[float, float, float, float]:
    """Return ``(south, north, west, east)`` centered on a point."""
    if half_lon_deg is None:
        half_lon_deg = half_lat_deg
    return lat - half_lat_deg, lat + half_lat_deg, lon - half_lon_deg, lon + half_lon_deg


def quantize(value: float, decimals: int = 4) -> float:
    """Snap a coordinate to a decimal grid (4 decimals is roughly 11 m)."""
    return round(value, decimals)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up, like JavaScript's Math.round."""
    return math.floor(value + 0.5)
