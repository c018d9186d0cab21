"""Trip rollup — folds a trip's point stream into distance and speed figures."""

from __future__ import annotations

from typing import Iterable

from bumpmap_server.core.geo import haversine_m
from bumpmap_server.core.models import TripPoint, TripRollup


def finalize(points: Iterable[TripPoint]) -> TripRollup:
    """Compute the rollup for a completed trip.

    Distance is the plain sum of great-circle legs between consecutive points
    in timestamp order (no smoothing, no outlier rejection). Speeds that are
    zero or negative are excluded from both average and max rather than
    counted as zero; a trip without any positive speed reports 0 for both.
    """
    ordered = sorted(points, key=lambda p: p.timestamp_ms)
    if not ordered:
        return TripRollup(distance_m=0.0, average_speed=0.0, max_speed=0.0,
                          started_ms=0, ended_ms=0, point_count=0)

    distance = 0.0
    for prev, cur in zip(ordered, ordered[1:]):
        distance += haversine_m(prev.latitude, prev.longitude, cur.latitude, cur.longitude)

    speeds = [p.speed for p in ordered if p.speed > 0]
    average_speed = sum(speeds) / len(speeds) if speeds else 0.0
    max_speed = max(speeds) if speeds else 0.0

    return TripRollup(
        distance_m=distance,
        average_speed=average_speed,
        max_speed=max_speed,
        started_ms=ordered[0].timestamp_ms,
        ended_ms=ordered[-1].timestamp_ms,
        point_count=len(ordered),
    )
