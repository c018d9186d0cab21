"""Trip rollup endpoint."""

from __future__ import annotations

import json
import math

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bumpmap_server.core.models import TripPoint
from bumpmap_server.core.rollup import finalize

router = APIRouter(prefix="/api/v1/trips")


def _parse_point(data: dict) -> TripPoint:
    try:
        point = TripPoint(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            speed=float(data.get("speed") or 0.0),
            timestamp_ms=int(data["timestamp"]),
        )
    except (KeyError, TypeError, ValueError, OverflowError, AttributeError) as exc:
        raise ValueError(f"invalid point: {exc}") from exc
    if not all(math.isfinite(v) for v in (point.latitude, point.longitude, point.speed)):
        raise ValueError("invalid point: coordinates and speed must be finite")
    return point


def _parse_points(body: object) -> list[TripPoint]:
    if not isinstance(body, dict):
        raise ValueError("body must be a JSON object")
    raw = body.get("points", [])
    if not isinstance(raw, list):
        raise ValueError("points must be a list")
    return [_parse_point(p) for p in raw]


@router.post("/rollup")
async def rollup_trip(request: Request) -> JSONResponse:
    """Fold a completed trip's points into distance and speed figures.

    Body: {"points": [{"latitude", "longitude", "speed", "timestamp"}, ...]}
    """
    from bumpmap_server.main import get_config

    try:
        body = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(content={"error": "invalid JSON"}, status_code=400)
    try:
        points = _parse_points(body)
    except ValueError as exc:
        return JSONResponse(content={"error": str(exc)}, status_code=400)

    if len(points) > get_config().limits.max_trip_points:
        return JSONResponse(content={"error": "too many points"}, status_code=413)

    return JSONResponse(content=finalize(points).to_dict())
