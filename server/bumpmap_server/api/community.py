"""Community speed bump and traffic API endpoints.

Thin FastAPI adapter: parses JSON bodies and query strings into core models
and calls the aggregation engine, the traffic recorder and the hub.
"""

from __future__ import annotations

import json
import math
import time

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from bumpmap_server.core.models import CandidateEvent
from bumpmap_server.core.stats import CHANNEL_HTTP
from bumpmap_server.core.traffic import aggregate_traffic, make_traffic_sample, traffic_patterns

router = APIRouter(prefix="/api/v1/community")

# Legacy detection method labels accepted from older clients.
_METHOD_ALIASES = {
    "user_reported": "manual",
    "simulated": "sensor",
}

_DAY_MS = 24 * 60 * 60 * 1000


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(content={"error": message}, status_code=status)


def _contributor(request: Request) -> str:
    return request.headers.get("x-user-id") or "anonymous"


async def _read_json(request: Request) -> dict:
    """Decode a JSON object body. Raises ValueError."""
    try:
        body = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError("invalid JSON") from exc
    if not isinstance(body, dict):
        raise ValueError("body must be a JSON object")
    return body


def _finite(value: object, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{key} must be a finite number")
    return value


def _require_number(body: dict, key: str) -> float:
    if body.get(key) is None:
        raise ValueError(f"{key} is required and must be a number")
    return _finite(body[key], key)


def _optional_label(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _parse_event(body: dict) -> tuple[CandidateEvent, str]:
    """Parse a speed bump report. Returns (event, detection_method)."""
    latitude = _require_number(body, "latitude")
    longitude = _require_number(body, "longitude")
    intensity = _require_number(body, "intensity")
    timestamp = _finite(body.get("timestamp") or int(time.time() * 1000), "timestamp")
    method = body.get("detectionMethod") or "manual"
    if not isinstance(method, str):
        raise ValueError("detectionMethod must be a string")
    method = _METHOD_ALIASES.get(method, method)
    confidence = _finite(body.get("confidence") or 0, "confidence")
    event = CandidateEvent(
        latitude=latitude,
        longitude=longitude,
        intensity=int(intensity),
        timestamp_ms=int(timestamp),
        confidence=int(confidence),
    )
    return event, method


def _bbox(north: float | None, south: float | None,
          east: float | None, west: float | None) -> tuple[float, float, float, float] | None:
    if north is None or south is None or east is None or west is None:
        return None
    return south, north, west, east


@router.post("/speed-bumps")
async def report_speed_bump(request: Request) -> JSONResponse:
    """Merge a speed bump report into the community map.

    Responds 201 when a new record was created and 200 when an existing one
    was reinforced. The merged event is relayed to every live connection.
    """
    from bumpmap_server.main import get_engine, get_hub, get_stats

    stats = get_stats()
    contributor = _contributor(request)
    try:
        event, method = _parse_event(await _read_json(request))
        result = get_engine().submit(event, contributor=contributor, detection_method=method)
    except ValueError as exc:
        stats.record_rejected()
        return _error(400, str(exc))

    stats.record_event(contributor, result.created, channel=CHANNEL_HTTP)
    await get_hub().publish_speed_bump(event, result, contributor)

    return JSONResponse(
        content={
            "message": "New speed bump reported" if result.created else "Speed bump verification added",
            "created": result.created,
            "verifications": result.verifications,
            "recordId": result.record.id,
        },
        status_code=201 if result.created else 200,
    )


@router.get("/speed-bumps")
async def get_speed_bumps(
    north: float | None = Query(default=None),
    south: float | None = Query(default=None),
    east: float | None = Query(default=None),
    west: float | None = Query(default=None),
) -> JSONResponse:
    """Community records inside a bounding box, most verified first."""
    from bumpmap_server.main import get_engine

    bbox = _bbox(north, south, east, west)
    if bbox is None:
        return _error(400, "Bounding box coordinates required: north, south, east, west")
    return JSONResponse(content=get_engine().query(*bbox))


@router.delete("/speed-bumps")
async def delete_speed_bumps(request: Request) -> JSONResponse:
    """Delete community records by id.

    Body: {"record_ids": [1, 2, 3]}
    """
    from bumpmap_server.main import get_engine, get_stats

    try:
        body = await _read_json(request)
    except ValueError as exc:
        return _error(400, str(exc))
    record_ids = {i for i in body.get("record_ids", []) if isinstance(i, int)}
    if not record_ids:
        return JSONResponse(content={"deleted": 0})

    deleted = get_engine().delete(record_ids)
    get_stats().record_deleted(deleted)
    return JSONResponse(content={"deleted": deleted})


@router.get("/map")
async def get_map() -> JSONResponse:
    """All community records as a GeoJSON FeatureCollection."""
    from bumpmap_server.main import get_engine

    return JSONResponse(content=get_engine().geojson(), media_type="application/geo+json")


@router.post("/traffic")
async def contribute_traffic(request: Request) -> JSONResponse:
    """Contribute one speed sample."""
    from bumpmap_server.main import get_recorder, get_stats

    contributor = _contributor(request)
    try:
        body = await _read_json(request)
        latitude = _require_number(body, "latitude")
        longitude = _require_number(body, "longitude")
        speed = _require_number(body, "speed")
        time_of_day = _optional_label(body, "timeOfDay")
        day_of_week = _optional_label(body, "dayOfWeek")
    except ValueError as exc:
        return _error(400, str(exc))

    sample = make_traffic_sample(
        latitude, longitude, float(speed),
        timestamp_ms=int(time.time() * 1000),
        contributor=contributor,
        time_of_day=time_of_day,
        day_of_week=day_of_week,
    )
    get_stats().record_traffic(contributor, channel=CHANNEL_HTTP)
    if not get_recorder().record(sample):
        return _error(503, "traffic queue full, retry later")
    return JSONResponse(content={"message": "Traffic data contributed successfully"},
                        status_code=201)


@router.get("/traffic")
async def get_traffic(
    north: float | None = Query(default=None),
    south: float | None = Query(default=None),
    east: float | None = Query(default=None),
    west: float | None = Query(default=None),
    timeRange: str | None = Query(default=None),
) -> JSONResponse:
    """Traffic density cells inside a bounding box.

    ``timeRange`` is ``"<start_ms>,<end_ms>"``.
    """
    from bumpmap_server.main import get_storage

    bbox = _bbox(north, south, east, west)
    if bbox is None:
        return _error(400, "Bounding box coordinates required: north, south, east, west")

    samples = get_storage().traffic_in_bbox(*bbox)
    if timeRange:
        try:
            start, end = (int(v) for v in timeRange.split(","))
        except ValueError:
            return _error(400, "timeRange must be '<start_ms>,<end_ms>'")
        samples = [s for s in samples if start <= s.timestamp_ms <= end]

    return JSONResponse(content=aggregate_traffic(samples))


@router.get("/traffic/patterns")
async def get_traffic_patterns(
    latitude: float | None = Query(default=None),
    longitude: float | None = Query(default=None),
    radius: float = Query(default=0.01, gt=0),
) -> JSONResponse:
    """Hourly and daily speed patterns around a point (radius in degrees)."""
    from bumpmap_server.main import get_storage

    if latitude is None or longitude is None:
        return _error(400, "Latitude and longitude are required")

    samples = get_storage().traffic_in_bbox(
        latitude - radius, latitude + radius, longitude - radius, longitude + radius,
    )
    result = {"location": {"latitude": latitude, "longitude": longitude, "radius": radius}}
    result.update(traffic_patterns(samples))
    return JSONResponse(content=result)


@router.get("/stats")
async def get_community_stats() -> JSONResponse:
    """Totals for speed bumps and traffic, plus the last day's activity."""
    from bumpmap_server.main import get_engine, get_storage

    storage = get_storage()
    samples = storage.all_traffic()
    avg_speed = sum(s.speed for s in samples) / len(samples) if samples else 0.0

    cutoff = int(time.time() * 1000) - _DAY_MS
    activity = [
        {
            "type": "speed_bump",
            "timestamp": r.created_ms,
            "location": {"latitude": r.latitude, "longitude": r.longitude},
            "anonymous": r.contributor == "anonymous",
        }
        for r in storage.all_records() if r.created_ms > cutoff
    ]
    activity.extend(
        {
            "type": "traffic_data",
            "timestamp": s.timestamp_ms,
            "location": {"latitude": s.latitude, "longitude": s.longitude},
            "anonymous": s.contributor == "anonymous",
        }
        for s in samples if s.timestamp_ms > cutoff
    )
    activity.sort(key=lambda a: a["timestamp"], reverse=True)

    return JSONResponse(content={
        "speedBumps": get_engine().summary(),
        "traffic": {
            "totalContributions": len(samples),
            "uniqueContributors": len({s.contributor for s in samples}),
            "averageSpeed": round(avg_speed, 2),
        },
        "recentActivity": activity[:20],
    })
