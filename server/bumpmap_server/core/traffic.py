"""Traffic samples — enqueues contributions and folds them into density views.

The recorder decouples the request path from storage: callers enqueue
without blocking and a background consumer appends to storage. It depends
on the SampleQueue and RecordStorage protocols, not concrete implementations.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from bumpmap_server.core.models import TrafficSample

if TYPE_CHECKING:
    from bumpmap_server.core.stats import ServerStats
    from bumpmap_server.queue.base import SampleQueue
    from bumpmap_server.storage.base import RecordStorage

log = structlog.get_logger()

# A traffic cell needs this many samples before it is reported.
MIN_CELL_POINTS = 3

_DAY_ORDER = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def make_traffic_sample(latitude: float, longitude: float, speed: float, timestamp_ms: int,
                        contributor: str = "anonymous", time_of_day: str | None = None,
                        day_of_week: str | None = None) -> TrafficSample:
    """Build a sample, deriving time of day ("H:MM") and weekday in UTC when absent."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return TrafficSample(
        latitude=latitude,
        longitude=longitude,
        speed=speed,
        timestamp_ms=timestamp_ms,
        time_of_day=time_of_day or f"{dt.hour}:{dt.minute:02d}",
        day_of_week=day_of_week or _DAY_ORDER[dt.weekday()],
        contributor=contributor,
    )


class TrafficRecorder:
    """Accepts traffic samples and hands them to storage in the background."""

    def __init__(self, queue: SampleQueue, storage: RecordStorage, stats: ServerStats) -> None:
        self._queue = queue
        self._storage = storage
        self._stats = stats

    def record(self, sample: TrafficSample) -> bool:
        """Enqueue a sample. Returns False if it was dropped because the queue is full."""
        try:
            self._queue.put_nowait(sample)
        except asyncio.QueueFull:
            log.warning("traffic_sample_dropped", reason="queue_full",
                        queue_depth=self._queue.qsize())
            self._stats.record_traffic_dropped()
            return False
        self._stats.update_queue_depth(self._queue.qsize())
        return True

    async def run_storage_consumer(self) -> None:
        """Consume from the queue and write to storage. Runs as a background task."""
        log.info("traffic_consumer_started")
        while True:
            sample = await self._queue.get()
            try:
                self._storage.append_traffic(sample)
                self._stats.record_traffic_stored()
                self._stats.update_queue_depth(self._queue.qsize())
            except Exception:
                log.error("traffic_write_failed", timestamp_ms=sample.timestamp_ms,
                          exc_info=True)
                self._stats.record_storage_error()


def aggregate_traffic(samples: list[TrafficSample],
                      min_points: int = MIN_CELL_POINTS) -> list[dict]:
    """Group samples by ~110 m cell, time of day and weekday."""
    groups: dict[tuple, list[float]] = defaultdict(list)
    for s in samples:
        key = (round(s.latitude, 3), round(s.longitude, 3), s.time_of_day, s.day_of_week)
        groups[key].append(s.speed)

    result = []
    for (lat, lon, tod, dow), speeds in groups.items():
        if len(speeds) < min_points:
            continue
        result.append({
            "latitude": lat,
            "longitude": lon,
            "averageSpeed": round(sum(speeds) / len(speeds), 2),
            "dataPoints": len(speeds),
            "timeOfDay": tod,
            "dayOfWeek": dow,
            "speedRange": {"min": min(speeds), "max": max(speeds)},
            "reliability": min(len(speeds) * 5, 100),
        })
    result.sort(key=lambda g: g["dataPoints"], reverse=True)
    return result


def _hour_of(time_of_day: str) -> int | None:
    try:
        return int(time_of_day.split(":", 1)[0])
    except (AttributeError, ValueError):
        return None


def traffic_patterns(samples: list[TrafficSample]) -> dict:
    """Hourly and per-weekday speed patterns for a set of samples."""
    hourly: dict[int, list[float]] = defaultdict(list)
    daily: dict[str, list[float]] = defaultdict(list)
    for s in samples:
        hour = _hour_of(s.time_of_day)
        if hour is not None:
            hourly[hour].append(s.speed)
        daily[s.day_of_week].append(s.speed)

    def _day_key(day: str) -> int:
        return _DAY_ORDER.index(day) if day in _DAY_ORDER else len(_DAY_ORDER)

    return {
        "hourlyPatterns": [
            {
                "hour": hour,
                "averageSpeed": round(sum(speeds) / len(speeds), 2),
                "dataPoints": len(speeds),
                "speedRange": {"min": min(speeds), "max": max(speeds)},
            }
            for hour, speeds in sorted(hourly.items())
        ],
        "dailyPatterns": [
            {
                "day": day,
                "averageSpeed": round(sum(speeds) / len(speeds), 2),
                "dataPoints": len(speeds),
            }
            for day, speeds in sorted(daily.items(), key=lambda kv: _day_key(kv[0]))
        ],
    }
