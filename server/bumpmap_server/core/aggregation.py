"""Spatial aggregation — merges incoming speed bump events into community records.

For each event, find the nearest existing record near the event. If found,
reinforce it (cumulative-mean intensity, one more verification); otherwise
create a new record. Merges are serialized under a single lock so two
concurrent reports of the same bump can never both create a record.

Proximity uses raw degree deltas: a record is a candidate when it sits in
the +/-MATCH_BOX_DEG box around the event, and the nearest candidate is the
one with the smallest |dlat| + |dlon|. Records within MERGE_RADIUS_M on the
ground are always candidates too, so no two records end up closer than the
merge radius even where the degree box is narrower than the radius
(longitude shrinks with latitude).
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Iterable, Protocol, TYPE_CHECKING

import structlog

from bumpmap_server.core.geo import (
    METERS_PER_DEG_LAT,
    bbox_around,
    haversine_m,
    meters_to_lon_deg,
)
from bumpmap_server.core.models import (
    DETECTION_METHODS,
    CandidateEvent,
    CommunityRecord,
    MergeResult,
)
from bumpmap_server.core.traffic import make_traffic_sample

if TYPE_CHECKING:
    from bumpmap_server.core.models import TrafficSample
    from bumpmap_server.storage.base import RecordStorage

log = structlog.get_logger()

# Two detections closer than this (meters) are the same physical bump.
MERGE_RADIUS_M = 50.0

# Half-width of the degree box searched around each event.
MATCH_BOX_DEG = 0.0005

MAX_INTENSITY = 10

SEARCH_PADDING = 1.1

# Latest instant a UTC datetime can hold (9999-12-31T23:59:59.999Z).
MAX_TIMESTAMP_MS = 253_402_300_799_999


class TrafficSink(Protocol):
    def record(self, sample: TrafficSample) -> bool: ...


def validate_event(event: CandidateEvent) -> None:
    """Raise ValueError if an event cannot be merged."""
    if not -90.0 <= event.latitude <= 90.0:
        raise ValueError(f"latitude {event.latitude} out of range")
    if not -180.0 <= event.longitude <= 180.0:
        raise ValueError(f"longitude {event.longitude} out of range")
    if not 0 <= event.intensity <= MAX_INTENSITY:
        raise ValueError(f"intensity {event.intensity} out of range 0-{MAX_INTENSITY}")
    if not 0 <= event.timestamp_ms <= MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp {event.timestamp_ms} out of range")


class AggregationEngine:
    """Owns the community record table. All writes go through ``submit``."""

    def __init__(
        self,
        storage: RecordStorage,
        traffic: TrafficSink | None = None,
        merge_radius_m: float = MERGE_RADIUS_M,
        match_box_deg: float = MATCH_BOX_DEG,
        snapshot_decimals: int = 4,
    ) -> None:
        self._storage = storage
        self._traffic = traffic
        self._merge_radius_m = merge_radius_m
        self._match_box_deg = match_box_deg
        self._snapshot_decimals = snapshot_decimals
        self._merge_lock = threading.Lock()

    @property
    def merge_radius_m(self) -> float:
        return self._merge_radius_m

    def _candidates(self, lat: float, lon: float) -> list[CommunityRecord]:
        """Records in the degree box around a point, plus any within the merge radius."""
        # Padded: haversine uses the mean Earth radius, the degree conversion does not.
        reach_m = self._merge_radius_m * SEARCH_PADDING
        half_lat = max(self._match_box_deg, reach_m / METERS_PER_DEG_LAT)
        half_lon = max(self._match_box_deg, meters_to_lon_deg(reach_m, lat))
        candidates = []
        for record in self._storage.records_in_bbox(*bbox_around(lat, lon, half_lat, half_lon)):
            in_box = (abs(record.latitude - lat) < self._match_box_deg
                      and abs(record.longitude - lon) < self._match_box_deg)
            if in_box or haversine_m(lat, lon, record.latitude, record.longitude) <= self._merge_radius_m:
                candidates.append(record)
        return candidates

    def find_match(self, lat: float, lon: float) -> CommunityRecord | None:
        """Nearest candidate by Manhattan distance in degrees; first wins on ties."""
        best = None
        best_dist = float("inf")
        for record in self._candidates(lat, lon):
            d = abs(record.latitude - lat) + abs(record.longitude - lon)
            if d < best_dist:
                best_dist = d
                best = record
        return best

    def submit(self, event: CandidateEvent, contributor: str = "anonymous",
               detection_method: str = "sensor") -> MergeResult:
        """Merge one event into the record table.

        The stored intensity is the exact running mean of every contribution,
        not a value rounded at each step; rounding happens only in
        ``CommunityRecord.snapshot``. Rounding on every merge would drift away
        from the mean of the inputs as verifications accumulate.

        Raises ValueError before touching the table if the event is invalid.
        Once merged, the result stands: a failure to derive the traffic sample
        is logged and never reported as a rejected submission.
        """
        validate_event(event)
        if detection_method not in DETECTION_METHODS:
            raise ValueError(f"unknown detection method {detection_method!r}")

        with self._merge_lock:
            match = self.find_match(event.latitude, event.longitude)
            if match is not None:
                n = match.verified_count
                record = replace(
                    match,
                    intensity=(match.intensity * n + event.intensity) / (n + 1),
                    verified_count=n + 1,
                    last_verified_ms=event.timestamp_ms,
                )
                created = False
            else:
                record = CommunityRecord(
                    id=self._storage.next_record_id(),
                    latitude=event.latitude,
                    longitude=event.longitude,
                    intensity=float(event.intensity),
                    verified_count=1,
                    last_verified_ms=event.timestamp_ms,
                    detection_method=detection_method,
                    created_ms=int(time.time() * 1000),
                    contributor=contributor,
                )
                created = True
            self._storage.put_record(record)

        if created:
            log.info("record_created", record_id=record.id,
                     lat=round(record.latitude, 6), lon=round(record.longitude, 6),
                     intensity=event.intensity, contributor=contributor[:8])
        else:
            log.info("record_reinforced", record_id=record.id,
                     verifications=record.verified_count,
                     intensity=round(record.intensity, 2), contributor=contributor[:8])

        if self._traffic is not None:
            try:
                sample = make_traffic_sample(
                    event.latitude, event.longitude, 0.0, event.timestamp_ms, contributor,
                )
            except (ValueError, OverflowError, OSError):
                log.exception("traffic_sample_failed", record_id=record.id,
                              timestamp_ms=event.timestamp_ms)
            else:
                self._traffic.record(sample)

        return MergeResult(created=created, verifications=record.verified_count, record=record)

    def records(self, south: float, north: float, west: float, east: float) -> list[CommunityRecord]:
        """Records in a bounding box. Never takes the merge lock."""
        return self._storage.records_in_bbox(south, north, west, east)

    def query(self, south: float, north: float, west: float, east: float) -> list[dict]:
        """Snapshots of the records in a bounding box, most verified first."""
        records = sorted(self.records(south, north, west, east),
                         key=lambda r: r.verified_count, reverse=True)
        return [r.snapshot(self._snapshot_decimals) for r in records]

    def delete(self, record_ids: Iterable[int]) -> int:
        with self._merge_lock:
            deleted = self._storage.delete_records(record_ids)
        log.info("records_deleted", count=deleted)
        return deleted

    def summary(self) -> dict:
        """Totals over the whole record table."""
        records = self._storage.all_records()
        total_verifications = sum(r.verified_count for r in records)
        avg_intensity = sum(r.intensity for r in records) / len(records) if records else 0.0
        return {
            "totalReports": len(records),
            "totalVerifications": total_verifications,
            "averageIntensity": round(avg_intensity, 2),
        }

    def geojson(self) -> dict:
        """All records as a GeoJSON FeatureCollection."""
        return {
            "type": "FeatureCollection",
            "features": [r.to_geojson_feature() for r in self._storage.all_records()],
        }
