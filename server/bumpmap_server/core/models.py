"""BumpMap server — core internal data models.

These are plain dataclasses with no framework dependencies.
JSON payloads are converted to/from these at the API boundary.
"""

from __future__ import annotations

from dataclasses import dataclass

from bumpmap_server.core.geo import quantize, round_half_up

DETECTION_METHODS = ("sensor", "manual")


@dataclass(frozen=True)
class CandidateEvent:
    """A locally detected road anomaly, as submitted by a client."""
    latitude: float
    longitude: float
    intensity: int
    timestamp_ms: int
    confidence: int = 0


@dataclass(frozen=True)
class CommunityRecord:
    """Merged belief about one physical anomaly.

    Records are never mutated; the aggregation engine stores an updated copy
    on every reinforcement so readers only ever see snapshots.
    """
    id: int
    latitude: float
    longitude: float
    intensity: float          # exact cumulative mean of contributing intensities
    verified_count: int
    last_verified_ms: int
    detection_method: str = "sensor"
    created_ms: int = 0
    contributor: str = "anonymous"

    @property
    def confidence(self) -> int:
        return min(self.verified_count * 10, 100)

    def snapshot(self, decimals: int = 4) -> dict:
        """Aggregate-ready view with quantized coordinates."""
        return {
            "id": self.id,
            "latitude": quantize(self.latitude, decimals),
            "longitude": quantize(self.longitude, decimals),
            "intensity": round_half_up(self.intensity),
            "verifications": self.verified_count,
            "lastVerified": self.last_verified_ms,
            "confidence": self.confidence,
            "detectionMethod": self.detection_method,
        }

    def to_geojson_feature(self) -> dict:
        return {
            "type": "Feature",
            "geometry": {
                "type": "Point",
                "coordinates": [round(self.longitude, 6), round(self.latitude, 6)],
            },
            "properties": {
                "id": self.id,
                "intensity": round(self.intensity, 1),
                "verifications": self.verified_count,
                "confidence": self.confidence,
                "last_verified_ms": self.last_verified_ms,
                "detection_method": self.detection_method,
            },
        }


@dataclass(frozen=True)
class MergeResult:
    created: bool
    verifications: int
    record: CommunityRecord


@dataclass(frozen=True)
class TrafficSample:
    latitude: float
    longitude: float
    speed: float
    timestamp_ms: int
    time_of_day: str
    day_of_week: str
    contributor: str = "anonymous"


@dataclass(frozen=True)
class TripPoint:
    latitude: float
    longitude: float
    speed: float
    timestamp_ms: int


@dataclass(frozen=True)
class TripRollup:
    distance_m: float
    average_speed: float
    max_speed: float
    started_ms: int
    ended_ms: int
    point_count: int = 0

    def to_dict(self) -> dict:
        return {
            "distance": round(self.distance_m, 2),
            "averageSpeed": round(self.average_speed, 2),
            "maxSpeed": self.max_speed,
            "startedAt": self.started_ms,
            "endedAt": self.ended_ms,
            "duration": self.ended_ms - self.started_ms,
            "points": self.point_count,
        }
