"""BumpMap client — data models shared by the detector and the channels."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MotionSample:
    """One raw 3-axis acceleration reading (m/s^2, gravity included)."""
    x: float
    y: float
    z: float
    timestamp_ms: int


@dataclass(frozen=True)
class Baseline:
    """Resting acceleration vector of the device."""
    x: float = 0.0
    y: float = 0.0
    z: float = 9.81


@dataclass(frozen=True)
class CalibrationResult:
    baseline: Baseline
    samples: int
    complete: bool          # False when the timeout hit before the minimum sample count


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    timestamp_ms: int
    speed: float | None = None
    accuracy: float | None = None


@dataclass(frozen=True)
class CandidateEvent:
    latitude: float
    longitude: float
    intensity: int          # 0-10
    confidence: int         # 0-100
    timestamp_ms: int

    def to_payload(self, detection_method: str = "sensor") -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "intensity": self.intensity,
            "confidence": self.confidence,
            "timestamp": self.timestamp_ms,
            "detectionMethod": detection_method,
        }


@dataclass(frozen=True)
class MergeResult:
    created: bool
    verifications: int
    record_id: int | None = None
