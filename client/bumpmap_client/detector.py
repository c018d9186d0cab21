"""Motion event detector — turns a 3-axis acceleration stream into speed bump events.

The detector removes the device's resting vector (the calibration baseline)
from every sample and looks at the magnitude of what remains. A sample is a
detection when:

1. its magnitude exceeds the sensitivity threshold,
2. more than ``cooldown_ms`` have passed since the previous detection, and
3. it is a sharp transient: larger than ``spike_ratio`` times the mean
   magnitude of the last ``local_window`` buffered samples. Sustained
   vibration (rough road) raises that local mean and is rejected.

``on_sample`` runs inside the sensor callback, so it never waits: the
position comes from a PositionCache and listeners are plain callables.
A detection without a position fix is dropped, never queued.
"""

from __future__ import annotations

import asyncio
import math
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterable, Callable, Protocol, Sequence

import structlog

from bumpmap_client.models import Baseline, CalibrationResult, CandidateEvent, MotionSample
from bumpmap_client.position import PositionCache, PositionUnavailable

log = structlog.get_logger()

MAX_INTENSITY = 10


@dataclass
class DetectorConfig:
    sensitivity: float = 2.5
    cooldown_ms: int = 3000
    buffer_size: int = 20
    local_window: int = 5
    spike_ratio: float = 1.5
    calibration_samples: int = 50
    calibration_timeout_seconds: float = 5.0
    min_calibration_samples: int = 10
    recent_detections: int = 10


class Notifier(Protocol):
    """User-visible notifications ("calibration incomplete", "detection stopped")."""

    def notify(self, message: str, level: str = "info") -> None: ...


class LogNotifier:
    """Notifier that only writes to the log."""

    def notify(self, message: str, level: str = "info") -> None:
        method = getattr(log, level, log.info)
        method("user_notification", message=message)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def compute_baseline(samples: Sequence[MotionSample]) -> Baseline:
    """Componentwise arithmetic mean of calibration samples."""
    if not samples:
        raise ValueError("cannot compute a baseline from zero samples")
    n = len(samples)
    return Baseline(
        x=sum(s.x for s in samples) / n,
        y=sum(s.y for s in samples) / n,
        z=sum(s.z for s in samples) / n,
    )


def intensity_for(magnitude: float) -> int:
    return max(0, min(round_half_up(magnitude), MAX_INTENSITY))


def confidence_for(magnitude: float) -> int:
    return round_half_up(min(magnitude / 10, 1.0) * 100)


class MotionEventDetector:
    """Calibrated, cooldown-gated speed bump detector for one device."""

    def __init__(
        self,
        positions: PositionCache,
        config: DetectorConfig | None = None,
        notifier: Notifier | None = None,
        motion_supported: bool = True,
    ) -> None:
        self._positions = positions
        self._config = config or DetectorConfig()
        self._notifier = notifier or LogNotifier()
        self.motion_supported = motion_supported

        self._sensitivity = self._config.sensitivity
        self._baseline = Baseline()
        self._calibrated = False
        self._monitoring = False
        self._last_detection_ms: int | None = None
        self._buffer: deque[float] = deque(maxlen=self._config.buffer_size)
        self._recent: deque[CandidateEvent] = deque(maxlen=self._config.recent_detections)
        self._listeners: list[Callable[[CandidateEvent], None]] = []

    # -- state --------------------------------------------------------------

    @property
    def baseline(self) -> Baseline:
        return self._baseline

    @property
    def is_calibrated(self) -> bool:
        return self._calibrated

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def sensitivity(self) -> float:
        return self._sensitivity

    @sensitivity.setter
    def sensitivity(self, value: float) -> None:
        if value <= 0:
            raise ValueError("sensitivity must be positive")
        self._sensitivity = float(value)

    @property
    def buffer(self) -> tuple[float, ...]:
        """Magnitudes of the most recent samples, oldest first."""
        return tuple(self._buffer)

    @property
    def recent_detections(self) -> list[CandidateEvent]:
        """Most recent detections, newest first."""
        return list(self._recent)

    def on_detected(self, callback: Callable[[CandidateEvent], None]) -> None:
        """Register a "just detected" hook (haptics, submission, UI)."""
        self._listeners.append(callback)

    # -- calibration --------------------------------------------------------

    async def calibrate(self, samples: AsyncIterable[MotionSample]) -> CalibrationResult:
        """Average the next ``calibration_samples`` readings into a new baseline.

        Stops early at ``calibration_timeout_seconds``. Whatever was collected
        is committed and the detector is flagged calibrated even when fewer
        than ``min_calibration_samples`` arrived; detection quality degrades
        but the detector keeps running. With no samples at all the previous
        baseline is kept.
        """
        cfg = self._config
        collected: list[MotionSample] = []

        async def _collect() -> None:
            async for sample in samples:
                collected.append(sample)
                if len(collected) >= cfg.calibration_samples:
                    break

        try:
            await asyncio.wait_for(_collect(), timeout=cfg.calibration_timeout_seconds)
        except asyncio.TimeoutError:
            log.info("calibration_timeout", collected=len(collected),
                     wanted=cfg.calibration_samples)

        if collected:
            self._baseline = compute_baseline(collected)
        self._calibrated = True

        complete = len(collected) >= cfg.min_calibration_samples
        if len(collected) >= cfg.calibration_samples:
            self._notifier.notify("Accelerometer calibrated successfully", "info")
        elif complete:
            self._notifier.notify("Accelerometer calibrated with limited samples", "warning")
        else:
            self._notifier.notify("Calibration incomplete, detection may be less accurate", "warning")

        log.info("calibration_done", samples=len(collected), complete=complete,
                 x=round(self._baseline.x, 3), y=round(self._baseline.y, 3),
                 z=round(self._baseline.z, 3))
        return CalibrationResult(baseline=self._baseline, samples=len(collected),
                                 complete=complete)

    # -- monitoring ---------------------------------------------------------

    async def start(self, calibration_samples: AsyncIterable[MotionSample] | None = None) -> bool:
        """Begin monitoring, calibrating first if needed. False if motion is unsupported."""
        if not self.motion_supported:
            self._notifier.notify("Device motion sensors not supported on this device", "error")
            return False
        if not self._calibrated:
            if calibration_samples is not None:
                self._notifier.notify("Calibrating accelerometer...", "info")
                await self.calibrate(calibration_samples)
            else:
                log.warning("monitoring_uncalibrated", baseline="default")
        self._monitoring = True
        self._notifier.notify("Speed bump detection started", "info")
        return True

    def stop(self) -> None:
        if not self._monitoring:
            return
        self._monitoring = False
        self._notifier.notify("Speed bump detection stopped", "info")

    def on_sample(self, sample: MotionSample) -> CandidateEvent | None:
        """Feed one reading. Returns the emitted event, if any."""
        if not self._monitoring:
            return None

        baseline = self._baseline
        dx = sample.x - baseline.x
        dy = sample.y - baseline.y
        dz = sample.z - baseline.z
        magnitude = math.sqrt(dx * dx + dy * dy + dz * dz)

        event = None
        if magnitude > self._sensitivity and self._cooled_down(sample.timestamp_ms):
            if self._is_transient(magnitude):
                self._last_detection_ms = sample.timestamp_ms
                event = self._emit(magnitude, sample.timestamp_ms)

        self._buffer.append(magnitude)
        return event

    def _cooled_down(self, timestamp_ms: int) -> bool:
        if self._last_detection_ms is None:
            return True
        return timestamp_ms - self._last_detection_ms > self._config.cooldown_ms

    def _is_transient(self, magnitude: float) -> bool:
        window = self._config.local_window
        if len(self._buffer) < window:
            return False
        recent = list(self._buffer)[-window:]
        local_mean = sum(recent) / window
        return magnitude > local_mean * self._config.spike_ratio

    def _emit(self, magnitude: float, timestamp_ms: int) -> CandidateEvent | None:
        try:
            position = self._positions.require(now_ms=timestamp_ms)
        except PositionUnavailable:
            log.debug("detection_dropped", reason="position_unavailable",
                      magnitude=round(magnitude, 2))
            return None

        event = CandidateEvent(
            latitude=position.latitude,
            longitude=position.longitude,
            intensity=intensity_for(magnitude),
            confidence=confidence_for(magnitude),
            timestamp_ms=timestamp_ms,
        )
        self._recent.appendleft(event)
        log.info("speed_bump_detected", intensity=event.intensity,
                 confidence=event.confidence, magnitude=round(magnitude, 2))
        self._notifier.notify(f"Speed bump detected! Intensity: {event.intensity}/10", "warning")

        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                log.error("detection_listener_failed", exc_info=True)
        return event
