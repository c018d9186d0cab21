"""Tests for the motion event detector."""

from __future__ import annotations

import asyncio

import pytest

from bumpmap_client.detector import (
    DetectorConfig,
    MotionEventDetector,
    compute_baseline,
    confidence_for,
    intensity_for,
)
from bumpmap_client.models import Baseline, MotionSample, Position
from bumpmap_client.position import PositionCache

G = 9.81


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, message, level="info"):
        self.messages.append((level, message))


def rest(ts):
    return MotionSample(0.0, 0.0, G, ts)


def jolt(ts, size=6.0):
    return MotionSample(0.0, 0.0, G + size, ts)


async def samples_from(items, then_hang=False):
    for item in items:
        yield item
    if then_hang:
        await asyncio.Event().wait()


def make_detector(position=True, **config):
    positions = PositionCache(max_age_ms=None)
    if position:
        positions.update(Position(latitude=45.0, longitude=4.0, timestamp_ms=0))
    notifier = RecordingNotifier()
    detector = MotionEventDetector(positions, config=DetectorConfig(**config), notifier=notifier)
    return detector, positions, notifier


async def started(position=True, **config):
    detector, positions, notifier = make_detector(position, **config)
    assert await detector.start()
    return detector, positions, notifier


def warm_up(detector, start_ts=0, count=5):
    for i in range(count):
        assert detector.on_sample(rest(start_ts + i * 50)) is None


# -- helpers ---------------------------------------------------------------


def test_compute_baseline():
    baseline = compute_baseline([
        MotionSample(1.0, 0.0, 9.0, 0),
        MotionSample(3.0, 2.0, 10.0, 1),
    ])
    assert baseline == Baseline(2.0, 1.0, 9.5)


def test_compute_baseline_empty():
    with pytest.raises(ValueError):
        compute_baseline([])


@pytest.mark.parametrize("magnitude,intensity,confidence", [
    (2.6, 3, 26),
    (6.0, 6, 60),
    (6.5, 7, 65),
    (10.0, 10, 100),
    (14.2, 10, 100),
])
def test_intensity_and_confidence(magnitude, intensity, confidence):
    assert intensity_for(magnitude) == intensity
    assert confidence_for(magnitude) == confidence


# -- detection -------------------------------------------------------------


async def test_sharp_jolt_is_detected():
    detector, _, notifier = await started()
    seen = []
    detector.on_detected(seen.append)

    warm_up(detector)
    event = detector.on_sample(jolt(1000))

    assert event is not None
    assert event.latitude == 45.0
    assert event.longitude == 4.0
    assert event.intensity == 6
    assert event.confidence == 60
    assert event.timestamp_ms == 1000
    assert seen == [event]
    assert detector.recent_detections == [event]
    assert ("warning", "Speed bump detected! Intensity: 6/10") in notifier.messages


async def test_below_threshold_ignored():
    detector, _, _ = await started()
    warm_up(detector)
    assert detector.on_sample(jolt(1000, size=2.0)) is None


async def test_needs_full_local_window():
    detector, _, _ = await started()
    warm_up(detector, count=4)
    assert detector.on_sample(jolt(1000)) is None


async def test_sustained_vibration_rejected():
    detector, _, _ = await started()
    for i in range(30):
        assert detector.on_sample(jolt(i * 50, size=3.0)) is None


async def test_cooldown():
    detector, _, _ = await started()
    warm_up(detector)
    assert detector.on_sample(jolt(1000)) is not None
    warm_up(detector, start_ts=1100)
    assert detector.on_sample(jolt(2000)) is None
    assert detector.on_sample(jolt(4000)) is None  # exactly 3000 ms later
    warm_up(detector, start_ts=4050)
    assert detector.on_sample(jolt(4300)) is not None


async def test_no_position_drops_event_and_restarts_cooldown():
    detector, positions, _ = await started(position=False)
    seen = []
    detector.on_detected(seen.append)

    warm_up(detector)
    assert detector.on_sample(jolt(1000)) is None

    positions.update(Position(latitude=1.0, longitude=2.0, timestamp_ms=1500))
    warm_up(detector, start_ts=1100)
    assert detector.on_sample(jolt(2000)) is None

    warm_up(detector, start_ts=3000)
    event = detector.on_sample(jolt(4500))
    assert event is not None
    assert (event.latitude, event.longitude) == (1.0, 2.0)
    assert seen == [event]


async def test_stale_position_drops_event():
    positions = PositionCache(max_age_ms=10_000)
    positions.update(Position(latitude=45.0, longitude=4.0, timestamp_ms=0))
    detector = MotionEventDetector(positions, notifier=RecordingNotifier())
    await detector.start()

    warm_up(detector, start_ts=20_000)
    assert detector.on_sample(jolt(21_000)) is None


async def test_failing_listener_does_not_break_detection():
    detector, _, _ = await started()
    seen = []

    def broken(event):
        raise RuntimeError("haptics unavailable")

    detector.on_detected(broken)
    detector.on_detected(seen.append)
    warm_up(detector)

    event = detector.on_sample(jolt(1000))
    assert event is not None
    assert seen == [event]


async def test_buffer_is_bounded():
    detector, _, _ = await started(buffer_size=20)
    for i in range(50):
        detector.on_sample(rest(i))
    assert len(detector.buffer) == 20


async def test_recent_detections_newest_first():
    detector, _, _ = await started(recent_detections=2)
    ts = 0
    events = []
    for _ in range(3):
        warm_up(detector, start_ts=ts)
        events.append(detector.on_sample(jolt(ts + 1000)))
        ts += 5000
    assert detector.recent_detections == [events[2], events[1]]


async def test_sensitivity_change():
    detector, _, _ = await started()
    detector.sensitivity = 8.0
    warm_up(detector)
    assert detector.on_sample(jolt(1000)) is None
    with pytest.raises(ValueError):
        detector.sensitivity = 0


# -- lifecycle -------------------------------------------------------------


async def test_not_monitoring_ignores_samples():
    detector, _, _ = make_detector()
    warm_up(detector)
    assert detector.on_sample(jolt(1000)) is None
    assert detector.buffer == ()


async def test_stop():
    detector, _, notifier = await started()
    detector.stop()
    assert not detector.is_monitoring
    warm_up(detector)
    assert detector.on_sample(jolt(1000)) is None
    assert ("info", "Speed bump detection stopped") in notifier.messages


async def test_unsupported_device():
    positions = PositionCache()
    notifier = RecordingNotifier()
    detector = MotionEventDetector(positions, notifier=notifier, motion_supported=False)
    assert await detector.start() is False
    assert not detector.is_monitoring
    assert notifier.messages[-1][0] == "error"


# -- calibration -----------------------------------------------------------


async def test_calibration_complete():
    detector, _, notifier = make_detector(calibration_samples=20)
    tilted = [MotionSample(1.0, 0.5, 9.5, i) for i in range(40)]

    result = await detector.calibrate(samples_from(tilted))

    assert result.samples == 20
    assert result.complete is True
    assert detector.is_calibrated
    assert detector.baseline.x == pytest.approx(1.0)
    assert detector.baseline.z == pytest.approx(9.5)
    assert ("info", "Accelerometer calibrated successfully") in notifier.messages


async def test_calibration_timeout_keeps_partial_samples():
    detector, _, notifier = make_detector(calibration_timeout_seconds=0.05)
    partial = [MotionSample(0.0, 0.0, 10.0, i) for i in range(3)]

    result = await detector.calibrate(samples_from(partial, then_hang=True))

    assert result.samples == 3
    assert result.complete is False
    assert detector.is_calibrated
    assert detector.baseline.z == pytest.approx(10.0)
    assert notifier.messages[-1] == (
        "warning", "Calibration incomplete, detection may be less accurate")


async def test_calibration_limited_samples():
    detector, _, notifier = make_detector(calibration_timeout_seconds=0.05)
    some = [MotionSample(0.0, 0.0, G, i) for i in range(12)]

    result = await detector.calibrate(samples_from(some, then_hang=True))

    assert result.complete is True
    assert notifier.messages[-1] == ("warning", "Accelerometer calibrated with limited samples")


async def test_calibration_without_samples_keeps_baseline():
    detector, _, _ = make_detector(calibration_timeout_seconds=0.05)
    result = await detector.calibrate(samples_from([], then_hang=True))
    assert result.samples == 0
    assert detector.baseline == Baseline()
    assert detector.is_calibrated


async def test_start_calibrates_first():
    detector, _, _ = make_detector(calibration_samples=10)
    tilted = [MotionSample(0.0, 3.0, 9.0, i) for i in range(10)]

    assert await detector.start(samples_from(tilted))
    assert detector.is_monitoring
    assert detector.baseline.y == pytest.approx(3.0)

    # The tilt is now the resting state and does not trigger
    for i in range(10):
        assert detector.on_sample(MotionSample(0.0, 3.0, 9.0, 100 + i)) is None
