#!/usr/bin/env python3
"""BumpMap device simulator.

Drives simulated phones through the real client library: each device feeds
a synthetic accelerometer stream into a MotionEventDetector, keeps its
PositionCache up to date while driving, and submits detections through an
HttpSubmissionChannel.

Usage:
    # 5 devices driving around Lyon for 10 minutes
    python -m tools.simulator.simulate --server http://localhost:8000 --devices 5 --duration 600

    # Stress test: 50 devices, frequent bumps
    python -m tools.simulator.simulate --server http://localhost:8000 --devices 50 --bumps-per-minute 30

    # Single device, specific location
    python -m tools.simulator.simulate --server http://localhost:8000 --devices 1 --center 48.8566,2.3522
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
import uuid
from dataclasses import dataclass

import httpx

from bumpmap_client.channel import EventPump, HttpSubmissionChannel
from bumpmap_client.detector import DetectorConfig, MotionEventDetector
from bumpmap_client.models import MotionSample, Position
from bumpmap_client.position import PositionCache

GRAVITY = 9.81


@dataclass
class SimDevice:
    device_id: str
    lat: float
    lon: float
    bearing: float
    speed_mps: float
    detector: MotionEventDetector | None = None
    positions: PositionCache | None = None
    pump: EventPump | None = None
    detections: int = 0


def road_noise_sample(timestamp_ms: int, roughness: float = 0.3) -> MotionSample:
    """A resting-phone reading plus small road vibration."""
    return MotionSample(
        x=random.gauss(0.0, roughness),
        y=random.gauss(0.0, roughness),
        z=GRAVITY + random.gauss(0.0, roughness),
        timestamp_ms=timestamp_ms,
    )


def bump_sample(timestamp_ms: int) -> MotionSample:
    """A sharp vertical jolt."""
    jolt = random.uniform(3.0, 9.0)
    return MotionSample(
        x=random.gauss(0.0, 0.5),
        y=random.gauss(0.0, 0.5),
        z=GRAVITY + jolt,
        timestamp_ms=timestamp_ms,
    )


async def resting_samples(rate_hz: float, count: int):
    """Calibration stream: the phone sitting still in its mount."""
    for _ in range(count):
        yield road_noise_sample(int(time.time() * 1000), roughness=0.05)
        await asyncio.sleep(1.0 / rate_hz)


def move_device(device: SimDevice, dt_seconds: float) -> None:
    """Move a device along its current bearing, with random turns."""
    # Random bearing change (simulates turns)
    device.bearing = (device.bearing + random.uniform(-15, 15) * dt_seconds) % 360

    # Random speed variation (city driving: 3-20 m/s)
    device.speed_mps = max(3.0, min(20.0, device.speed_mps + random.uniform(-1, 1) * dt_seconds))

    distance_m = device.speed_mps * dt_seconds
    bearing_rad = math.radians(device.bearing)

    # Approximate: 1 degree latitude ≈ 111,000 m
    dlat = (distance_m * math.cos(bearing_rad)) / 111_000
    dlon = (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(device.lat)))

    device.lat += dlat
    device.lon += dlon


async def run_device(
    device: SimDevice,
    rate_hz: float,
    bumps_per_minute: float,
    duration_seconds: float,
) -> None:
    """Simulate one phone: drive, sample, detect, submit."""
    assert device.detector and device.positions and device.pump

    await device.detector.start(resting_samples(rate_hz, 50))
    pump_task = asyncio.create_task(device.pump.run())

    dt = 1.0 / rate_hz
    bump_probability = bumps_per_minute / 60.0 * dt
    end_time = time.monotonic() + duration_seconds

    try:
        while time.monotonic() < end_time:
            move_device(device, dt)
            now_ms = int(time.time() * 1000)
            device.positions.update(Position(
                latitude=device.lat,
                longitude=device.lon,
                timestamp_ms=now_ms,
                speed=device.speed_mps,
                accuracy=random.uniform(3, 15),
            ))

            if random.random() < bump_probability:
                sample = bump_sample(now_ms)
            else:
                sample = road_noise_sample(now_ms)
            if device.detector.on_sample(sample) is not None:
                device.detections += 1

            await asyncio.sleep(dt)
        await device.pump.drain()
    finally:
        device.detector.stop()
        pump_task.cancel()


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    center_lat, center_lon = args.center
    config = DetectorConfig(sensitivity=args.sensitivity)

    async with httpx.AsyncClient(base_url=args.server, timeout=10.0) as client:
        devices = []
        for _ in range(args.devices):
            # Scatter devices within radius of center
            angle = random.uniform(0, 2 * math.pi)
            dist_km = random.uniform(0, args.radius_km)
            lat = center_lat + (dist_km / 111.0) * math.cos(angle)
            lon = center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle)

            device_id = str(uuid.uuid4())
            positions = PositionCache(max_age_ms=5_000)
            detector = MotionEventDetector(positions, config=config)
            pump = EventPump(HttpSubmissionChannel(args.server, user_id=device_id, client=client))
            detector.on_detected(pump.offer)

            devices.append(SimDevice(
                device_id=device_id,
                lat=lat,
                lon=lon,
                bearing=random.uniform(0, 360),
                speed_mps=random.uniform(5, 15),
                detector=detector,
                positions=positions,
                pump=pump,
            ))

        print(f"Starting simulation: {args.devices} devices, {args.bumps_per_minute} bumps/min each")
        print(f"  Center: {center_lat:.4f}, {center_lon:.4f}")
        print(f"  Radius: {args.radius_km} km")
        print(f"  Duration: {args.duration}s")
        print(f"  Sample rate: {args.rate} Hz")
        print(f"  Server: {args.server}")
        print()

        start = time.monotonic()
        await asyncio.gather(*[
            run_device(dev, args.rate, args.bumps_per_minute, args.duration)
            for dev in devices
        ])
        elapsed = time.monotonic() - start

        total_detections = sum(d.detections for d in devices)
        total_submitted = sum(d.pump.submitted for d in devices)
        total_errors = sum(d.pump.failed for d in devices)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Detections: {total_detections}")
        print(f"  Submitted: {total_submitted}")
        print(f"  Errors: {total_errors}")

        # Check server stats
        try:
            resp = await client.get("/api/v1/stats")
        except httpx.RequestError as exc:
            print(f"\nCould not fetch server stats: {exc}")
            return
        if resp.status_code == 200:
            stats = resp.json()
            print("\nServer stats:")
            print(f"  Events received: {stats['events_received']}")
            print(f"  Records created: {stats['records_created']}")
            print(f"  Records reinforced: {stats['records_reinforced']}")
            print(f"  Active contributors: {stats['active_contributors']['total']}")
            print(f"  Queue depth: {stats['queue_depth']}")


def main():
    parser = argparse.ArgumentParser(description="BumpMap device simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--devices", type=int, default=5, help="Number of simulated devices")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--bumps-per-minute", type=float, default=6,
                        help="Speed bumps driven over per minute per device")
    parser.add_argument("--rate", type=float, default=20.0, help="Accelerometer sample rate (Hz)")
    parser.add_argument("--sensitivity", type=float, default=2.5, help="Detector threshold")
    parser.add_argument("--center", type=str, default="45.764,4.835",
                        help="Center lat,lon (default: Lyon)")
    parser.add_argument("--radius-km", type=float, default=5.0, help="Scatter radius in km")

    args = parser.parse_args()

    # Parse center
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
