"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

from fastapi import APIRouter

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from bumpmap_server.main import get_config, get_hub, get_stats

    stats = get_stats()
    config = get_config()

    storage_path = Path(config.storage.base_dir)
    try:
        disk = shutil.disk_usage(storage_path if storage_path.exists() else ".")
        disk_free_gb = round(disk.free / (1024 ** 3), 1)
        storage_writable = True
    except OSError:
        disk_free_gb = -1
        storage_writable = False

    snapshot = stats.snapshot()
    result = {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "queue_depth": snapshot["queue_depth"],
        "live_connections": get_hub().connection_count(),
        "storage_backend": config.storage.backend,
        "storage_writable": storage_writable,
        "disk_free_gb": disk_free_gb,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Detailed server statistics including active contributor counts.

    The ``active_contributors`` section shows:
    - ``total``: contributors seen in the last N seconds (configurable window)
    - ``http``: contributors whose last submission came over HTTP
    - ``live``: contributors whose last submission came over the live socket
    - ``window_seconds``: the time window used for "active" calculation
    """
    from bumpmap_server.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Configuration endpoint for clients.

    Clients call this on startup to pick up server-controlled detector and
    live-connection parameters.
    """
    from bumpmap_server.main import get_config

    config = get_config()
    return {
        "sensitivity": config.detector.sensitivity,
        "cooldown_ms": config.detector.cooldown_ms,
        "buffer_size": config.detector.buffer_size,
        "calibration_samples": config.detector.calibration_samples,
        "calibration_timeout_seconds": config.detector.calibration_timeout_seconds,
        "merge_radius_m": config.aggregation.merge_radius_m,
        "heartbeat_interval_seconds": config.hub.heartbeat_interval_seconds,
    }
