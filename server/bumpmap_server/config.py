"""Server configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: BUMPMAP_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class QueueConfig:
    backend: str = "asyncio"
    max_size: int = 10_000


@dataclass
class StorageConfig:
    backend: str = "file"  # "file" or "memory"
    base_dir: str = "data/bumpmap"


@dataclass
class AggregationConfig:
    merge_radius_m: float = 50.0
    match_box_deg: float = 0.0005
    snapshot_decimals: int = 4


@dataclass
class HubConfig:
    heartbeat_interval_seconds: float = 30.0
    send_timeout_seconds: float = 5.0
    outbox_size: int = 100


@dataclass
class DetectorDefaults:
    """Parameters handed to clients through /api/v1/config."""
    sensitivity: float = 2.5
    cooldown_ms: int = 3000
    buffer_size: int = 20
    calibration_samples: int = 50
    calibration_timeout_seconds: float = 5.0


@dataclass
class LimitsConfig:
    active_window_seconds: float = 120.0
    max_trip_points: int = 100_000


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    detector: DetectorDefaults = field(default_factory=DetectorDefaults)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = ("server", "queue", "storage", "aggregation", "hub", "detector", "limits", "logging")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "BUMPMAP_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "BUMPMAP_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "BUMPMAP_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "BUMPMAP_QUEUE_MAX_SIZE": lambda v: setattr(config.queue, "max_size", int(v)),
        "BUMPMAP_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "BUMPMAP_STORAGE_BASE_DIR": lambda v: setattr(config.storage, "base_dir", v),
        "BUMPMAP_AGGREGATION_MERGE_RADIUS_M": lambda v: setattr(config.aggregation, "merge_radius_m", float(v)),
        "BUMPMAP_AGGREGATION_MATCH_BOX_DEG": lambda v: setattr(config.aggregation, "match_box_deg", float(v)),
        "BUMPMAP_HUB_HEARTBEAT_INTERVAL": lambda v: setattr(config.hub, "heartbeat_interval_seconds", float(v)),
        "BUMPMAP_HUB_SEND_TIMEOUT": lambda v: setattr(config.hub, "send_timeout_seconds", float(v)),
        "BUMPMAP_HUB_OUTBOX_SIZE": lambda v: setattr(config.hub, "outbox_size", int(v)),
        "BUMPMAP_DETECTOR_SENSITIVITY": lambda v: setattr(config.detector, "sensitivity", float(v)),
        "BUMPMAP_LIMITS_ACTIVE_WINDOW": lambda v: setattr(config.limits, "active_window_seconds", float(v)),
        "BUMPMAP_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "BUMPMAP_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("BUMPMAP_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section_name in _SECTIONS:
            if section_name not in raw:
                continue
            section = getattr(config, section_name)
            for k, v in (raw[section_name] or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
