"""BumpMap server — main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, queue, storage, and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from bumpmap_server.api.community import router as community_router
from bumpmap_server.api.live import router as live_router
from bumpmap_server.api.monitoring import router as monitoring_router
from bumpmap_server.api.trips import router as trips_router
from bumpmap_server.config import AppConfig, load_config
from bumpmap_server.core.aggregation import AggregationEngine
from bumpmap_server.core.hub import LiveHub
from bumpmap_server.core.stats import ServerStats
from bumpmap_server.core.traffic import TrafficRecorder
from bumpmap_server.queue.asyncio_queue import AsyncioSampleQueue
from bumpmap_server.storage.base import RecordStorage
from bumpmap_server.storage.file_storage import FileRecordStorage
from bumpmap_server.storage.memory_storage import MemoryRecordStorage

log = structlog.get_logger()

# Module-level singletons (set during startup)
_engine: AggregationEngine | None = None
_hub: LiveHub | None = None
_recorder: TrafficRecorder | None = None
_storage: RecordStorage | None = None
_stats: ServerStats | None = None
_config: AppConfig | None = None


def get_engine() -> AggregationEngine:
    assert _engine is not None, "Server not initialized"
    return _engine


def get_hub() -> LiveHub:
    assert _hub is not None, "Server not initialized"
    return _hub


def get_recorder() -> TrafficRecorder:
    assert _recorder is not None, "Server not initialized"
    return _recorder


def get_storage() -> RecordStorage:
    assert _storage is not None, "Server not initialized"
    return _storage


def get_stats() -> ServerStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def create_storage(config: AppConfig) -> RecordStorage:
    if config.storage.backend == "memory":
        return MemoryRecordStorage()
    if config.storage.backend == "file":
        return FileRecordStorage(base_dir=config.storage.base_dir)
    raise ValueError(f"unknown storage backend {config.storage.backend!r}")


def build_components(config: AppConfig) -> tuple[
        ServerStats, RecordStorage, TrafficRecorder, AggregationEngine, LiveHub]:
    """Create and connect every server component from a config."""
    stats = ServerStats(active_window_seconds=config.limits.active_window_seconds)
    storage = create_storage(config)
    queue = AsyncioSampleQueue(max_size=config.queue.max_size)
    recorder = TrafficRecorder(queue=queue, storage=storage, stats=stats)
    engine = AggregationEngine(
        storage=storage,
        traffic=recorder,
        merge_radius_m=config.aggregation.merge_radius_m,
        match_box_deg=config.aggregation.match_box_deg,
        snapshot_decimals=config.aggregation.snapshot_decimals,
    )
    hub = LiveHub(
        engine=engine,
        stats=stats,
        outbox_size=config.hub.outbox_size,
        send_timeout_seconds=config.hub.send_timeout_seconds,
        heartbeat_interval_seconds=config.hub.heartbeat_interval_seconds,
    )
    return stats, storage, recorder, engine, hub


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _engine, _hub, _recorder, _storage, _stats, _config

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             storage_backend=_config.storage.backend,
             storage_dir=_config.storage.base_dir,
             merge_radius_m=_config.aggregation.merge_radius_m)

    # Create components
    _stats, _storage, _recorder, _engine, _hub = build_components(_config)

    # Start background workers
    tasks = [
        asyncio.create_task(_recorder.run_storage_consumer()),
        asyncio.create_task(_hub.run_heartbeat()),
    ]

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    # Shutdown
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    log.info("server_stopped")


app = FastAPI(
    title="BumpMap",
    description="Community speed bump detection server",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(community_router)
app.include_router(trips_router)
app.include_router(monitoring_router)
app.include_router(live_router)
