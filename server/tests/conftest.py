"""Shared test fixtures."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

import bumpmap_server.main as main_module
from bumpmap_server.config import AppConfig


@pytest.fixture(autouse=True)
def _init_server(tmp_path):
    """Initialize server singletons for every test, using a temp directory."""
    config = AppConfig()
    config.storage.backend = "file"
    config.storage.base_dir = str(tmp_path / "data")
    config.logging.level = "warning"

    stats, storage, recorder, engine, hub = main_module.build_components(config)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._storage = storage
    main_module._recorder = recorder
    main_module._engine = engine
    main_module._hub = hub

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._storage = None
    main_module._recorder = None
    main_module._engine = None
    main_module._hub = None


@pytest.fixture
async def client():
    from bumpmap_server.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

