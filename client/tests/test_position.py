"""Tests for the position cache."""

from __future__ import annotations

import pytest

from bumpmap_client.models import Position
from bumpmap_client.position import PositionCache, PositionUnavailable


def test_empty_cache():
    cache = PositionCache()
    assert cache.latest(now_ms=0) is None
    with pytest.raises(PositionUnavailable):
        cache.require(now_ms=0)


def test_latest_fix():
    cache = PositionCache(max_age_ms=10_000)
    cache.update(Position(45.0, 4.0, timestamp_ms=1000))
    cache.update(Position(45.1, 4.1, timestamp_ms=2000))
    assert cache.require(now_ms=3000).latitude == 45.1


def test_older_fix_ignored():
    cache = PositionCache()
    cache.update(Position(45.1, 4.1, timestamp_ms=2000))
    cache.update(Position(45.0, 4.0, timestamp_ms=1000))
    assert cache.latest(now_ms=2000).latitude == 45.1


def test_stale_fix():
    cache = PositionCache(max_age_ms=10_000)
    cache.update(Position(45.0, 4.0, timestamp_ms=0))
    assert cache.latest(now_ms=10_000) is not None
    assert cache.latest(now_ms=10_001) is None


def test_no_max_age():
    cache = PositionCache(max_age_ms=None)
    cache.update(Position(45.0, 4.0, timestamp_ms=0))
    assert cache.require(now_ms=10 ** 12).longitude == 4.0


def test_clear():
    cache = PositionCache()
    cache.update(Position(45.0, 4.0, timestamp_ms=0))
    cache.clear()
    assert cache.latest(now_ms=0) is None
