"""Position cache — the detector's non-blocking view of the last known fix."""

from __future__ import annotations

import time

from bumpmap_client.models import Position


class PositionUnavailable(Exception):
    """No usable position fix at the moment it was needed."""


class PositionCache:
    """Holds the most recent fix pushed by the position provider.

    Reads never wait for a new fix. A fix older than ``max_age_ms`` counts as
    no fix at all; ``max_age_ms=None`` accepts any age.
    """

    def __init__(self, max_age_ms: int | None = 10_000) -> None:
        self._max_age_ms = max_age_ms
        self._latest: Position | None = None

    def update(self, position: Position) -> None:
        if self._latest is None or position.timestamp_ms >= self._latest.timestamp_ms:
            self._latest = position

    def clear(self) -> None:
        self._latest = None

    def latest(self, now_ms: int | None = None) -> Position | None:
        position = self._latest
        if position is None or self._max_age_ms is None:
            return position
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        if now_ms - position.timestamp_ms > self._max_age_ms:
            return None
        return position

    def require(self, now_ms: int | None = None) -> Position:
        position = self.latest(now_ms)
        if position is None:
            raise PositionUnavailable("no recent position fix")
        return position
