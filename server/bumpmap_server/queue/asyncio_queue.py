"""In-process asyncio queue implementation of SampleQueue."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bumpmap_server.core.models import TrafficSample


class AsyncioSampleQueue:
    """SampleQueue backed by asyncio.Queue. Zero dependencies.

    ``put_nowait`` raises ``asyncio.QueueFull`` when the queue is at capacity.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        self._queue: asyncio.Queue[TrafficSample] = asyncio.Queue(maxsize=max_size)

    def put_nowait(self, sample: TrafficSample) -> None:
        self._queue.put_nowait(sample)

    async def get(self) -> TrafficSample:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()
