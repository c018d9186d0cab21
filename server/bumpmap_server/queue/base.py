"""Queue interface (port) for traffic sample ingestion."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from bumpmap_server.core.models import TrafficSample


class SampleQueue(Protocol):
    """Port: accepts traffic samples and delivers them to the storage consumer."""

    def put_nowait(self, sample: TrafficSample) -> None: ...

    async def get(self) -> TrafficSample: ...

    def qsize(self) -> int: ...
