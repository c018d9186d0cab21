"""Storage interface (port) for community records and traffic samples."""

from __future__ import annotations

from typing import Iterable, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from bumpmap_server.core.models import CommunityRecord, TrafficSample


class RecordStorage(Protocol):
    """Port: holds the community record table and the traffic sample log.

    Bounding boxes are ``(south, north, west, east)`` in degrees, inclusive.
    """

    def next_record_id(self) -> int: ...

    def records_in_bbox(self, south: float, north: float,
                        west: float, east: float) -> list[CommunityRecord]: ...

    def all_records(self) -> list[CommunityRecord]: ...

    def put_record(self, record: CommunityRecord) -> None: ...

    def delete_records(self, record_ids: Iterable[int]) -> int: ...

    def append_traffic(self, sample: TrafficSample) -> None: ...

    def traffic_in_bbox(self, south: float, north: float,
                        west: float, east: float) -> list[TrafficSample]: ...

    def all_traffic(self) -> list[TrafficSample]: ...
