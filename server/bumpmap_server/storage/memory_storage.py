"""In-process implementation of RecordStorage.

Records are indexed by a coarse grid cell (3 decimals, ~111 m) so that the
small bounding-box lookups done on every merge only touch a handful of cells.
"""

from __future__ import annotations

import math
import threading
from typing import Iterable, TYPE_CHECKING

if TYPE_CHECKING:
    from bumpmap_server.core.models import CommunityRecord, TrafficSample

# Cell size of the spatial index, in degrees.
INDEX_CELL_DEG = 0.001

# Above this many cells a bounding-box query falls back to a full scan.
MAX_INDEX_CELLS = 4096


def _cell(lat: float, lon: float) -> tuple[int, int]:
    return math.floor(lat / INDEX_CELL_DEG), math.floor(lon / INDEX_CELL_DEG)


def _in_bbox(lat: float, lon: float, south: float, north: float,
             west: float, east: float) -> bool:
    return south <= lat <= north and west <= lon <= east


class MemoryRecordStorage:
    """RecordStorage backed by dicts. Zero dependencies, nothing survives a restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, CommunityRecord] = {}
        self._index: dict[tuple[int, int], set[int]] = {}
        self._traffic: list[TrafficSample] = []
        self._next_id = 1

    def next_record_id(self) -> int:
        with self._lock:
            record_id = self._next_id
            self._next_id += 1
            return record_id

    def records_in_bbox(self, south: float, north: float,
                        west: float, east: float) -> list[CommunityRecord]:
        s_row, w_col = _cell(south, west)
        n_row, e_col = _cell(north, east)
        n_cells = (n_row - s_row + 1) * (e_col - w_col + 1)

        with self._lock:
            if n_cells > MAX_INDEX_CELLS:
                candidates = list(self._records.values())
            else:
                ids: list[int] = []
                for row in range(s_row, n_row + 1):
                    for col in range(w_col, e_col + 1):
                        ids.extend(self._index.get((row, col), ()))
                candidates = [self._records[i] for i in sorted(ids)]

        return [r for r in candidates
                if _in_bbox(r.latitude, r.longitude, south, north, west, east)]

    def all_records(self) -> list[CommunityRecord]:
        with self._lock:
            return list(self._records.values())

    def put_record(self, record: CommunityRecord) -> None:
        """Insert or replace a record by id."""
        with self._lock:
            self._put_locked(record)

    def _put_locked(self, record: CommunityRecord) -> None:
        old = self._records.get(record.id)
        if old is not None:
            self._index[_cell(old.latitude, old.longitude)].discard(old.id)
        self._records[record.id] = record
        self._index.setdefault(_cell(record.latitude, record.longitude), set()).add(record.id)
        if record.id >= self._next_id:
            self._next_id = record.id + 1

    def delete_records(self, record_ids: Iterable[int]) -> int:
        deleted = 0
        with self._lock:
            for record_id in record_ids:
                record = self._records.pop(record_id, None)
                if record is None:
                    continue
                self._index[_cell(record.latitude, record.longitude)].discard(record_id)
                deleted += 1
        return deleted

    def append_traffic(self, sample: TrafficSample) -> None:
        with self._lock:
            self._traffic.append(sample)

    def traffic_in_bbox(self, south: float, north: float,
                        west: float, east: float) -> list[TrafficSample]:
        with self._lock:
            samples = list(self._traffic)
        return [s for s in samples
                if _in_bbox(s.latitude, s.longitude, south, north, west, east)]

    def all_traffic(self) -> list[TrafficSample]:
        with self._lock:
            return list(self._traffic)
