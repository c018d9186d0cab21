"""File-based storage implementation.

Keeps the working set in memory (see MemoryRecordStorage) and persists:
- Community records as a JSON Lines change log in ``records.jsonl``
  (one ``put`` or ``delete`` entry per change, replayed on startup and
  rewritten as a snapshot when it holds superseded entries)
- Traffic samples as JSON Lines in date/hour partitions:
  ``base_dir/traffic/YYYY/MM/DD/HH/traffic.jsonl``
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import structlog

from bumpmap_server.core.models import CommunityRecord, TrafficSample
from bumpmap_server.storage.memory_storage import MemoryRecordStorage

log = structlog.get_logger()


def _record_to_dict(record: CommunityRecord) -> dict:
    return {
        "id": record.id,
        "lat": record.latitude,
        "lon": record.longitude,
        "intensity": record.intensity,
        "verified_count": record.verified_count,
        "last_verified_ms": record.last_verified_ms,
        "detection_method": record.detection_method,
        "created_ms": record.created_ms,
        "contributor": record.contributor,
    }


def _record_from_dict(data: dict) -> CommunityRecord:
    return CommunityRecord(
        id=data["id"],
        latitude=data["lat"],
        longitude=data["lon"],
        intensity=data["intensity"],
        verified_count=data["verified_count"],
        last_verified_ms=data["last_verified_ms"],
        detection_method=data.get("detection_method", "sensor"),
        created_ms=data.get("created_ms", 0),
        contributor=data.get("contributor", "anonymous"),
    )


def _traffic_to_dict(sample: TrafficSample) -> dict:
    return {
        "lat": sample.latitude,
        "lon": sample.longitude,
        "speed": sample.speed,
        "ts": sample.timestamp_ms,
        "time_of_day": sample.time_of_day,
        "day_of_week": sample.day_of_week,
        "contributor": sample.contributor,
    }


def _traffic_from_dict(data: dict) -> TrafficSample:
    if not isinstance(data["time_of_day"], str) or not isinstance(data["day_of_week"], str):
        raise TypeError("time labels must be strings")
    return TrafficSample(
        latitude=data["lat"],
        longitude=data["lon"],
        speed=data["speed"],
        timestamp_ms=data["ts"],
        time_of_day=data["time_of_day"],
        day_of_week=data["day_of_week"],
        contributor=data.get("contributor", "anonymous"),
    )


class FileRecordStorage(MemoryRecordStorage):
    """RecordStorage backed by append-only files on disk."""

    def __init__(self, base_dir: str | Path) -> None:
        super().__init__()
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._records_path = self._base_dir / "records.jsonl"
        self._traffic_dir = self._base_dir / "traffic"
        self._load()

    def _hour_dir(self, timestamp_ms: int) -> Path:
        """Return the traffic directory for a given timestamp."""
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        path = self._traffic_dir / f"{dt.year:04d}" / f"{dt.month:02d}" / f"{dt.day:02d}" / f"{dt.hour:02d}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _load(self) -> None:
        """Replay the record change log and read back traffic partitions."""
        n_changes = 0
        if self._records_path.exists():
            with open(self._records_path) as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                        if entry["op"] == "put":
                            super().put_record(_record_from_dict(entry["record"]))
                        elif entry["op"] == "delete":
                            super().delete_records(entry["ids"])
                        elif entry["op"] == "next_id":
                            self._next_id = max(self._next_id, int(entry["value"]))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        log.warning("record_log_line_skipped", line=line_no,
                                    path=str(self._records_path))
                        continue
                    n_changes += 1

        if n_changes > len(self.all_records()) + 1:
            self._compact(n_changes)

        n_samples = 0
        if self._traffic_dir.exists():
            for path in sorted(self._traffic_dir.rglob("traffic.jsonl")):
                with open(path) as f:
                    for line in f:
                        if not line.strip():
                            continue
                        try:
                            super().append_traffic(_traffic_from_dict(json.loads(line)))
                        except (json.JSONDecodeError, KeyError, TypeError):
                            log.warning("traffic_line_skipped", path=str(path))
                            continue
                        n_samples += 1

        log.info("storage_loaded", base_dir=str(self._base_dir),
                 record_changes=n_changes, traffic_samples=n_samples)

    def _compact(self, n_changes: int) -> None:
        """Rewrite the change log as one ``put`` per live record."""
        records = sorted(self.all_records(), key=lambda r: r.id)
        tmp_path = self._records_path.with_suffix(".jsonl.tmp")
        with open(tmp_path, "w") as f:
            # Keeps ids of deleted records from being reused.
            f.write(json.dumps({"op": "next_id", "value": self._next_id}, separators=(",", ":")) + "\n")
            for record in records:
                f.write(json.dumps({"op": "put", "record": _record_to_dict(record)},
                                   separators=(",", ":")) + "\n")
        tmp_path.replace(self._records_path)
        log.info("record_log_compacted", changes=n_changes, records=len(records))

    def _append_change(self, entry: dict) -> None:
        with open(self._records_path, "a") as f:
            f.write(json.dumps(entry, separators=(",", ":")) + "\n")

    def put_record(self, record: CommunityRecord) -> None:
        super().put_record(record)
        self._append_change({"op": "put", "record": _record_to_dict(record)})
        log.debug("record_written", record_id=record.id)

    def delete_records(self, record_ids: Iterable[int]) -> int:
        ids = list(record_ids)
        deleted = super().delete_records(ids)
        if deleted:
            self._append_change({"op": "delete", "ids": ids})
        return deleted

    def append_traffic(self, sample: TrafficSample) -> None:
        super().append_traffic(sample)
        hour_dir = self._hour_dir(sample.timestamp_ms)
        with open(hour_dir / "traffic.jsonl", "a") as f:
            f.write(json.dumps(_traffic_to_dict(sample), separators=(",", ":")) + "\n")
