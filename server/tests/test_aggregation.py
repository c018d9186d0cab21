"""Tests for the aggregation engine: merge rule, cumulative mean and queries."""

from __future__ import annotations

import random
import threading

import pytest

from bumpmap_server.core.aggregation import MAX_TIMESTAMP_MS, AggregationEngine, validate_event
from bumpmap_server.core.geo import haversine_m
from bumpmap_server.core.models import CandidateEvent
from bumpmap_server.storage.memory_storage import MemoryRecordStorage


class ListSink:
    def __init__(self):
        self.samples = []

    def record(self, sample):
        self.samples.append(sample)
        return True


def _event(lat, lon, intensity=5, ts=1_700_000_000_000):
    return CandidateEvent(latitude=lat, longitude=lon, intensity=intensity, timestamp_ms=ts)


@pytest.fixture
def engine():
    return AggregationEngine(MemoryRecordStorage())


def test_first_report_creates_record(engine):
    result = engine.submit(_event(40.0, -74.0, intensity=6))
    assert result.created is True
    assert result.verifications == 1
    assert result.record.intensity == 6.0
    assert result.record.verified_count == 1


def test_nearby_report_reinforces(engine):
    """Reports 0.0001 deg apart describe the same bump."""
    first = engine.submit(_event(40.0, -74.0, intensity=6, ts=1000))
    second = engine.submit(_event(40.0001, -74.0, intensity=8, ts=2000))

    assert second.created is False
    assert second.verifications == 2
    assert second.record.id == first.record.id
    assert second.record.intensity == 7.0
    assert second.record.last_verified_ms == 2000
    # Position is the first report's
    assert second.record.latitude == 40.0


def test_distant_report_creates_second_record(engine):
    engine.submit(_event(40.0, -74.0))
    result = engine.submit(_event(40.01, -74.0))
    assert result.created is True
    assert len(engine.query(39.9, 40.1, -74.1, -73.9)) == 2


def test_cumulative_mean():
    engine = AggregationEngine(MemoryRecordStorage())
    intensities = [3, 9, 4, 10, 1, 7, 7, 2]
    for i, intensity in enumerate(intensities):
        result = engine.submit(_event(45.0 + i * 0.00001, 4.0, intensity=intensity))

    assert result.verifications == len(intensities)
    assert result.record.intensity == pytest.approx(sum(intensities) / len(intensities))


def test_snapshot_rounds_intensity_half_up(engine):
    engine.submit(_event(40.0, -74.0, intensity=6))
    engine.submit(_event(40.0, -74.0, intensity=7))
    (snap,) = engine.query(39.9, 40.1, -74.1, -73.9)
    assert snap["intensity"] == 7  # 6.5 rounds up
    assert snap["verifications"] == 2
    assert snap["confidence"] == 20


def test_nearest_candidate_wins(engine):
    a = engine.submit(_event(45.0, 4.0)).record
    b = engine.submit(_event(45.0, 4.0009)).record
    assert b.id != a.id

    # Both are candidates (a by ground distance, b by degree box); b is nearer.
    result = engine.submit(_event(45.0, 4.0006))
    assert result.created is False
    assert result.record.id == b.id


def test_equidistant_candidates_pick_first_stored():
    engine = AggregationEngine(MemoryRecordStorage(), merge_radius_m=0.0, match_box_deg=1.0)
    first = engine.submit(_event(0.0, 0.0)).record
    second = engine.submit(_event(0.0, 1.5)).record
    assert second.id != first.id

    result = engine.submit(_event(0.0, 0.75))
    assert result.record.id == first.id


def test_geodesic_radius_applies_at_high_latitude(engine):
    """At 60 deg N, 0.0008 deg of longitude is ~44 m: outside the degree box, within 50 m."""
    first = engine.submit(_event(60.0, 10.0)).record
    assert haversine_m(60.0, 10.0, 60.0, 10.0008) < 50
    result = engine.submit(_event(60.0, 10.0008))
    assert result.created is False
    assert result.record.id == first.id


@pytest.mark.parametrize("base_lat", [0.0, 45.0, 60.0, -33.9])
def test_no_two_records_within_merge_radius(base_lat):
    rng = random.Random(1234)
    engine = AggregationEngine(MemoryRecordStorage())
    for _ in range(400):
        lat = base_lat + rng.uniform(-0.003, 0.003)
        lon = 2.0 + rng.uniform(-0.003, 0.003)
        engine.submit(_event(lat, lon, intensity=rng.randint(0, 10)))

    records = engine.records(base_lat - 1, base_lat + 1, 1.0, 3.0)
    assert sum(r.verified_count for r in records) == 400
    for i, a in enumerate(records):
        for b in records[i + 1:]:
            assert haversine_m(a.latitude, a.longitude, b.latitude, b.longitude) > 50


def test_concurrent_reports_create_one_record():
    engine = AggregationEngine(MemoryRecordStorage())
    barrier = threading.Barrier(8)
    results = []

    def report():
        barrier.wait()
        results.append(engine.submit(_event(40.0, -74.0, intensity=5)))

    threads = [threading.Thread(target=report) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.created) == 1
    assert max(r.verifications for r in results) == 8
    assert len(engine.records(39, 41, -75, -73)) == 1


def test_query_snapshot_fields(engine):
    engine.submit(_event(45.764049, 4.835659, intensity=4), detection_method="manual")
    (snap,) = engine.query(45.7, 45.8, 4.8, 4.9)
    assert snap["latitude"] == 45.764
    assert snap["longitude"] == 4.8357
    assert snap["intensity"] == 4
    assert snap["verifications"] == 1
    assert snap["confidence"] == 10
    assert snap["detectionMethod"] == "manual"
    assert snap["lastVerified"] == 1_700_000_000_000


def test_query_sorted_by_verifications(engine):
    engine.submit(_event(45.0, 4.0))
    for _ in range(3):
        engine.submit(_event(45.01, 4.0))
    snaps = engine.query(44.9, 45.1, 3.9, 4.1)
    assert [s["verifications"] for s in snaps] == [3, 1]


def test_query_outside_box_is_empty(engine):
    engine.submit(_event(45.0, 4.0))
    assert engine.query(10.0, 11.0, 10.0, 11.0) == []


def test_confidence_capped_at_100(engine):
    for _ in range(15):
        result = engine.submit(_event(45.0, 4.0))
    assert result.record.confidence == 100


@pytest.mark.parametrize("event", [
    _event(91.0, 0.0),
    _event(0.0, -181.0),
    _event(0.0, 0.0, intensity=11),
    _event(0.0, 0.0, intensity=-1),
    _event(0.0, 0.0, ts=10 ** 17),
    _event(0.0, 0.0, ts=-1),
])
def test_invalid_events_rejected(engine, event):
    with pytest.raises(ValueError):
        engine.submit(event)
    assert engine.summary()["totalReports"] == 0


def test_unknown_detection_method_rejected(engine):
    with pytest.raises(ValueError):
        engine.submit(_event(0.0, 0.0), detection_method="telepathy")


def test_validate_event_accepts_bounds():
    validate_event(_event(90.0, 180.0, intensity=0))
    validate_event(_event(-90.0, -180.0, intensity=10))
    validate_event(_event(0.0, 0.0, ts=0))
    validate_event(_event(0.0, 0.0, ts=MAX_TIMESTAMP_MS))


def test_each_report_feeds_traffic():
    sink = ListSink()
    engine = AggregationEngine(MemoryRecordStorage(), traffic=sink)
    engine.submit(_event(45.0, 4.0), contributor="alice")
    engine.submit(_event(45.0, 4.0), contributor="bob")

    assert len(sink.samples) == 2
    assert all(s.speed == 0.0 for s in sink.samples)
    assert [s.contributor for s in sink.samples] == ["alice", "bob"]


def test_rejected_timestamp_leaves_table_untouched():
    sink = ListSink()
    engine = AggregationEngine(MemoryRecordStorage(), traffic=sink)
    engine.submit(_event(45.0, 4.0, ts=1000))

    with pytest.raises(ValueError):
        engine.submit(_event(45.0, 4.0, ts=10 ** 17))

    (record,) = engine.records(44.0, 46.0, 3.0, 5.0)
    assert record.verified_count == 1
    assert record.last_verified_ms == 1000
    assert len(sink.samples) == 1


def test_traffic_failure_keeps_merge(monkeypatch):
    def broken(*args, **kwargs):
        raise ValueError("year is out of range")

    monkeypatch.setattr("bumpmap_server.core.aggregation.make_traffic_sample", broken)
    sink = ListSink()
    engine = AggregationEngine(MemoryRecordStorage(), traffic=sink)

    result = engine.submit(_event(45.0, 4.0))

    assert result.created is True
    assert engine.summary()["totalReports"] == 1
    assert sink.samples == []


def test_delete(engine):
    a = engine.submit(_event(45.0, 4.0)).record
    engine.submit(_event(46.0, 4.0))
    assert engine.delete([a.id, 999]) == 1
    remaining = engine.query(44, 47, 3, 5)
    assert len(remaining) == 1
    assert remaining[0]["id"] != a.id


def test_summary(engine):
    engine.submit(_event(45.0, 4.0, intensity=4))
    engine.submit(_event(45.0, 4.0, intensity=6))
    engine.submit(_event(46.0, 4.0, intensity=8))
    assert engine.summary() == {
        "totalReports": 2,
        "totalVerifications": 3,
        "averageIntensity": 6.5,
    }


def test_geojson(engine):
    engine.submit(_event(45.0, 4.0, intensity=3))
    collection = engine.geojson()
    assert collection["type"] == "FeatureCollection"
    (feature,) = collection["features"]
    assert feature["geometry"]["coordinates"] == [4.0, 45.0]
    assert feature["properties"]["verifications"] == 1
