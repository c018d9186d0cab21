"""Tests for the geodesy helpers."""

from __future__ import annotations

import pytest

from bumpmap_server.core.geo import (
    bbox_around,
    haversine_m,
    meters_to_lon_deg,
    quantize,
    round_half_up,
)


def test_haversine_zero():
    assert haversine_m(45.0, 4.0, 45.0, 4.0) == 0.0


def test_haversine_one_millidegree_latitude():
    # 0.001 deg of latitude is about 111 m anywhere on Earth.
    assert haversine_m(0.0, 0.0, 0.001, 0.0) == pytest.approx(111.19, abs=0.1)
    assert haversine_m(45.0, 4.0, 45.001, 4.0) == pytest.approx(111.19, abs=0.1)


def test_haversine_is_symmetric():
    a = haversine_m(45.764, 4.835, 48.857, 2.352)
    b = haversine_m(48.857, 2.352, 45.764, 4.835)
    assert a == pytest.approx(b)
    # Lyon to Paris, roughly 392 km
    assert a == pytest.approx(392_000, rel=0.01)


def test_meters_to_lon_deg_widens_with_latitude():
    at_equator = meters_to_lon_deg(50, 0.0)
    at_60 = meters_to_lon_deg(50, 60.0)
    assert at_equator == pytest.approx(50 / 111_320)
    assert at_60 == pytest.approx(2 * at_equator, rel=1e-6)


def test_meters_to_lon_deg_clamped_at_pole():
    assert meters_to_lon_deg(50, 90.0) == 180.0


def test_bbox_around():
    assert bbox_around(10.0, 20.0, 1.0) == (9.0, 11.0, 19.0, 21.0)
    assert bbox_around(10.0, 20.0, 1.0, 2.0) == (9.0, 11.0, 18.0, 22.0)


def test_quantize():
    assert quantize(45.764049) == 45.764
    assert quantize(45.76406) == 45.7641


@pytest.mark.parametrize("value,expected", [
    (0.5, 1),
    (1.5, 2),
    (2.5, 3),
    (6.5, 7),
    (6.49, 6),
    (-0.5, 0),
    (-1.5, -1),
])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
