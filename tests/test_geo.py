"""Tests for great-circle distance and the geofence tolerance check."""

import pytest

from qrtrack.services.geo import (DEFAULT_ACCURACY_M, FIXED_MARGIN_M, GeoPoint,
                                  allowed_distance, distance, tolerance,
                                  within_tolerance)


def test_distance_zero_for_same_point():
    p = GeoPoint(12.9716, 77.5946)
    assert distance(p, p) == 0.0


def test_distance_one_degree_latitude():
    # One degree of latitude is ~111.2 km on the mean-radius sphere.
    d = distance(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
    assert d == pytest.approx(111_195, rel=1e-3)


def test_distance_across_antimeridian():
    a = GeoPoint(0.0, 179.9995)
    b = GeoPoint(0.0, -179.9995)
    # 0.001 degree of longitude at the equator, not 359.999 degrees.
    assert distance(a, b) == pytest.approx(111.2, abs=0.5)


def test_distance_at_pole_ignores_longitude():
    a = GeoPoint(90.0, 0.0)
    b = GeoPoint(90.0, 135.0)
    assert distance(a, b) == pytest.approx(0.0, abs=1e-6)


def test_antipodes_half_circumference():
    d = distance(GeoPoint(0.0, 0.0), GeoPoint(0.0, 180.0))
    assert d == pytest.approx(20_015_115, rel=1e-4)


def test_tolerance_defaults_when_unreported():
    assert tolerance(GeoPoint(0, 0)) == DEFAULT_ACCURACY_M
    assert tolerance(GeoPoint(0, 0, accuracy=-1)) == DEFAULT_ACCURACY_M
    assert tolerance(GeoPoint(0, 0, accuracy=25)) == 25.0


def test_allowed_distance_sums_both_tolerances_and_margin():
    a = GeoPoint(0, 0, accuracy=20)
    b = GeoPoint(0, 0, accuracy=100)
    assert allowed_distance(a, b) == 20 + 100 + FIXED_MARGIN_M


def test_within_tolerance_boundary():
    office = GeoPoint(12.9716, 77.5946, accuracy=100)
    near = GeoPoint(12.9726, 77.5946, accuracy=20)    # ~111 m
    far = GeoPoint(12.9741, 77.5946, accuracy=20)     # ~278 m
    assert within_tolerance(near, office)
    assert not within_tolerance(far, office)


@pytest.mark.parametrize(
    "a, b",
    [
        (GeoPoint(12.97, 77.59, 20), GeoPoint(12.98, 77.60, 300)),
        (GeoPoint(-33.86, 151.21), GeoPoint(-33.87, 151.20, 5)),
        (GeoPoint(0.0, 179.99, 10), GeoPoint(0.0, -179.99, 10)),
        (GeoPoint(89.99, 10.0, 1), GeoPoint(89.99, -170.0, 1)),
    ],
)
def test_within_tolerance_is_symmetric(a, b):
    assert within_tolerance(a, b) == within_tolerance(b, a)
    assert distance(a, b) == pytest.approx(distance(b, a))


def test_unreported_accuracy_uses_configured_default():
    a = GeoPoint(0.0, 0.0)
    b = GeoPoint(0.0, 0.0)
    assert allowed_distance(a, b, default_accuracy=10, fixed_margin=5) == 25
