"""
Great-circle distance and geofence tolerance checks.

Pure functions, no I/O. Distances use the haversine formula on a spherical
earth, which stays well-conditioned for short distances, across the
antimeridian and at the poles.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_008.8

DEFAULT_ACCURACY_M = 500.0
FIXED_MARGIN_M = 50.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float
    # Reported GPS accuracy in meters; ``None`` when the source did not report one.
    accuracy: float | None = None


def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Return the great-circle distance between *a* and *b* in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlmb = math.radians(b.longitude - a.longitude)

    h = math.sin(dphi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2.0) ** 2
    h = min(1.0, max(0.0, h))
    return 2.0 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def tolerance(point: GeoPoint, default_accuracy: float = DEFAULT_ACCURACY_M) -> float:
    if point.accuracy is None or point.accuracy < 0:
        return default_accuracy
    return float(point.accuracy)


def allowed_distance(
    a: GeoPoint,
    b: GeoPoint,
    *,
    default_accuracy: float = DEFAULT_ACCURACY_M,
    fixed_margin: float = FIXED_MARGIN_M,
) -> float:
    return tolerance(a, default_accuracy) + tolerance(b, default_accuracy) + fixed_margin


def within_tolerance(
    a: GeoPoint,
    b: GeoPoint,
    *,
    default_accuracy: float = DEFAULT_ACCURACY_M,
    fixed_margin: float = FIXED_MARGIN_M,
) -> bool:
    """True iff the two points are closer than their combined uncertainty plus a fixed margin."""
    limit = allowed_distance(
        a, b, default_accuracy=default_accuracy, fixed_margin=fixed_margin
    )
    return distance(a, b) <= limit
