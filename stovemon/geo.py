from __future__ import annotations

import math
from typing import Optional

from .constants import EARTH_RADIUS_M, HOME_RADIUS_METERS, METERS_PER_MILE
from .state import Coordinate


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle (haversine) distance between two fixes, in meters."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Clamp: rounding can push h a hair above 1 for antipodal points.
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(min(1.0, h)))


def is_near_home(home: Coordinate, point: Coordinate, radius_m: float = HOME_RADIUS_METERS) -> bool:
    """True if point lies within radius_m of home (boundary inclusive).

    False when either fix lacks a position."""
    if home is None or point is None or not home.has_position or not point.has_position:
        return False
    return distance_meters(home, point) <= radius_m


def distance_miles(a: Coordinate, b: Coordinate) -> Optional[float]:
    if a is None or b is None or not a.has_position or not b.has_position:
        return None
    return distance_meters(a, b) / METERS_PER_MILE
