"""
Great-circle distance helpers (haversine, mean Earth radius).

No external map APIs: callers supply coordinates.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, Sequence, TypeVar

EARTH_RADIUS_KM = 6371.0

T = TypeVar("T")
Point = tuple[float | None, float | None]


def is_valid_point(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return False
    if not math.isfinite(lat_f) or not math.isfinite(lng_f):
        return False
    return abs(lat_f) <= 90 and abs(lng_f) <= 180


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * (math.sin(dlng / 2) ** 2)
    # Rounding can push `a` a hair outside [0, 1] for antipodal points.
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def distance_km(a: Point, b: Point) -> float | None:
    """
    Distance between two (lat, lng) points, or None when either point is
    missing a component or out of range.
    """
    if not is_valid_point(*a) or not is_valid_point(*b):
        return None
    return haversine_km(float(a[0]), float(a[1]), float(b[0]), float(b[1]))


def distance_sort_key(distance: float | None) -> tuple[int, float]:
    # Unknown distances sort after every known distance.
    if distance is None:
        return (1, 0.0)
    return (0, float(distance))


def rank_by_distance(
    origin: Point,
    items: Iterable[T],
    coords: Callable[[T], Point],
) -> list[tuple[T, float | None]]:
    """
    Rank `items` by distance from `origin`, nearest first, unknown distances last.
    The sort is stable, so ties keep the input order.
    """
    scored = [(item, distance_km(origin, coords(item))) for item in items]
    scored.sort(key=lambda pair: distance_sort_key(pair[1]))
    return scored


def nearest(origin: Point, items: Sequence[T], coords: Callable[[T], Point], n: int) -> list[tuple[T, float | None]]:
    if n <= 0:
        return []
    return rank_by_distance(origin, items, coords)[:n]
