"""Geospatial helpers. Points are (longitude, latitude) pairs throughout."""

from __future__ import annotations

import math
from typing import Sequence, TypeVar

from app.schemas.conditions import BoundingBox, Point

EARTH_RADIUS_KM = 6371.0
# Roughly 5 km of latitude.
BBOX_PADDING_DEG = 0.05

T = TypeVar("T")


def distance(a: Point, b: Point) -> float:
    """Great-circle distance in kilometres between two (lon, lat) points."""
    lon1, lat1 = a
    lon2, lat2 = b
    p = math.pi / 180
    dlat = (lat2 - lat1) * p
    dlon = (lon2 - lon1) * p
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1 * p) * math.cos(lat2 * p) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def path_length(points: Sequence[Point]) -> float:
    return sum(distance(points[idx], points[idx + 1]) for idx in range(len(points) - 1))


def bounding_box(points: Sequence[Point], padding_deg: float = BBOX_PADDING_DEG) -> BoundingBox:
    if not points:
        return BoundingBox()

    lngs = [float(lng) for lng, _ in points]
    lats = [float(lat) for _, lat in points]
    return BoundingBox(
        min_lat=min(lats) - padding_deg,
        min_lng=min(lngs) - padding_deg,
        max_lat=max(lats) + padding_deg,
        max_lng=max(lngs) + padding_deg,
    )


def sample_points(points: Sequence[T], max_count: int) -> list[T]:
    """Evenly strided subset of at most ``max_count`` points, order preserved."""
    if len(points) <= max_count:
        return list(points)
    if max_count <= 0:
        return []

    step = len(points) // max_count
    return list(points[::step][:max_count])


def midpoint(points: Sequence[T]) -> T | None:
    if not points:
        return None
    return points[len(points) // 2]
