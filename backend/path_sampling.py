"""Geodesic helpers and evenly spaced, bearing-aware sampling of route paths.

A decoded route polyline is turned into a bounded list of sampling points.
Each point carries the heading of travel at that spot so the image matcher
can prefer photographs that look down the road rather than across it.
"""

import logging
import math
from typing import Sequence

from models import GeoPoint, SamplingPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM: float = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Returns the great-circle distance in kilometres between two points."""
    lat1_r, lat2_r = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2_r - lat1_r
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def calculate_bearing(a: GeoPoint, b: GeoPoint) -> float:
    """Returns the initial bearing in degrees (0–360) from ``a`` to ``b``."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlng = math.radians(b.lng - a.lng)
    x = math.sin(dlng) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)
    return (math.degrees(math.atan2(x, y)) + 360) % 360


def angle_difference(a: float, b: float) -> float:
    """Returns the smallest angle between two headings, in [0, 180]."""
    diff = abs(a - b) % 360
    if diff > 180:
        diff = 360 - diff
    return diff


def _interpolate(a: GeoPoint, b: GeoPoint, fraction: float) -> GeoPoint:
    # Linear in degrees; segments of a decoded driving route are short enough.
    return GeoPoint(
        lat=a.lat + (b.lat - a.lat) * fraction,
        lng=a.lng + (b.lng - a.lng) * fraction,
    )


def generate_evenly_spaced_points(
    path: Sequence[GeoPoint], target_count: int
) -> list[SamplingPoint]:
    """Samples ``path`` at ``target_count`` equal intervals of its length.

    The interval is the total path length divided by ``target_count``, so the
    number of samples does not depend on how long the route is. Samples are
    placed at along-path distances ``0, d, 2d, ... (target_count - 1) * d``
    and the final vertex of the path is always appended, giving
    ``target_count + 1`` points for any path with a non-zero length.

    Args:
        path: Ordered route vertices.
        target_count: Number of intervals to divide the route into.

    Returns:
        Sampling points in path order. Empty for paths with fewer than two
        vertices or zero total length.

    Raises:
        ValueError: If ``target_count`` is less than 1.
    """
    if target_count < 1:
        raise ValueError("target_count must be at least 1.")
    if len(path) < 2:
        return []

    segment_lengths = [
        haversine_km(path[i - 1], path[i]) for i in range(1, len(path))
    ]
    total_km = sum(segment_lengths)
    if total_km <= 0:
        logger.debug("Path of %d vertices has zero length", len(path))
        return []

    interval_km = total_km / target_count
    targets = [k * interval_km for k in range(target_count)]

    samples: list[SamplingPoint] = []
    next_target = 0
    segment_start_km = 0.0
    last_bearing = 0.0
    for i, seg_km in enumerate(segment_lengths):
        if seg_km <= 0:
            continue
        start, end = path[i], path[i + 1]
        bearing = calculate_bearing(start, end)
        segment_end_km = segment_start_km + seg_km
        while next_target < len(targets) and targets[next_target] < segment_end_km:
            fraction = (targets[next_target] - segment_start_km) / seg_km
            samples.append(
                SamplingPoint(
                    coordinate=_interpolate(start, end, fraction),
                    bearing=bearing,
                )
            )
            next_target += 1
        segment_start_km = segment_end_km
        last_bearing = bearing

    # Terminal vertex keeps the heading of the final segment.
    samples.append(SamplingPoint(coordinate=path[-1], bearing=last_bearing))

    logger.debug(
        "Sampled %d points every %.3fkm along a %.2fkm path",
        len(samples),
        interval_km,
        total_km,
    )
    return samples
