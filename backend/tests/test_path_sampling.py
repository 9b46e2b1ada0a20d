"""Tests for path_sampling.py."""

import pytest

import path_sampling
from models import GeoPoint

# One kilometre of latitude on the sampling sphere.
_KM_LAT = 1 / 111.19492664455873


def _straight_north(n_points: int, step_km: float = 1.0) -> list[GeoPoint]:
    return [GeoPoint(lat=52.0 + i * step_km * _KM_LAT, lng=4.9) for i in range(n_points)]


def _path_length(path: list[GeoPoint]) -> float:
    return sum(
        path_sampling.haversine_km(path[i - 1], path[i]) for i in range(1, len(path))
    )


# ---------------------------------------------------------------------------
# Geodesic helpers
# ---------------------------------------------------------------------------


def test_haversine_one_degree_of_latitude():
    d = path_sampling.haversine_km(GeoPoint(lat=0, lng=0), GeoPoint(lat=1, lng=0))
    assert abs(d - 111.195) < 0.01


def test_haversine_same_point_is_zero():
    p = GeoPoint(lat=48.85, lng=2.35)
    assert path_sampling.haversine_km(p, p) == 0


def test_bearing_north():
    b = path_sampling.calculate_bearing(GeoPoint(lat=0, lng=0), GeoPoint(lat=1, lng=0))
    assert abs(b - 0) < 1


def test_bearing_east():
    b = path_sampling.calculate_bearing(GeoPoint(lat=0, lng=0), GeoPoint(lat=0, lng=1))
    assert abs(b - 90) < 1


def test_bearing_west_is_within_range():
    b = path_sampling.calculate_bearing(GeoPoint(lat=0, lng=0), GeoPoint(lat=0, lng=-1))
    assert abs(b - 270) < 1


@pytest.mark.parametrize(
    "a, b, expected",
    [(0, 0, 0), (10, 350, 20), (350, 10, 20), (0, 180, 180), (90, 270, 180), (45, 100, 55)],
)
def test_angle_difference_known_values(a, b, expected):
    assert path_sampling.angle_difference(a, b) == pytest.approx(expected)


def test_angle_difference_symmetric_and_bounded():
    headings = [i * 7.5 for i in range(48)]
    for a in headings:
        for b in headings:
            diff = path_sampling.angle_difference(a, b)
            assert 0 <= diff <= 180
            assert diff == path_sampling.angle_difference(b, a)


# ---------------------------------------------------------------------------
# generate_evenly_spaced_points
# ---------------------------------------------------------------------------


def test_empty_path_yields_no_points():
    assert path_sampling.generate_evenly_spaced_points([], 50) == []


def test_single_point_path_yields_no_points():
    assert path_sampling.generate_evenly_spaced_points([GeoPoint(lat=1, lng=1)], 50) == []


def test_zero_length_path_yields_no_points():
    p = GeoPoint(lat=1, lng=1)
    assert path_sampling.generate_evenly_spaced_points([p, p, p], 10) == []


def test_target_count_must_be_positive():
    with pytest.raises(ValueError, match="at least 1"):
        path_sampling.generate_evenly_spaced_points(_straight_north(3), 0)


@pytest.mark.parametrize("target_count", [1, 3, 7, 50])
def test_returns_at_most_target_plus_one(target_count):
    points = path_sampling.generate_evenly_spaced_points(_straight_north(10), target_count)
    assert len(points) <= target_count + 1
    assert len(points) == target_count + 1


def test_points_are_evenly_spaced_on_straight_path():
    path = _straight_north(10)
    target = 50
    points = path_sampling.generate_evenly_spaced_points(path, target)
    expected = _path_length(path) / target
    for i in range(1, len(points)):
        gap = path_sampling.haversine_km(points[i - 1].coordinate, points[i].coordinate)
        assert abs(gap - expected) < 1e-3


def test_first_and_last_points_are_path_ends():
    path = _straight_north(4)
    points = path_sampling.generate_evenly_spaced_points(path, 5)
    assert points[0].coordinate == path[0]
    assert points[-1].coordinate == path[-1]


def test_bearings_follow_each_segment():
    # 2km north, then 2km east.
    corner = GeoPoint(lat=52.0 + 2 * _KM_LAT, lng=4.9)
    path = [GeoPoint(lat=52.0, lng=4.9), corner, GeoPoint(lat=corner.lat, lng=4.9295)]
    points = path_sampling.generate_evenly_spaced_points(path, 8)

    for point in points:
        if point.coordinate.lng == pytest.approx(4.9):
            assert point.bearing == pytest.approx(0, abs=0.5)
        else:
            assert point.bearing == pytest.approx(90, abs=0.5)
    # Terminal sample reuses the heading of the final segment.
    assert points[-1].bearing == pytest.approx(90, abs=0.5)


def test_points_lie_on_path_segments():
    corner = GeoPoint(lat=52.0 + 2 * _KM_LAT, lng=4.9)
    path = [GeoPoint(lat=52.0, lng=4.9), corner, GeoPoint(lat=corner.lat, lng=4.93)]
    for point in path_sampling.generate_evenly_spaced_points(path, 13):
        c = point.coordinate
        on_first = abs(c.lng - 4.9) < 1e-9 and 52.0 <= c.lat <= corner.lat + 1e-9
        on_second = abs(c.lat - corner.lat) < 1e-9 and 4.9 <= c.lng <= 4.93 + 1e-9
        assert on_first or on_second


def test_duplicate_vertices_are_skipped():
    path = _straight_north(3)
    doubled = [path[0], path[0], path[1], path[1], path[2]]
    points = path_sampling.generate_evenly_spaced_points(doubled, 4)
    assert len(points) == 5
    assert all(p.bearing == pytest.approx(0, abs=0.01) for p in points)


def test_sampling_is_deterministic():
    path = _straight_north(6)
    first = path_sampling.generate_evenly_spaced_points(path, 20)
    second = path_sampling.generate_evenly_spaced_points(path, 20)
    assert first == second
