import pytest

from app.services.geospatial import bounding_box, distance, midpoint, path_length, sample_points


SAN_FRANCISCO = (-122.4194, 37.7749)
LOS_ANGELES = (-118.2437, 34.0522)


@pytest.mark.parametrize("point", [SAN_FRANCISCO, LOS_ANGELES, (0.0, 0.0), (179.9, -89.9)])
def test_distance_to_self_is_zero(point):
    assert distance(point, point) == 0


def test_distance_is_symmetric():
    assert distance(SAN_FRANCISCO, LOS_ANGELES) == pytest.approx(distance(LOS_ANGELES, SAN_FRANCISCO))


def test_distance_san_francisco_to_los_angeles():
    assert 500 <= distance(SAN_FRANCISCO, LOS_ANGELES) <= 600


def test_path_length_sums_legs():
    midway = (-120.0, 36.0)
    expected = distance(SAN_FRANCISCO, midway) + distance(midway, LOS_ANGELES)
    assert path_length([SAN_FRANCISCO, midway, LOS_ANGELES]) == pytest.approx(expected)
    assert path_length([SAN_FRANCISCO]) == 0


def test_bounding_box_pads_extremes():
    box = bounding_box([SAN_FRANCISCO, LOS_ANGELES])
    assert box.min_lat == pytest.approx(34.0022)
    assert box.max_lat == pytest.approx(37.8249)
    assert box.min_lng == pytest.approx(-122.4694)
    assert box.max_lng == pytest.approx(-118.1937)


def test_bounding_box_of_nothing_is_zero():
    box = bounding_box([])
    assert (box.min_lat, box.min_lng, box.max_lat, box.max_lng) == (0, 0, 0, 0)


def test_sample_points_returns_short_input_unchanged():
    points = [(float(i), float(i)) for i in range(5)]
    assert sample_points(points, 10) == points
    assert sample_points(points, 5) == points


@pytest.mark.parametrize("length", [11, 19, 20, 37, 100])
def test_sample_points_caps_length_and_keeps_order(length):
    points = [(float(i), 0.0) for i in range(length)]
    sampled = sample_points(points, 10)
    assert len(sampled) == 10
    positions = [points.index(item) for item in sampled]
    assert positions == sorted(positions)


def test_midpoint():
    assert midpoint([]) is None
    assert midpoint([SAN_FRANCISCO, (0.0, 0.0), LOS_ANGELES]) == (0.0, 0.0)
