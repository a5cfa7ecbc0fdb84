import math

import pytest

from app.geo import EARTH_RADIUS_KM, distance_km, haversine_km, is_valid_point, nearest, rank_by_distance

BLR = (12.9716, 77.5946)
MUMBAI = (19.0760, 72.8777)


def test_distance_is_symmetric():
    assert distance_km(BLR, MUMBAI) == pytest.approx(distance_km(MUMBAI, BLR))


def test_known_city_pair_is_roughly_right():
    # Bengaluru -> Mumbai is ~845 km great-circle.
    assert 830 < distance_km(BLR, MUMBAI) < 860


def test_coincident_points_are_zero():
    assert distance_km(BLR, BLR) == pytest.approx(0.0, abs=1e-9)


def test_distance_grows_with_delta_along_fixed_bearing():
    deltas = [0.0001, 0.001, 0.01, 0.1, 1.0, 10.0]
    # Fixed bearing: north-east, equal lat/lng deltas.
    distances = [distance_km(BLR, (BLR[0] + d, BLR[1] + d)) for d in deltas]
    assert distances == sorted(distances)
    assert len(set(distances)) == len(distances)


def test_antipodal_points_do_not_raise():
    d = haversine_km(0.0, 0.0, 0.0, 180.0)
    assert d == pytest.approx(math.pi * EARTH_RADIUS_KM)
    assert haversine_km(40.0, -74.0, -40.0, 106.0) == pytest.approx(math.pi * EARTH_RADIUS_KM)


def test_poles():
    assert haversine_km(90.0, 0.0, -90.0, 0.0) == pytest.approx(math.pi * EARTH_RADIUS_KM)
    # All longitudes meet at the pole.
    assert haversine_km(90.0, 10.0, 90.0, -170.0) == pytest.approx(0.0, abs=1e-6)


@pytest.mark.parametrize(
    "point",
    [(None, 77.5), (12.9, None), (None, None), (91.0, 0.0), (0.0, 181.0), (float("nan"), 0.0), (float("inf"), 1.0)],
)
def test_missing_or_invalid_coordinates_give_unknown_distance(point):
    assert not is_valid_point(*point)
    assert distance_km(BLR, point) is None
    assert distance_km(point, BLR) is None


def test_rank_puts_unknown_distances_last_and_keeps_ties_stable():
    items = [
        ("far", (13.2, 77.5946)),
        ("unknown-1", (None, None)),
        ("near", (12.98, 77.5946)),
        ("twin-a", (13.0, 77.5946)),
        ("twin-b", (13.0, 77.5946)),
        ("unknown-2", (12.9, None)),
    ]
    ranked = rank_by_distance(BLR, items, coords=lambda it: it[1])
    names = [it[0] for it, _ in ranked]
    assert names == ["near", "twin-a", "twin-b", "far", "unknown-1", "unknown-2"]
    assert ranked[-1][1] is None


def test_nearest_takes_at_most_n():
    items = [(BLR[0] + 0.01 * k, BLR[1]) for k in range(5)]
    assert len(nearest(BLR, items, coords=lambda p: p, n=3)) == 3
    assert len(nearest(BLR, items, coords=lambda p: p, n=10)) == 5
    assert nearest(BLR, items, coords=lambda p: p, n=0) == []
