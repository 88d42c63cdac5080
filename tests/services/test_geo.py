from __future__ import annotations

import pytest

from src.services.geo import haversine_distance_km

POINTS = [
    (37.7749, -122.4194),
    (34.0522, -118.2437),
    (46.5, 11.3),
    (-33.8688, 151.2093),
    (0.0, 0.0),
]


@pytest.mark.parametrize("point", POINTS)
def test_distance_to_self_is_zero(point: tuple[float, float]) -> None:
    assert haversine_distance_km(*point, *point) == 0


def test_distance_is_symmetric() -> None:
    for a in POINTS:
        for b in POINTS:
            assert haversine_distance_km(*a, *b) == pytest.approx(haversine_distance_km(*b, *a))


def test_triangle_inequality_holds() -> None:
    for a in POINTS:
        for b in POINTS:
            for c in POINTS:
                direct = haversine_distance_km(*a, *c)
                via = haversine_distance_km(*a, *b) + haversine_distance_km(*b, *c)
                assert direct <= via + 1e-9


def test_known_distance_san_francisco_to_los_angeles() -> None:
    assert haversine_distance_km(37.7749, -122.4194, 34.0522, -118.2437) == pytest.approx(559.1, abs=1.0)


def test_one_degree_of_latitude() -> None:
    assert haversine_distance_km(10.0, 20.0, 11.0, 20.0) == pytest.approx(111.195, abs=0.01)
