from __future__ import annotations

from math import radians

import pytest

from ridein.logic.dispatch import (
    EARTH_RADIUS_KM,
    filter_by_proximity,
    haversine_km,
)
from ridein.models import Coordinate, Trip, TripLocation, TripStatus, TripType

ORIGIN = Coordinate(-17.8252, 31.0335)
KM_PER_DEGREE = radians(1) * EARTH_RADIUS_KM


def _north_of_origin(km: float) -> dict[str, float]:
    return {"id": f"{km}", "lat": ORIGIN.lat + km / KM_PER_DEGREE, "lng": ORIGIN.lng}


def test_haversine_zero_distance() -> None:
    assert haversine_km(ORIGIN, ORIGIN) == 0.0


def test_haversine_known_distance() -> None:
    harare = Coordinate(-17.8252, 31.0335)
    bulawayo = Coordinate(-20.1325, 28.6265)

    assert haversine_km(harare, bulawayo) == pytest.approx(360.4, abs=2.0)


def test_meridian_distance_matches_arc_length() -> None:
    target = _north_of_origin(10.0)

    distance = haversine_km(ORIGIN, Coordinate(target["lat"], target["lng"]))

    assert distance == pytest.approx(10.0, abs=1e-6)


def test_candidate_beyond_radius_excluded() -> None:
    far = _north_of_origin(30.0)
    near = _north_of_origin(24.9)
    closer = _north_of_origin(10.0)

    ranked = filter_by_proximity(ORIGIN, [far, near, closer], 25.0)

    assert [item.candidate for item in ranked] == [closer, near]
    assert ranked[0].distance_km == pytest.approx(10.0, abs=1e-6)
    assert ranked[1].distance_km == pytest.approx(24.9, abs=1e-6)


def test_ties_keep_arrival_order() -> None:
    first = {"id": "a", "lat": ORIGIN.lat, "lng": ORIGIN.lng}
    second = {"id": "b", "lat": ORIGIN.lat, "lng": ORIGIN.lng}

    ranked = filter_by_proximity(ORIGIN, [first, second], 25.0)

    assert [item.candidate["id"] for item in ranked] == ["a", "b"]


def test_filter_is_deterministic() -> None:
    candidates = [_north_of_origin(km) for km in (12.0, 3.0, 40.0, 7.5, 3.0)]

    first = filter_by_proximity(ORIGIN, candidates)
    second = filter_by_proximity(ORIGIN, candidates)

    assert first == second
    distances = [item.distance_km for item in first]
    assert distances == sorted(distances)
    assert all(distance <= 25.0 for distance in distances)


def test_trips_are_located_by_pickup() -> None:
    pickup = _north_of_origin(5.0)
    trip = Trip(
        id="11",
        status=TripStatus.BIDDING,
        type=TripType.PASSENGER,
        category="economy",
        pickup=TripLocation("Avondale", pickup["lat"], pickup["lng"]),
        dropoff=TripLocation("CBD", 0.0, 0.0),
        proposed_price=5.0,
        rider_id="7",
        created_at="",
    )

    ranked = filter_by_proximity(ORIGIN, [trip])

    assert ranked[0].candidate is trip
    assert ranked[0].distance_km == pytest.approx(5.0, abs=1e-6)


def test_negative_radius_rejected() -> None:
    with pytest.raises(ValueError):
        filter_by_proximity(ORIGIN, [], -1.0)


def test_coordinate_range_validated() -> None:
    with pytest.raises(ValueError):
        Coordinate(91.0, 0.0)
