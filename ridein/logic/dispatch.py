"""Great-circle proximity filtering for driver-side trip discovery."""

from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt
from typing import Any, Callable, Generic, Iterable, TypeVar

from ridein.models import Coordinate, Trip

EARTH_RADIUS_KM = 6371.0
DEFAULT_DISPATCH_RADIUS_KM = 25.0

T = TypeVar("T")


@dataclass(frozen=True)
class RankedCandidate(Generic[T]):
    """A candidate together with its distance from the origin."""

    candidate: T
    distance_km: float


def haversine_km(origin: Coordinate, target: Coordinate) -> float:
    """Distance between two points in kilometres on a spherical Earth."""
    lat1, lng1, lat2, lng2 = map(radians, (origin.lat, origin.lng, target.lat, target.lng))
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(a)))


def locate(candidate: Any) -> Coordinate:
    """Default coordinate lookup: trips by pickup, mappings by lat/lng keys."""
    if isinstance(candidate, Coordinate):
        return candidate
    if isinstance(candidate, Trip):
        return candidate.pickup.coordinate
    if isinstance(candidate, dict):
        return Coordinate(float(candidate["lat"]), float(candidate["lng"]))
    return Coordinate(float(candidate.lat), float(candidate.lng))


def filter_by_proximity(
    origin: Coordinate,
    candidates: Iterable[T],
    radius_km: float = DEFAULT_DISPATCH_RADIUS_KM,
    *,
    locator: Callable[[T], Coordinate] = locate,
) -> list[RankedCandidate[T]]:
    """Return candidates within radius_km of origin, nearest first.

    Candidates exactly on the radius are kept. Equal distances keep their
    input order.
    """
    if radius_km < 0:
        raise ValueError("radius_km must not be negative.")
    ranked = [
        RankedCandidate(candidate, haversine_km(origin, locator(candidate)))
        for candidate in candidates
    ]
    within = [item for item in ranked if item.distance_km <= radius_km]
    return sorted(within, key=lambda item: item.distance_km)


__all__ = [
    "DEFAULT_DISPATCH_RADIUS_KM",
    "EARTH_RADIUS_KM",
    "RankedCandidate",
    "filter_by_proximity",
    "haversine_km",
    "locate",
]
