"""Channel names and event names used on the realtime transport."""

from __future__ import annotations

import re

BID_EVENT = "bid"
STATUS_EVENT = "status_update"
CANCEL_EVENT = "cancel"
TRIP_REQUEST_EVENT = "trip_request"
LOCATION_EVENT = "location"
CHAT_EVENT = "msg"

_WHITESPACE = re.compile(r"\s+")


def city_slug(city: str) -> str:
    slug = _WHITESPACE.sub("_", (city or "").strip().lower())
    if not slug:
        raise ValueError("city is required to build a city channel name.")
    return slug


def _trip_segment(trip_id: str) -> str:
    segment = str(trip_id).strip()
    if not segment:
        raise ValueError("trip_id is required to build a trip channel name.")
    return segment


def presence_channel(city: str) -> str:
    return f"presence:{city_slug(city)}"


def requests_channel(city: str) -> str:
    return f"requests:{city_slug(city)}"


def trip_events_channel(trip_id: str) -> str:
    return f"trip:{_trip_segment(trip_id)}:events"


def trip_location_channel(trip_id: str) -> str:
    return f"trip:{_trip_segment(trip_id)}:location"


def trip_chat_channel(trip_id: str) -> str:
    return f"trip:{_trip_segment(trip_id)}:chat"


def trip_id_from_channel(channel_name: str) -> str | None:
    """Extract the trip id from a trip:{id}:... channel name."""
    parts = channel_name.split(":")
    if len(parts) >= 3 and parts[0] == "trip" and parts[1]:
        return parts[1]
    return None


__all__ = [
    "BID_EVENT",
    "CANCEL_EVENT",
    "CHAT_EVENT",
    "LOCATION_EVENT",
    "STATUS_EVENT",
    "TRIP_REQUEST_EVENT",
    "city_slug",
    "presence_channel",
    "requests_channel",
    "trip_chat_channel",
    "trip_events_channel",
    "trip_id_from_channel",
    "trip_location_channel",
]
