"""Domain records shared by the client, the session layer and the trip flow."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import enum
from typing import Any


class TripStatus(str, enum.Enum):
    PENDING = "PENDING"
    BIDDING = "BIDDING"
    ACCEPTED = "ACCEPTED"
    ARRIVING = "ARRIVING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Forward progress of a trip; CANCELLED sits outside the sequence.
STATUS_RANK = {
    TripStatus.PENDING: 0,
    TripStatus.BIDDING: 1,
    TripStatus.ACCEPTED: 2,
    TripStatus.ARRIVING: 3,
    TripStatus.IN_PROGRESS: 4,
    TripStatus.COMPLETED: 5,
}
COMMITTED_STATUSES = frozenset(
    {TripStatus.ACCEPTED, TripStatus.ARRIVING, TripStatus.IN_PROGRESS, TripStatus.COMPLETED}
)
CANCELLABLE_STATUSES = frozenset({TripStatus.PENDING, TripStatus.BIDDING})
TERMINAL_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED})


class TripType(str, enum.Enum):
    PASSENGER = "passenger"
    FREIGHT = "freight"


class UserRole(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.lat <= 90.0):
            raise ValueError(f"latitude must be between -90 and 90 degrees, got {self.lat}")
        if not (-180.0 <= self.lng <= 180.0):
            raise ValueError(f"longitude must be between -180 and 180 degrees, got {self.lng}")

    def as_payload(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class TripLocation:
    """Address plus coordinate of a pickup or dropoff."""

    address: str
    lat: float
    lng: float

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lng)

    @classmethod
    def from_payload(cls, payload: Any, address: str | None = None) -> "TripLocation":
        data = payload if isinstance(payload, dict) else {}
        return cls(
            address=str(data.get("address") or address or ""),
            lat=_float(data.get("lat", data.get("latitude"))),
            lng=_float(data.get("lng", data.get("longitude", data.get("lon")))),
        )


@dataclass(frozen=True)
class Bid:
    """A driver's offer against a trip. Immutable once created."""

    id: str
    driver_id: str
    driver_name: str
    driver_rating: float
    amount: float
    eta: str
    vehicle_info: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Bid":
        bid_id = payload.get("id")
        if not bid_id:
            raise ValueError("Bid payload is missing an id.")
        return cls(
            id=str(bid_id),
            driver_id=str(payload.get("driver_id") or ""),
            driver_name=str(payload.get("driver_name") or ""),
            driver_rating=_float(payload.get("driver_rating")),
            amount=_float(payload.get("amount", payload.get("offer_price"))),
            eta=str(payload.get("eta") or ""),
            vehicle_info=str(payload.get("vehicle_info") or "Standard"),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "driver_name": self.driver_name,
            "driver_rating": self.driver_rating,
            "amount": self.amount,
            "eta": self.eta,
            "vehicle_info": self.vehicle_info,
        }


@dataclass(frozen=True)
class Trip:
    """A rider's transport request and its lifecycle record."""

    id: str
    status: TripStatus
    type: TripType
    category: str
    pickup: TripLocation
    dropoff: TripLocation
    proposed_price: float
    rider_id: str
    created_at: str
    bids: tuple[Bid, ...] = ()
    final_price: float | None = None
    accepted_bid_id: str | None = None
    driver_id: str | None = None
    completed_at: str | None = None
    city: str | None = None

    def __post_init__(self) -> None:
        if self.status not in COMMITTED_STATUSES and (
            self.driver_id is not None or self.final_price is not None
        ):
            raise ValueError(
                f"Trip {self.id} cannot carry a driver or final price while {self.status.value}."
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def find_bid(self, bid_id: str) -> Bid | None:
        for bid in self.bids:
            if bid.id == bid_id:
                return bid
        return None

    def with_bid(self, bid: Bid) -> "Trip":
        """Return a copy with bid appended unless a bid with its id is present."""
        if self.find_bid(bid.id) is not None:
            return self
        return replace(self, bids=self.bids + (bid,))

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Trip":
        """Build a Trip from a normalized Ledger or channel payload."""
        trip_id = payload.get("id")
        if not trip_id:
            raise ValueError("Trip payload is missing an id.")
        status = TripStatus(str(payload.get("status") or TripStatus.PENDING.value).upper())
        type_value = str(payload.get("type") or payload.get("vehicle_type") or "passenger").lower()
        bids: list[Bid] = []
        seen: set[str] = set()
        for raw_bid in payload.get("bids") or []:
            if not isinstance(raw_bid, dict):
                continue
            bid = Bid.from_payload(raw_bid)
            if bid.id not in seen:
                seen.add(bid.id)
                bids.append(bid)
        committed = status in COMMITTED_STATUSES
        return cls(
            id=str(trip_id),
            status=status,
            type=TripType(type_value),
            category=str(payload.get("category") or ""),
            pickup=TripLocation.from_payload(payload.get("pickup"), payload.get("pickup_address")),
            dropoff=TripLocation.from_payload(payload.get("dropoff"), payload.get("dropoff_address")),
            proposed_price=_float(payload.get("proposed_price")),
            rider_id=str(payload.get("rider_id") or ""),
            created_at=str(payload.get("created_at") or ""),
            bids=tuple(bids),
            final_price=_optional_float(payload.get("final_price")) if committed else None,
            accepted_bid_id=_optional_str(payload.get("accepted_bid_id")),
            driver_id=_optional_str(payload.get("driver_id")) if committed else None,
            completed_at=_optional_str(payload.get("completed_at")),
            city=_optional_str(payload.get("city")),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "type": self.type.value,
            "category": self.category,
            "pickup": {"address": self.pickup.address, "lat": self.pickup.lat, "lng": self.pickup.lng},
            "dropoff": {
                "address": self.dropoff.address,
                "lat": self.dropoff.lat,
                "lng": self.dropoff.lng,
            },
            "proposed_price": self.proposed_price,
            "rider_id": self.rider_id,
            "created_at": self.created_at,
            "bids": [bid.as_payload() for bid in self.bids],
            "final_price": self.final_price,
            "accepted_bid_id": self.accepted_bid_id,
            "driver_id": self.driver_id,
            "completed_at": self.completed_at,
            "city": self.city,
        }


@dataclass(frozen=True)
class TripRequest:
    """What a rider submits to open a trip."""

    rider_id: str
    type: TripType
    category: str
    pickup: TripLocation
    dropoff: TripLocation
    proposed_price: float
    distance_km: float
    duration_mins: int
    city: str | None = None
    scheduled_time: str | None = None
    is_guest_booking: bool = False
    guest_name: str = ""
    guest_phone: str = ""
    item_description: str = ""
    requires_assistance: bool = False
    cargo_photos: tuple[str, ...] = ()


@dataclass(frozen=True)
class User:
    """Cached identity snapshot."""

    id: str
    name: str
    role: UserRole
    phone: str = ""
    city: str = ""
    rating: float = 0.0
    vehicle_category: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "User":
        user_id = payload.get("id")
        if not user_id:
            raise ValueError("User payload is missing an id.")
        vehicle = payload.get("vehicle") if isinstance(payload.get("vehicle"), dict) else {}
        known = {"id", "name", "role", "phone", "city", "rating", "vehicle"}
        return cls(
            id=str(user_id),
            name=str(payload.get("name") or ""),
            role=UserRole(str(payload.get("role") or UserRole.RIDER.value).lower()),
            phone=str(payload.get("phone") or ""),
            city=str(payload.get("city") or ""),
            rating=_float(payload.get("rating")),
            vehicle_category=_optional_str(vehicle.get("category")),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def as_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "name": self.name,
                "role": self.role.value,
                "phone": self.phone,
                "city": self.city,
                "rating": self.rating,
            }
        )
        if self.vehicle_category is not None:
            payload["vehicle"] = {"category": self.vehicle_category}
        return payload


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    text: str
    timestamp: str
    is_system: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(payload.get("id") or ""),
            sender_id=str(payload.get("sender_id") or ""),
            text=str(payload.get("text") or ""),
            timestamp=str(payload.get("timestamp") or ""),
            is_system=bool(payload.get("is_system", False)),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "text": self.text,
            "timestamp": self.timestamp,
            "is_system": self.is_system,
        }


__all__ = [
    "Bid",
    "CANCELLABLE_STATUSES",
    "COMMITTED_STATUSES",
    "ChatMessage",
    "Coordinate",
    "STATUS_RANK",
    "TERMINAL_STATUSES",
    "Trip",
    "TripLocation",
    "TripRequest",
    "TripStatus",
    "TripType",
    "User",
]
