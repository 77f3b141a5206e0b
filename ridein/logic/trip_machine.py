"""Trip lifecycle state machine shared by the rider and driver flows."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import itertools
import logging
import threading
import time
from typing import Any, Callable
import uuid

from ridein.data.errors import TripStateError
from ridein.data.ledger_client import LedgerClient
from ridein.data.poller import ActiveTripPoller, PollResult
from ridein.logic.dispatch import DEFAULT_DISPATCH_RADIUS_KM, RankedCandidate, filter_by_proximity
from ridein.models import (
    CANCELLABLE_STATUSES,
    COMMITTED_STATUSES,
    STATUS_RANK,
    Bid,
    ChatMessage,
    Coordinate,
    Trip,
    TripRequest,
    TripStatus,
    User,
    UserRole,
)
from ridein.realtime import channels
from ridein.realtime.router import ChannelRouter
from ridein.realtime.transport import Message, TransportError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 12.0

# Progress a driver may report; ARRIVING -> COMPLETED covers drop-offs without a pickup step.
DRIVER_TRANSITIONS = frozenset(
    {
        (TripStatus.ACCEPTED, TripStatus.ARRIVING),
        (TripStatus.ARRIVING, TripStatus.IN_PROGRESS),
        (TripStatus.IN_PROGRESS, TripStatus.COMPLETED),
        (TripStatus.ARRIVING, TripStatus.COMPLETED),
    }
)

_owner_ids = itertools.count(1)


def _rank(status: TripStatus) -> int:
    return STATUS_RANK.get(status, -1)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def merge_trips(local: Trip, remote: Trip) -> Trip:
    """Reconcile two views of the same trip without regressing its status.

    Bids are unioned by id. The more advanced status wins; CANCELLED only
    replaces a trip that has no driver committed yet.
    """
    merged = local
    for bid in remote.bids:
        merged = merged.with_bid(bid)
    if local.is_terminal:
        return merged

    if remote.status == TripStatus.CANCELLED:
        if local.status in CANCELLABLE_STATUSES:
            return replace(merged, status=TripStatus.CANCELLED)
        logger.warning("Ignoring cancellation of trip %s after a driver committed", local.id)
        return merged

    if _rank(remote.status) > _rank(local.status):
        driver_id = remote.driver_id or local.driver_id
        if remote.status in COMMITTED_STATUSES and not driver_id:
            logger.warning("Trip %s reported %s without a driver", local.id, remote.status.value)
            return merged
        return replace(
            merged,
            status=remote.status,
            driver_id=driver_id,
            final_price=remote.final_price if remote.final_price is not None else local.final_price,
            accepted_bid_id=remote.accepted_bid_id or local.accepted_bid_id,
            completed_at=remote.completed_at or local.completed_at,
        )

    if local.status in COMMITTED_STATUSES and remote.status == local.status:
        return replace(
            merged,
            driver_id=local.driver_id or remote.driver_id,
            final_price=local.final_price if local.final_price is not None else remote.final_price,
            accepted_bid_id=local.accepted_bid_id or remote.accepted_bid_id,
        )
    return merged


class TripStateMachine:
    """Drives one user's trip through PENDING, BIDDING, ACCEPTED and onwards.

    Channel events, poll results and local actions all funnel through the
    same merge rules: bids insert at most once by id, status never moves
    backwards, and CANCELLED is only reachable before a driver commits.
    """

    def __init__(
        self,
        client: LedgerClient,
        router: ChannelRouter,
        user: User,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        dispatch_radius_km: float = DEFAULT_DISPATCH_RADIUS_KM,
        on_change: Callable[[Trip | None], None] | None = None,
        on_completed: Callable[[Trip], None] | None = None,
        on_candidates: Callable[[list[RankedCandidate[Trip]]], None] | None = None,
        on_chat_message: Callable[[ChatMessage], None] | None = None,
        on_driver_location: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._client = client
        self._router = router
        self._user = user
        self._poll_interval_seconds = poll_interval_seconds
        self._dispatch_radius_km = dispatch_radius_km
        self._on_change = on_change
        self._on_completed = on_completed
        self._on_candidates = on_candidates
        self._on_chat_message = on_chat_message
        self._on_driver_location = on_driver_location
        self._owner = f"trips:{user.id}:{next(_owner_ids)}"

        self._lock = threading.RLock()
        self._trip: Trip | None = None
        self._last_local_change = 0.0
        self._poller: ActiveTripPoller | None = None

        # Driver-side discovery state.
        self._city: str | None = None
        self._location: Coordinate | None = None
        self._online = False
        self._candidates: list[Trip] = []
        self._skipped: set[str] = set()
        self._awaiting: dict[str, Trip] = {}

        self._messages: list[ChatMessage] = []
        self._driver_position: dict[str, Any] | None = None

    # Read-only view -----------------------------------------------------------
    @property
    def owner(self) -> str:
        return self._owner

    @property
    def trip(self) -> Trip | None:
        return self._trip

    @property
    def role(self) -> UserRole:
        return self._user.role

    @property
    def online(self) -> bool:
        return self._online

    @property
    def messages(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._messages)

    @property
    def driver_position(self) -> dict[str, Any] | None:
        return self._driver_position

    @property
    def awaiting_trip_ids(self) -> list[str]:
        with self._lock:
            return list(self._awaiting)

    def candidates(self) -> list[RankedCandidate[Trip]]:
        """Open trip requests within the dispatch radius, nearest pickup first."""
        with self._lock:
            location = self._location
            pending = list(self._candidates)
        if location is None:
            return []
        return filter_by_proximity(location, pending, self._dispatch_radius_km)

    # Polling ------------------------------------------------------------------
    def start(self) -> None:
        """Start the active-trip fallback poller."""
        with self._lock:
            if self._poller is None:
                self._poller = ActiveTripPoller(
                    self._client, self._poll_interval_seconds, on_result=self.reconcile
                )
            poller = self._poller
        poller.start()

    def set_visible(self, visible: bool) -> None:
        """Pause polling and drop out of presence while the app is in the background."""
        poller = self._poller
        if poller is not None:
            poller.set_visible(visible)
        with self._lock:
            online = self._online
            city = self._city
            location = self._location
        if not online:
            return
        if not visible:
            self._router.leave_presence()
            logger.info("Driver %s left presence while in the background", self._user.id)
        elif city and location is not None:
            self._router.enter_presence(city, self._presence_identity(), location)

    def reconcile(self, result: PollResult) -> None:
        """Fold a poll result into the current view."""
        if result.error:
            return
        remote = result.trip
        completed: Trip | None = None
        released: str | None = None
        watch = False
        with self._lock:
            current = self._trip
            stale = result.started_at < self._last_local_change
            if remote is None:
                if current is None:
                    return
                if stale:
                    logger.debug("Discarding stale empty poll for trip %s", current.id)
                    return
                logger.info("Trip %s is no longer active on the Ledger", current.id)
                self._trip = None
                released = current.id
                updated = None
            elif current is None or current.id != remote.id:
                if current is not None and not current.is_terminal and stale:
                    logger.debug("Discarding stale poll for trip %s", remote.id)
                    return
                if current is not None:
                    released = current.id
                updated = remote
                self._trip = updated
                self._awaiting.pop(remote.id, None)
                self._forget_candidate(remote.id)
                watch = not updated.is_terminal
            else:
                updated = merge_trips(current, remote)
                if updated == current:
                    return
                self._trip = updated
                if updated.status == TripStatus.COMPLETED and current.status != TripStatus.COMPLETED:
                    completed = updated
                elif updated.status == TripStatus.CANCELLED:
                    released = updated.id

        if released is not None:
            self._release_trip(released)
        if watch:
            self._watch_trip(updated.id)
        if completed is not None:
            self._finish(completed)
        self._emit(updated)

    # Rider actions ----------------------------------------------------------------
    def request_trip(self, request: TripRequest, cancel_event: threading.Event | None = None) -> Trip:
        """Create a trip on the Ledger, open bidding and announce it to nearby drivers."""
        self._require_role(UserRole.RIDER)
        with self._lock:
            if self._trip is not None and not self._trip.is_terminal:
                raise TripStateError("You already have an active trip.")
        trip = self._client.create_trip(request, cancel_event)
        if trip.status == TripStatus.PENDING:
            trip = replace(trip, status=TripStatus.BIDDING)
        city = trip.city or request.city
        if city and trip.city is None:
            trip = replace(trip, city=city)

        with self._lock:
            self._trip = trip
            self._touch()
        self._watch_trip(trip.id)
        if city:
            self._router.broadcast_trip_request(city, trip)
        logger.info("Trip %s requested; waiting for bids", trip.id)
        self._emit(trip)
        return trip

    def accept_bid(self, bid_id: str) -> Trip:
        """Accept one bid; on failure the trip stays in BIDDING and may be retried."""
        self._require_role(UserRole.RIDER)
        with self._lock:
            trip = self._require_trip()
            if trip.status != TripStatus.BIDDING:
                raise TripStateError(
                    f"Offers can only be accepted while bidding (trip is {trip.status.value})."
                )
            bid = trip.find_bid(str(bid_id))
            if bid is None:
                raise TripStateError("That offer is no longer available.")

        response = self._client.accept_bid(trip.id, bid.id)

        with self._lock:
            current = self._trip
            if current is None or current.id != trip.id:
                raise TripStateError("The trip changed while the offer was being accepted.")
            accepted = current
            if _rank(current.status) < _rank(TripStatus.ACCEPTED) and not current.is_terminal:
                accepted = replace(
                    current,
                    status=TripStatus.ACCEPTED,
                    driver_id=bid.driver_id,
                    accepted_bid_id=bid.id,
                    final_price=bid.amount,
                )
            if response is not None and response.id == accepted.id:
                accepted = merge_trips(accepted, response)
            self._trip = accepted
            self._touch()

        self._router.publish_status(
            trip.id,
            TripStatus.ACCEPTED,
            driver_id=bid.driver_id,
            accepted_bid_id=bid.id,
            final_price=bid.amount,
        )
        logger.info("Accepted bid %s on trip %s", bid.id, trip.id)
        self._emit(accepted)
        return accepted

    def cancel_trip(self, reason: str | None = None) -> Trip:
        """Cancel before a driver commits; the local state only changes once the Ledger agrees."""
        self._require_role(UserRole.RIDER)
        with self._lock:
            trip = self._require_trip()
            if trip.status not in CANCELLABLE_STATUSES:
                raise TripStateError("A trip can only be cancelled before a driver is assigned.")

        self._client.cancel_trip(trip.id, reason)

        with self._lock:
            current = self._trip
            if current is not None and current.id == trip.id and current.status in CANCELLABLE_STATUSES:
                current = replace(current, status=TripStatus.CANCELLED)
                self._trip = current
                self._touch()
            elif current is not None and current.id == trip.id:
                logger.warning(
                    "Trip %s moved to %s while cancelling", trip.id, current.status.value
                )
        self._release_trip(trip.id)
        self._router.publish_cancel(trip.id, reason or "")
        logger.info("Cancelled trip %s", trip.id)
        self._emit(current)
        return current if current is not None else replace(trip, status=TripStatus.CANCELLED)

    def watch_driver_location(self) -> None:
        """Follow the assigned driver's coordinate and heading."""
        with self._lock:
            trip = self._require_trip()
            if trip.status not in COMMITTED_STATUSES:
                raise TripStateError("No driver is assigned to this trip yet.")
        self._subscribe(channels.trip_location_channel(trip.id), self._on_location_event)

    def submit_review(
        self,
        rating: float,
        *,
        tags: tuple[str, ...] | list[str] = (),
        comment: str = "",
        is_favorite: bool = False,
    ) -> None:
        with self._lock:
            trip = self._require_trip()
        if trip.status != TripStatus.COMPLETED:
            raise TripStateError("Only completed trips can be reviewed.")
        if not 1 <= float(rating) <= 5:
            raise ValueError("rating must be between 1 and 5.")
        self._client.submit_review(
            trip.id, rating=rating, tags=tags, comment=comment, is_favorite=is_favorite
        )
        logger.info("Submitted review for trip %s", trip.id)

    def trip_history(self, cancel_event: threading.Event | None = None) -> list[Trip]:
        return self._client.get_trip_history(cancel_event)

    # Driver actions ---------------------------------------------------------------
    def go_online(self, city: str, coordinate: Coordinate) -> None:
        """Announce presence in a city and start receiving its trip requests."""
        self._require_role(UserRole.DRIVER)
        with self._lock:
            self._city = city
            self._location = coordinate
            self._online = True
        self._router.enter_presence(city, self._presence_identity(), coordinate)
        self._subscribe(channels.requests_channel(city), self._on_trip_request, role_scoped=True)
        logger.info("Driver %s online in %s", self._user.id, city)

    def _presence_identity(self) -> dict[str, Any]:
        return {
            "driver_id": self._user.id,
            "name": self._user.name,
            "rating": self._user.rating,
            "vehicle_category": self._user.vehicle_category,
        }

    def go_offline(self) -> None:
        with self._lock:
            self._online = False
            self._candidates.clear()
        self._router.release_owner(self._owner, "requests:")
        self._router.leave_presence()
        logger.info("Driver %s offline", self._user.id)
        self._emit_candidates()

    def add_candidate(self, payload: dict[str, Any]) -> bool:
        """Track an open trip request; duplicates and skipped trips are ignored."""
        try:
            trip = Trip.from_payload(payload)
        except ValueError as exc:
            logger.warning("Ignoring malformed trip request: %s", exc)
            return False
        if trip.status not in CANCELLABLE_STATUSES:
            return False
        with self._lock:
            if trip.id in self._skipped or any(c.id == trip.id for c in self._candidates):
                return False
            self._candidates.append(trip)
        self._emit_candidates()
        return True

    def skip_trip(self, trip_id: str) -> None:
        with self._lock:
            self._skipped.add(str(trip_id))
            self._forget_candidate(str(trip_id))
        self._emit_candidates()

    def clear_candidates(self) -> None:
        with self._lock:
            self._candidates.clear()
            self._skipped.clear()
        self._emit_candidates()

    def update_location(self, coordinate: Coordinate, *, heading: float = 0.0) -> None:
        """Record the driver's position, re-rank candidates and publish the position."""
        self._require_role(UserRole.DRIVER)
        with self._lock:
            self._location = coordinate
            trip = self._trip
            city = self._city
            online = self._online
        if trip is not None and trip.status in COMMITTED_STATUSES and not trip.is_terminal:
            self._router.publish_driver_location(
                self._user.id, coordinate, heading=heading, trip_id=trip.id
            )
        elif online and city:
            self._router.publish_driver_location(
                self._user.id, coordinate, heading=heading, city=city
            )
        self._emit_candidates()

    def submit_bid(
        self, trip_id: str, amount: float, eta: str, vehicle_info: str | None = None
    ) -> Bid:
        """Offer a price on an open trip. Nothing is recorded locally if the Ledger refuses."""
        self._require_role(UserRole.DRIVER)
        trip_id = str(trip_id)
        with self._lock:
            candidate = self._find_candidate(trip_id)
            if candidate is None:
                raise TripStateError("That trip is no longer available.")
        if amount <= 0:
            raise ValueError("amount must be positive.")

        offer_id = self._client.submit_offer(trip_id, self._user.id, amount)
        bid = Bid(
            id=offer_id,
            driver_id=self._user.id,
            driver_name=self._user.name,
            driver_rating=self._user.rating,
            amount=float(amount),
            eta=eta,
            vehicle_info=vehicle_info or self._user.vehicle_category or "Standard",
        )
        with self._lock:
            self._awaiting[trip_id] = candidate
        self._watch_trip(trip_id)
        self._router.publish_bid(trip_id, bid)
        logger.info("Submitted bid %s on trip %s", bid.id, trip_id)
        return bid

    def accept_suggested_price(self, trip_id: str) -> Trip:
        """Take a trip at the rider's proposed price without a bidding round."""
        self._require_role(UserRole.DRIVER)
        trip_id = str(trip_id)
        with self._lock:
            if self._trip is not None and not self._trip.is_terminal:
                raise TripStateError("Finish your current trip before accepting another.")
            candidate = self._find_candidate(trip_id) or self._awaiting.get(trip_id)
            if candidate is None:
                raise TripStateError("That trip is no longer available.")

        response = self._client.accept_suggested_price(trip_id, self._user.id)

        accepted = replace(
            candidate,
            status=TripStatus.ACCEPTED,
            driver_id=self._user.id,
            final_price=candidate.proposed_price,
        )
        if response is not None and response.id == accepted.id:
            accepted = merge_trips(accepted, response)
        with self._lock:
            self._trip = accepted
            self._awaiting.pop(trip_id, None)
            self._forget_candidate(trip_id)
            self._touch()
        self._watch_trip(trip_id)
        self._router.publish_status(
            trip_id,
            TripStatus.ACCEPTED,
            driver_id=self._user.id,
            final_price=accepted.final_price,
        )
        logger.info("Accepted trip %s at the suggested price", trip_id)
        self._emit(accepted)
        self._emit_candidates()
        return accepted

    def update_status(self, status: TripStatus) -> Trip:
        """Report driver progress: ARRIVING, IN_PROGRESS or COMPLETED."""
        if self._user.role != UserRole.DRIVER:
            raise TripStateError("Only the assigned driver can update trip progress.")
        status = TripStatus(status)
        with self._lock:
            trip = self._require_trip()
            if trip.driver_id != self._user.id:
                raise TripStateError("Only the assigned driver can update trip progress.")
            if (trip.status, status) not in DRIVER_TRANSITIONS:
                raise TripStateError(
                    f"Cannot move a trip from {trip.status.value} to {status.value}."
                )

        self._client.update_trip_status(trip.id, status)

        with self._lock:
            current = self._trip if self._trip is not None and self._trip.id == trip.id else trip
            updated = current
            if _rank(status) > _rank(current.status) and not current.is_terminal:
                updated = replace(
                    current,
                    status=status,
                    completed_at=_now_iso() if status == TripStatus.COMPLETED else current.completed_at,
                )
            self._trip = updated
            self._touch()
        self._router.publish_status(
            trip.id, status, driver_id=self._user.id, completed_at=updated.completed_at
        )
        logger.info("Trip %s is now %s", trip.id, status.value)
        if status == TripStatus.COMPLETED:
            self._finish(updated)
        self._emit(updated)
        return updated

    # Chat -------------------------------------------------------------------------
    def open_chat(self) -> None:
        with self._lock:
            trip = self._require_trip()
        self._subscribe(channels.trip_chat_channel(trip.id), self._on_chat_event)

    def send_chat_message(self, text: str) -> ChatMessage:
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required.")
        with self._lock:
            trip = self._require_trip()
        message = ChatMessage(
            id=uuid.uuid4().hex, sender_id=self._user.id, text=text, timestamp=_now_iso()
        )
        self._record_message(message)
        self._router.send_chat_message(trip.id, message)
        return message

    # Teardown ---------------------------------------------------------------------
    def teardown(self) -> None:
        """Stop polling and release every subscription this machine holds."""
        with self._lock:
            poller, self._poller = self._poller, None
            online = self._online
            self._online = False
        if poller is not None:
            poller.stop()
        released = self._router.release_owner(self._owner)
        if online:
            self._router.leave_presence()
        logger.debug("Trip machine %s released %d subscriptions", self._owner, released)

    # Channel events ---------------------------------------------------------------
    def handle_trip_event(self, message: Message) -> None:
        trip_id = channels.trip_id_from_channel(message.channel)
        data = message.data if isinstance(message.data, dict) else {}
        if trip_id is None:
            return
        if message.name == channels.BID_EVENT:
            self.apply_bid(trip_id, data)
        elif message.name == channels.STATUS_EVENT:
            self.apply_remote_status(trip_id, data)
        elif message.name == channels.CANCEL_EVENT:
            self.apply_remote_cancel(trip_id)

    def apply_bid(self, trip_id: str, payload: dict[str, Any]) -> bool:
        """Insert a bid at most once; returns whether the trip changed."""
        try:
            bid = Bid.from_payload(payload)
        except ValueError as exc:
            logger.warning("Ignoring malformed bid on trip %s: %s", trip_id, exc)
            return False
        with self._lock:
            trip = self._trip
            if trip is None or trip.id != trip_id or trip.status != TripStatus.BIDDING:
                return False
            updated = trip.with_bid(bid)
            if updated is trip:
                return False
            self._trip = updated
        self._emit(updated)
        return True

    def apply_remote_status(self, trip_id: str, payload: dict[str, Any]) -> bool:
        """Apply a pushed status update if it moves the trip forward."""
        try:
            status = TripStatus(str(payload.get("status") or "").upper())
        except ValueError:
            logger.warning("Ignoring unknown status on trip %s: %r", trip_id, payload.get("status"))
            return False
        if status == TripStatus.CANCELLED:
            return self.apply_remote_cancel(trip_id)

        if status not in COMMITTED_STATUSES:
            return False
        driver_id = payload.get("driver_id")
        with self._lock:
            current = self._trip
            if current is not None and current.id == trip_id:
                trip, adopted = current, False
            else:
                awaiting = self._awaiting.pop(trip_id, None)
                if awaiting is None:
                    return False
                self._forget_candidate(trip_id)
                busy = current is not None and not current.is_terminal
                if driver_id != self._user.id or busy:
                    trip = None
                else:
                    trip, adopted = awaiting, True
            if trip is not None:
                if not (driver_id or trip.driver_id):
                    logger.warning("Ignoring %s on trip %s without a driver", status.value, trip_id)
                    return False
                remote = replace(
                    trip,
                    status=status,
                    driver_id=driver_id or trip.driver_id,
                    final_price=_float_or_none(payload.get("final_price")),
                    accepted_bid_id=payload.get("accepted_bid_id"),
                    completed_at=payload.get("completed_at"),
                )
                updated = merge_trips(trip, remote)
                if updated == trip and not adopted:
                    return False
                self._trip = updated
                if adopted:
                    self._touch()

        if trip is None:
            logger.info("Trip %s went to another driver", trip_id)
            self._release_trip(trip_id)
            self._emit_candidates()
            return False
        if updated.status == TripStatus.COMPLETED and trip.status != TripStatus.COMPLETED:
            self._finish(updated)
        self._emit(updated)
        if adopted:
            logger.info("Bid on trip %s was accepted", trip_id)
            self._emit_candidates()
        return True

    def apply_remote_cancel(self, trip_id: str) -> bool:
        with self._lock:
            if trip_id in self._awaiting or self._find_candidate(trip_id) is not None:
                self._awaiting.pop(trip_id, None)
                self._forget_candidate(trip_id)
                dropped = True
            else:
                dropped = False
            trip = self._trip
            if trip is None or trip.id != trip_id:
                updated = None
            elif trip.status not in CANCELLABLE_STATUSES:
                logger.warning(
                    "Ignoring cancellation of trip %s in state %s", trip_id, trip.status.value
                )
                return False
            else:
                updated = replace(trip, status=TripStatus.CANCELLED)
                self._trip = updated
        if updated is None and not dropped:
            return False
        self._release_trip(trip_id)
        if updated is not None:
            logger.info("Trip %s was cancelled", trip_id)
            self._emit(updated)
        if dropped:
            self._emit_candidates()
        return True

    # Internal helpers -------------------------------------------------------------
    def _on_trip_request(self, message: Message) -> None:
        if message.name != channels.TRIP_REQUEST_EVENT or not isinstance(message.data, dict):
            return
        self.add_candidate(message.data)

    def _on_chat_event(self, message: Message) -> None:
        if message.name != channels.CHAT_EVENT or not isinstance(message.data, dict):
            return
        self._record_message(ChatMessage.from_payload(message.data))

    def _on_location_event(self, message: Message) -> None:
        if message.name != channels.LOCATION_EVENT or not isinstance(message.data, dict):
            return
        self._driver_position = dict(message.data)
        if self._on_driver_location is not None:
            self._on_driver_location(self._driver_position)

    def _record_message(self, message: ChatMessage) -> None:
        with self._lock:
            if message.id and any(existing.id == message.id for existing in self._messages):
                return
            self._messages.append(message)
        if self._on_chat_message is not None:
            self._on_chat_message(message)

    def _watch_trip(self, trip_id: str) -> None:
        self._subscribe(channels.trip_events_channel(trip_id), self.handle_trip_event)

    def _subscribe(self, channel_name: str, handler: Callable[[Message], None], **kwargs: Any) -> None:
        try:
            self._router.subscribe(self._owner, channel_name, handler, **kwargs)
        except TransportError as exc:
            # Polling keeps the trip current while the channel is unavailable.
            logger.warning("Could not subscribe to %s: %s", channel_name, exc)

    def _release_trip(self, trip_id: str) -> None:
        self._router.release_owner(self._owner, f"trip:{trip_id}:")

    def _finish(self, trip: Trip) -> None:
        self._release_trip(trip.id)
        if self._on_completed is not None:
            try:
                self._on_completed(trip)
            except Exception:
                logger.exception("Completion listener failed for trip %s", trip.id)

    def _find_candidate(self, trip_id: str) -> Trip | None:
        for candidate in self._candidates:
            if candidate.id == trip_id:
                return candidate
        return None

    def _forget_candidate(self, trip_id: str) -> None:
        self._candidates = [c for c in self._candidates if c.id != trip_id]

    def _require_trip(self) -> Trip:
        if self._trip is None:
            raise TripStateError("There is no active trip.")
        return self._trip

    def _require_role(self, role: UserRole) -> None:
        if self._user.role != role:
            raise TripStateError(f"This action is only available to {role.value}s.")

    def _touch(self) -> None:
        self._last_local_change = time.monotonic()

    def _emit(self, trip: Trip | None) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(trip)
        except Exception:
            logger.exception("Trip change listener failed")

    def _emit_candidates(self) -> None:
        if self._on_candidates is None:
            return
        try:
            self._on_candidates(self.candidates())
        except Exception:
            logger.exception("Candidate listener failed")


__all__ = ["DRIVER_TRANSITIONS", "TripStateMachine", "merge_trips"]
