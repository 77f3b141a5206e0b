from __future__ import annotations

from dataclasses import replace
import time
from unittest.mock import MagicMock, Mock

import pytest

from ridein.data.errors import LedgerError, NetworkError, ServerError, TripStateError
from ridein.data.poller import PollResult
from ridein.logic.trip_machine import TripStateMachine, merge_trips
from ridein.models import (
    Bid,
    Coordinate,
    Trip,
    TripLocation,
    TripRequest,
    TripStatus,
    TripType,
    User,
    UserRole,
)
from ridein.realtime.router import ChannelRouter
from ridein.realtime.transport import LocalBroker, LocalTransport

RIDER = User(id="7", name="Tendai", role=UserRole.RIDER, city="Harare")
DRIVER = User(id="8", name="Rudo", role=UserRole.DRIVER, rating=4.8, vehicle_category="economy")
PICKUP = TripLocation("Avondale", -17.8252, 31.0335)
DROPOFF = TripLocation("CBD", -17.8292, 31.0522)
NEAR_PICKUP = Coordinate(-17.8300, 31.0400)


def _request() -> TripRequest:
    return TripRequest(
        rider_id="7",
        type=TripType.PASSENGER,
        category="economy",
        pickup=PICKUP,
        dropoff=DROPOFF,
        proposed_price=5.0,
        distance_km=2.4,
        duration_mins=9,
        city="Harare",
    )


def _trip(trip_id: str = "11", status: TripStatus = TripStatus.PENDING, **changes) -> Trip:
    trip = Trip(
        id=trip_id,
        status=status,
        type=TripType.PASSENGER,
        category="economy",
        pickup=PICKUP,
        dropoff=DROPOFF,
        proposed_price=5.0,
        rider_id="7",
        created_at="2026-01-01T10:00:00Z",
        city="Harare",
    )
    return replace(trip, **changes) if changes else trip


def _bid(bid_id: str, driver_id: str, amount: float) -> Bid:
    return Bid(
        id=bid_id,
        driver_id=driver_id,
        driver_name=f"Driver {driver_id}",
        driver_rating=4.5,
        amount=amount,
        eta="5 min",
        vehicle_info="Honda Fit",
    )


def _router(broker: LocalBroker, client_id: str) -> ChannelRouter:
    router = ChannelRouter(LocalTransport(broker))
    router.connect(client_id)
    return router


def _poll(trip: Trip | None, started_at: float | None = None) -> PollResult:
    return PollResult(
        trip=trip,
        fetched_at=time.time(),
        error=None,
        started_at=time.monotonic() if started_at is None else started_at,
    )


@pytest.fixture()
def broker() -> LocalBroker:
    return LocalBroker()


@pytest.fixture()
def rider_client() -> MagicMock:
    client = MagicMock()
    client.create_trip.return_value = _trip()
    client.accept_bid.return_value = None
    return client


@pytest.fixture()
def rider_router(broker: LocalBroker) -> ChannelRouter:
    return _router(broker, "7")


@pytest.fixture()
def other_router(broker: LocalBroker) -> ChannelRouter:
    return _router(broker, "99")


@pytest.fixture()
def rider(rider_client: MagicMock, rider_router: ChannelRouter) -> TripStateMachine:
    return TripStateMachine(rider_client, rider_router, RIDER)


def test_request_trip_opens_bidding(
    rider: TripStateMachine, rider_client: MagicMock, rider_router: ChannelRouter
) -> None:
    trip = rider.request_trip(_request())

    assert trip.status == TripStatus.BIDDING
    assert rider.trip == trip
    rider_client.create_trip.assert_called_once()
    channels = [sub.channel_name for sub in rider_router.active_subscriptions(rider.owner)]
    assert channels == ["trip:11:events"]


def test_second_request_rejected_while_active(rider: TripStateMachine, rider_client: MagicMock) -> None:
    rider.request_trip(_request())

    with pytest.raises(TripStateError):
        rider.request_trip(_request())

    assert rider_client.create_trip.call_count == 1


def test_rider_accepts_cheaper_bid(rider: TripStateMachine, other_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    other_router.publish_bid("11", _bid("b2", "22", 4.0))

    accepted = rider.accept_bid("b2")

    assert accepted.status == TripStatus.ACCEPTED
    assert accepted.driver_id == "22"
    assert accepted.accepted_bid_id == "b2"
    assert accepted.final_price == 4.0
    assert [bid.id for bid in accepted.bids] == ["b1", "b2"]


def test_duplicate_bid_delivery_is_ignored(rider: TripStateMachine, other_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    bid = _bid("b1", "21", 5.0)

    for _ in range(3):
        other_router.publish_bid("11", bid)

    assert [b.id for b in rider.trip.bids] == ["b1"]


def test_accept_failure_leaves_trip_bidding(
    rider: TripStateMachine, rider_client: MagicMock, other_router: ChannelRouter
) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    rider_client.accept_bid.side_effect = LedgerError("This trip has already been updated.", 409)

    with pytest.raises(LedgerError):
        rider.accept_bid("b1")

    assert rider.trip.status == TripStatus.BIDDING
    assert rider.trip.driver_id is None

    rider_client.accept_bid.side_effect = None
    assert rider.accept_bid("b1").status == TripStatus.ACCEPTED


def test_accept_unknown_bid_rejected(rider: TripStateMachine, rider_client: MagicMock) -> None:
    rider.request_trip(_request())

    with pytest.raises(TripStateError):
        rider.accept_bid("missing")

    rider_client.accept_bid.assert_not_called()


def test_cancel_releases_subscriptions(
    rider: TripStateMachine, rider_client: MagicMock, rider_router: ChannelRouter
) -> None:
    rider.request_trip(_request())

    cancelled = rider.cancel_trip("changed plans")

    assert cancelled.status == TripStatus.CANCELLED
    assert rider_router.active_subscriptions(rider.owner) == []
    rider_client.cancel_trip.assert_called_once_with("11", "changed plans")


def test_cancel_failure_keeps_trip_active(
    rider: TripStateMachine, rider_client: MagicMock, rider_router: ChannelRouter
) -> None:
    rider.request_trip(_request())
    rider_client.cancel_trip.side_effect = NetworkError("Unable to reach the service.")

    with pytest.raises(NetworkError):
        rider.cancel_trip()

    assert rider.trip.status == TripStatus.BIDDING
    assert len(rider_router.active_subscriptions(rider.owner)) == 1


def test_cancel_after_acceptance_rejected(
    rider: TripStateMachine, rider_client: MagicMock, other_router: ChannelRouter
) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    rider.accept_bid("b1")

    with pytest.raises(TripStateError):
        rider.cancel_trip()

    rider_client.cancel_trip.assert_not_called()


def test_remote_status_never_regresses(rider: TripStateMachine, other_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    rider.accept_bid("b1")

    other_router.publish_status("11", TripStatus.IN_PROGRESS, driver_id="21")
    other_router.publish_status("11", TripStatus.ARRIVING, driver_id="21")
    other_router.publish_cancel("11")

    assert rider.trip.status == TripStatus.IN_PROGRESS
    assert rider.trip.driver_id == "21"


def test_bid_after_acceptance_is_ignored(rider: TripStateMachine, other_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    rider.accept_bid("b1")

    other_router.publish_bid("11", _bid("b3", "23", 3.0))

    assert [bid.id for bid in rider.trip.bids] == ["b1"]


def test_remote_cancel_while_bidding(
    rider: TripStateMachine, rider_router: ChannelRouter, other_router: ChannelRouter
) -> None:
    rider.request_trip(_request())

    other_router.publish_cancel("11", "rider cancelled elsewhere")

    assert rider.trip.status == TripStatus.CANCELLED
    assert rider_router.active_subscriptions(rider.owner) == []


def test_poll_advances_status_and_unions_bids(rider: TripStateMachine) -> None:
    rider.request_trip(_request())
    rider.apply_bid("11", _bid("b1", "21", 5.0).as_payload())
    remote = _trip(
        status=TripStatus.ACCEPTED,
        driver_id="22",
        final_price=4.0,
        accepted_bid_id="b2",
        bids=(_bid("b1", "21", 5.0), _bid("b2", "22", 4.0)),
    )

    rider.reconcile(_poll(remote))

    assert rider.trip.status == TripStatus.ACCEPTED
    assert rider.trip.driver_id == "22"
    assert [bid.id for bid in rider.trip.bids] == ["b1", "b2"]


def test_poll_with_older_status_does_not_regress(rider: TripStateMachine, other_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    other_router.publish_bid("11", _bid("b1", "21", 5.0))
    rider.accept_bid("b1")

    rider.reconcile(_poll(_trip(status=TripStatus.BIDDING)))

    assert rider.trip.status == TripStatus.ACCEPTED


def test_stale_empty_poll_is_discarded(rider: TripStateMachine) -> None:
    rider.request_trip(_request())

    rider.reconcile(_poll(None, started_at=0.0))

    assert rider.trip is not None


def test_fresh_empty_poll_clears_view(rider: TripStateMachine, rider_router: ChannelRouter) -> None:
    changes: list[Trip | None] = []
    rider._on_change = changes.append
    rider.request_trip(_request())

    rider.reconcile(_poll(None))

    assert rider.trip is None
    assert changes[-1] is None
    assert rider_router.active_subscriptions(rider.owner) == []


def test_failed_poll_is_ignored(rider: TripStateMachine) -> None:
    rider.request_trip(_request())

    rider.reconcile(PollResult(trip=None, fetched_at=time.time(), error="timeout", started_at=time.monotonic()))

    assert rider.trip is not None


def test_poll_adopts_trip_from_another_device(rider: TripStateMachine, rider_router: ChannelRouter) -> None:
    rider.reconcile(_poll(_trip(status=TripStatus.BIDDING)))

    assert rider.trip.id == "11"
    assert [sub.channel_name for sub in rider_router.active_subscriptions(rider.owner)] == [
        "trip:11:events"
    ]


def test_rider_cannot_report_progress(rider: TripStateMachine) -> None:
    rider.request_trip(_request())

    with pytest.raises(TripStateError):
        rider.update_status(TripStatus.ARRIVING)


def test_chat_messages_are_deduplicated(rider: TripStateMachine) -> None:
    received = Mock()
    rider._on_chat_message = received
    rider.request_trip(_request())
    rider.open_chat()

    message = rider.send_chat_message("  I'm at the gate ")

    assert [m.id for m in rider.messages] == [message.id]
    assert message.text == "I'm at the gate"
    received.assert_called_once_with(message)


def test_teardown_releases_everything(rider: TripStateMachine, rider_router: ChannelRouter) -> None:
    rider.request_trip(_request())
    rider.open_chat()

    rider.teardown()

    assert rider_router.active_subscriptions(rider.owner) == []


# Driver side ---------------------------------------------------------------------


@pytest.fixture()
def driver_client() -> MagicMock:
    client = MagicMock()
    client.submit_offer.return_value = "b1"
    client.accept_suggested_price.return_value = None
    return client


@pytest.fixture()
def driver(driver_client: MagicMock, broker: LocalBroker) -> TripStateMachine:
    return TripStateMachine(driver_client, _router(broker, "8"), DRIVER)


def test_driver_discovers_nearby_requests(rider: TripStateMachine, driver: TripStateMachine) -> None:
    driver.go_online("Harare", NEAR_PICKUP)

    rider.request_trip(_request())

    ranked = driver.candidates()
    assert [item.candidate.id for item in ranked] == ["11"]
    assert ranked[0].distance_km < 2.0


def test_far_requests_are_filtered(driver: TripStateMachine) -> None:
    driver.go_online("Harare", Coordinate(-17.3, 31.0335))

    assert driver.add_candidate(_trip(status=TripStatus.BIDDING).as_payload())
    assert driver.candidates() == []


def test_driver_skips_and_dedupes_requests(driver: TripStateMachine) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    payload = _trip(status=TripStatus.BIDDING).as_payload()

    assert driver.add_candidate(payload)
    assert not driver.add_candidate(payload)

    driver.skip_trip("11")
    assert driver.candidates() == []
    assert not driver.add_candidate(payload)


def test_full_bid_to_completion_flow(
    rider: TripStateMachine, driver: TripStateMachine, rider_router: ChannelRouter
) -> None:
    completed = Mock()
    rider._on_completed = completed
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())

    bid = driver.submit_bid("11", 5.0, "4 min")
    assert [b.id for b in rider.trip.bids] == [bid.id]

    rider.accept_bid(bid.id)
    assert driver.trip is not None
    assert driver.trip.status == TripStatus.ACCEPTED
    assert driver.trip.driver_id == "8"
    assert driver.candidates() == []

    driver.update_status(TripStatus.ARRIVING)
    assert rider.trip.status == TripStatus.ARRIVING
    driver.update_status(TripStatus.IN_PROGRESS)
    assert rider.trip.status == TripStatus.IN_PROGRESS
    driver.update_status(TripStatus.COMPLETED)

    assert rider.trip.status == TripStatus.COMPLETED
    assert rider.trip.completed_at
    completed.assert_called_once()
    assert rider_router.active_subscriptions(rider.owner) == []


def test_losing_driver_drops_trip(
    rider: TripStateMachine, driver: TripStateMachine, other_router: ChannelRouter
) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())
    driver.submit_bid("11", 5.0, "4 min")
    other_router.publish_bid("11", _bid("b9", "21", 4.0))

    rider.accept_bid("b9")

    assert driver.trip is None
    assert driver.awaiting_trip_ids == []
    assert driver.candidates() == []


def test_failed_bid_is_not_recorded(
    rider: TripStateMachine, driver: TripStateMachine, driver_client: MagicMock
) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())
    driver_client.submit_offer.side_effect = ServerError("Something went wrong", 500)

    with pytest.raises(ServerError):
        driver.submit_bid("11", 5.0, "4 min")

    assert rider.trip.bids == ()
    assert rider.trip.status == TripStatus.BIDDING
    assert driver.awaiting_trip_ids == []


def test_accept_suggested_price_fast_path(
    rider: TripStateMachine, driver: TripStateMachine, driver_client: MagicMock
) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())

    accepted = driver.accept_suggested_price("11")

    assert accepted.status == TripStatus.ACCEPTED
    assert accepted.driver_id == "8"
    assert accepted.final_price == 5.0
    assert rider.trip.status == TripStatus.ACCEPTED
    assert rider.trip.driver_id == "8"
    driver_client.accept_suggested_price.assert_called_once_with("11", "8")


def test_invalid_driver_transition_rejected(
    rider: TripStateMachine, driver: TripStateMachine, driver_client: MagicMock
) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())
    driver.accept_suggested_price("11")

    with pytest.raises(TripStateError):
        driver.update_status(TripStatus.COMPLETED)

    driver_client.update_trip_status.assert_not_called()
    assert driver.trip.status == TripStatus.ACCEPTED


def test_driver_location_reaches_rider(rider: TripStateMachine, driver: TripStateMachine) -> None:
    positions = Mock()
    rider._on_driver_location = positions
    driver.go_online("Harare", NEAR_PICKUP)
    rider.request_trip(_request())
    driver.accept_suggested_price("11")
    rider.watch_driver_location()

    driver.update_location(Coordinate(-17.8260, 31.0340), heading=180.0)

    assert rider.driver_position["driver_id"] == "8"
    assert rider.driver_position["heading"] == 180.0
    positions.assert_called_once()


def test_backgrounding_leaves_and_restores_presence(
    driver: TripStateMachine,
    driver_client: MagicMock,
    other_router: ChannelRouter,
    broker: LocalBroker,
) -> None:
    driver_client.get_active_trip.return_value = None
    driver.go_online("Harare", NEAR_PICKUP)
    driver.start()
    try:
        driver.set_visible(False)

        assert other_router.presence_members("Harare") == []
        assert broker.members("presence:harare") == []

        driver.set_visible(True)

        members = other_router.presence_members("Harare")
        assert len(members) == 1
        assert members[0]["driver_id"] == "8"
        assert members[0]["lat"] == NEAR_PICKUP.lat
    finally:
        driver.teardown()


def test_backgrounding_offline_driver_leaves_presence_alone(
    driver: TripStateMachine, other_router: ChannelRouter
) -> None:
    driver.set_visible(False)
    driver.set_visible(True)

    assert other_router.presence_members("Harare") == []


def test_go_offline_leaves_presence(driver: TripStateMachine, other_router: ChannelRouter) -> None:
    driver.go_online("Harare", NEAR_PICKUP)
    assert len(other_router.presence_members("Harare")) == 1

    driver.go_offline()

    assert other_router.presence_members("Harare") == []
    assert not driver.online


def test_merge_keeps_committed_trip_on_remote_cancel() -> None:
    local = _trip(status=TripStatus.ACCEPTED, driver_id="8", final_price=5.0)
    remote = _trip(status=TripStatus.CANCELLED)

    assert merge_trips(local, remote) == local


def test_review_requires_completed_trip(rider: TripStateMachine, rider_client: MagicMock) -> None:
    rider.request_trip(_request())

    with pytest.raises(TripStateError):
        rider.submit_review(5)

    rider_client.submit_review.assert_not_called()
