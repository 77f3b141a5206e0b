"""Maps roles and trip context onto realtime channels and owns subscription lifecycles."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Callable

from ridein.data.payloads import sanitize_incoming
from ridein.models import Bid, ChatMessage, Coordinate, Trip, TripStatus
from ridein.realtime import channels
from ridein.realtime.transport import DISCONNECTED, Listener, Message, Transport, TransportError

logger = logging.getLogger(__name__)

Handler = Callable[[Message], None]


@dataclass(eq=False)
class Subscription:
    """Descriptor and cancel handle for one channel subscription.

    Only the owner that opened a subscription tears it down, either by
    calling cancel() or through ChannelRouter.release_owner().
    """

    channel_name: str
    handler: Handler
    owner: str
    role_scoped: bool = False
    active: bool = False
    _router: "ChannelRouter | None" = field(default=None, repr=False)
    _listener: Listener | None = field(default=None, repr=False)

    def cancel(self) -> None:
        if self._router is not None:
            self._router.unsubscribe(self)


class ChannelRouter:
    """Subscribe, unsubscribe and publish against a pub/sub transport."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._subscriptions: dict[tuple[str, str, Handler], Subscription] = {}
        self._presence_channel: str | None = None
        self._client_id: str | None = None
        self._lock = threading.RLock()

    @property
    def connection_state(self) -> str:
        return self._transport.connection_state

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def presence_channel(self) -> str | None:
        return self._presence_channel

    def connect(self, client_id: str) -> None:
        with self._lock:
            if self._client_id == client_id and self.connection_state != DISCONNECTED:
                return
            if self._client_id is not None:
                self.disconnect()
            self._transport.connect(client_id)
            self._client_id = client_id
        logger.info("Realtime connected as %s", client_id)

    def disconnect(self) -> None:
        """Leave presence, drop every subscription and close the transport."""
        with self._lock:
            self.leave_presence()
            for subscription in list(self._subscriptions.values()):
                self._deactivate(subscription)
            self._subscriptions.clear()
            self._transport.close()
            self._client_id = None
        logger.info("Realtime disconnected")

    # Subscriptions ------------------------------------------------------------
    def subscribe(
        self,
        owner: str,
        channel_name: str,
        handler: Handler,
        *,
        role_scoped: bool = False,
    ) -> Subscription:
        """Subscribe handler on channel_name; repeating an active subscribe is a no-op."""
        key = (owner, channel_name, handler)
        with self._lock:
            existing = self._subscriptions.get(key)
            if existing is not None and existing.active:
                return existing
            subscription = Subscription(
                channel_name=channel_name,
                handler=handler,
                owner=owner,
                role_scoped=role_scoped,
                _router=self,
            )
            subscription._listener = self._make_listener(subscription)
            self._transport.subscribe(channel_name, subscription._listener)
            subscription.active = True
            self._subscriptions[key] = subscription
        logger.debug("%s subscribed to %s", owner, channel_name)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Tear down a subscription; inactive descriptors are ignored."""
        with self._lock:
            if not subscription.active:
                return
            self._deactivate(subscription)
            key = (subscription.owner, subscription.channel_name, subscription.handler)
            if self._subscriptions.get(key) is subscription:
                del self._subscriptions[key]
        logger.debug("%s unsubscribed from %s", subscription.owner, subscription.channel_name)

    def release_owner(self, owner: str, channel_prefix: str | None = None) -> int:
        """Cancel every active subscription opened by owner; returns how many."""
        with self._lock:
            owned = [
                sub
                for sub in self._subscriptions.values()
                if sub.owner == owner
                and (channel_prefix is None or sub.channel_name.startswith(channel_prefix))
            ]
            for subscription in owned:
                self.unsubscribe(subscription)
        return len(owned)

    def active_subscriptions(self, owner: str | None = None) -> list[Subscription]:
        with self._lock:
            return [
                sub
                for sub in self._subscriptions.values()
                if sub.active and (owner is None or sub.owner == owner)
            ]

    def prepare_role_switch(self) -> None:
        """Leave presence and drop role-scoped subscriptions before a role change."""
        with self._lock:
            self.leave_presence()
            scoped = [sub for sub in self._subscriptions.values() if sub.role_scoped]
            for subscription in scoped:
                self.unsubscribe(subscription)
        logger.info("Released %d role-scoped subscriptions for role switch", len(scoped))

    # Presence -----------------------------------------------------------------
    def enter_presence(self, city: str, identity: dict[str, Any], coordinate: Coordinate) -> None:
        channel_name = channels.presence_channel(city)
        with self._lock:
            if self._presence_channel is not None and self._presence_channel != channel_name:
                self.leave_presence()
            data = dict(identity)
            data.update({"lat": coordinate.lat, "lng": coordinate.lng, "ts": int(time.time() * 1000)})
            try:
                self._transport.presence_enter(channel_name, data)
            except TransportError as exc:
                logger.error("Presence enter on %s failed: %s", channel_name, exc)
                return
            self._presence_channel = channel_name
        logger.info("Entered presence on %s", channel_name)

    def leave_presence(self) -> None:
        with self._lock:
            channel_name = self._presence_channel
            if channel_name is None:
                return
            self._presence_channel = None
            try:
                self._transport.presence_leave(channel_name)
            except TransportError as exc:
                logger.warning("Presence leave on %s failed: %s", channel_name, exc)
        logger.info("Left presence on %s", channel_name)

    def presence_members(self, city: str) -> list[dict[str, Any]]:
        try:
            members = self._transport.presence_members(channels.presence_channel(city))
        except TransportError as exc:
            logger.warning("Failed to fetch presence members for %s: %s", city, exc)
            return []
        return [sanitize_incoming(member) for member in members]

    # Publishing ---------------------------------------------------------------
    def publish_bid(self, trip_id: str, bid: Bid) -> None:
        self._publish(channels.trip_events_channel(trip_id), channels.BID_EVENT, bid.as_payload())

    def publish_status(self, trip_id: str, status: TripStatus, **details: Any) -> None:
        data = {"status": TripStatus(status).value}
        data.update({key: value for key, value in details.items() if value is not None})
        self._publish(channels.trip_events_channel(trip_id), channels.STATUS_EVENT, data)

    def publish_cancel(self, trip_id: str, reason: str = "") -> None:
        self._publish(channels.trip_events_channel(trip_id), channels.CANCEL_EVENT, {"reason": reason})

    def broadcast_trip_request(self, city: str, trip: Trip) -> None:
        self._publish(channels.requests_channel(city), channels.TRIP_REQUEST_EVENT, trip.as_payload())

    def send_chat_message(self, trip_id: str, message: ChatMessage) -> None:
        self._publish(channels.trip_chat_channel(trip_id), channels.CHAT_EVENT, message.as_payload())

    def publish_driver_location(
        self,
        driver_id: str,
        coordinate: Coordinate,
        *,
        heading: float = 0.0,
        trip_id: str | None = None,
        city: str | None = None,
    ) -> None:
        data = {
            "driver_id": driver_id,
            "lat": coordinate.lat,
            "lng": coordinate.lng,
            "heading": heading,
            "ts": int(time.time() * 1000),
        }
        if trip_id:
            channel_name = channels.trip_location_channel(trip_id)
        elif city:
            channel_name = channels.presence_channel(city)
        else:
            raise ValueError("trip_id or city is required to publish a driver location.")
        self._publish(channel_name, channels.LOCATION_EVENT, data)

    # Internal helpers -----------------------------------------------------------
    def _publish(self, channel_name: str, name: str, data: Any) -> None:
        try:
            self._transport.publish(channel_name, name, data)
        except TransportError as exc:
            logger.warning("Publish %s on %s failed: %s", name, channel_name, exc)

    def _deactivate(self, subscription: Subscription) -> None:
        subscription.active = False
        if subscription._listener is None:
            return
        try:
            self._transport.unsubscribe(subscription.channel_name, subscription._listener)
        except TransportError as exc:
            logger.warning("Unsubscribe from %s failed: %s", subscription.channel_name, exc)

    def _make_listener(self, subscription: Subscription) -> Listener:
        def listener(message: Message) -> None:
            if not subscription.active:
                return
            clean = Message(
                channel=message.channel,
                name=message.name,
                data=sanitize_incoming(message.data),
                client_id=message.client_id,
            )
            try:
                subscription.handler(clean)
            except Exception:
                logger.exception(
                    "Handler for %s on %s failed", subscription.owner, subscription.channel_name
                )

        return listener


__all__ = ["ChannelRouter", "Handler", "Subscription"]
