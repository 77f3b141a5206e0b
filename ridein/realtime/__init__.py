"""Realtime channel routing over a pub/sub transport."""

from ridein.realtime.router import ChannelRouter, Subscription
from ridein.realtime.transport import LocalBroker, LocalTransport, Message, Transport, TransportError

__all__ = [
    "ChannelRouter",
    "LocalBroker",
    "LocalTransport",
    "Message",
    "Subscription",
    "Transport",
    "TransportError",
]
