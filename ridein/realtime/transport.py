"""Pub/sub transport interface and an in-process broker implementation."""

from __future__ import annotations

import abc
from dataclasses import dataclass
import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
SUSPENDED = "suspended"
FAILED = "failed"


@dataclass(frozen=True)
class Message:
    """One event delivered on a channel."""

    channel: str
    name: str
    data: Any
    client_id: str | None = None


Listener = Callable[[Message], None]


class TransportError(RuntimeError):
    """Raised when the transport cannot deliver or register an operation."""


class Transport(abc.ABC):
    """What the channel router needs from a realtime pub/sub provider."""

    @property
    @abc.abstractmethod
    def connection_state(self) -> str: ...

    @abc.abstractmethod
    def connect(self, client_id: str) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    @abc.abstractmethod
    def subscribe(self, channel: str, listener: Listener) -> None: ...

    @abc.abstractmethod
    def unsubscribe(self, channel: str, listener: Listener) -> None: ...

    @abc.abstractmethod
    def publish(self, channel: str, name: str, data: Any) -> None: ...

    @abc.abstractmethod
    def presence_enter(self, channel: str, data: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    def presence_leave(self, channel: str) -> None: ...

    @abc.abstractmethod
    def presence_members(self, channel: str) -> list[dict[str, Any]]: ...


class LocalBroker:
    """Shared in-memory hub; every LocalTransport attached to it sees the same channels."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._presence: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def add_listener(self, channel: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.setdefault(channel, [])
            if listener not in listeners:
                listeners.append(listener)

    def remove_listener(self, channel: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(channel, [])
            if listener in listeners:
                listeners.remove(listener)

    def listener_count(self, channel: str) -> int:
        with self._lock:
            return len(self._listeners.get(channel, []))

    def deliver(self, message: Message) -> None:
        with self._lock:
            listeners = list(self._listeners.get(message.channel, []))
        for listener in listeners:
            listener(message)

    def enter(self, channel: str, client_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._presence.setdefault(channel, {})[client_id] = dict(data)

    def leave(self, channel: str, client_id: str) -> None:
        with self._lock:
            self._presence.get(channel, {}).pop(client_id, None)

    def members(self, channel: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(data) for data in self._presence.get(channel, {}).values()]


class LocalTransport(Transport):
    """In-process transport used for local development and tests.

    Delivery is synchronous on the publishing thread and publishers receive
    their own messages, matching a hosted pub/sub service with echo enabled.
    """

    def __init__(self, broker: LocalBroker | None = None) -> None:
        self._broker = broker or LocalBroker()
        self._client_id: str | None = None
        self._state = DISCONNECTED
        self._listeners: list[tuple[str, Listener]] = []
        self._presence_channels: set[str] = set()

    @property
    def broker(self) -> LocalBroker:
        return self._broker

    @property
    def connection_state(self) -> str:
        return self._state

    def connect(self, client_id: str) -> None:
        self._client_id = client_id
        self._state = CONNECTED

    def close(self) -> None:
        for channel, listener in list(self._listeners):
            self._broker.remove_listener(channel, listener)
        self._listeners.clear()
        if self._client_id is not None:
            for channel in list(self._presence_channels):
                self._broker.leave(channel, self._client_id)
        self._presence_channels.clear()
        self._client_id = None
        self._state = DISCONNECTED

    def subscribe(self, channel: str, listener: Listener) -> None:
        self._require_connection()
        self._broker.add_listener(channel, listener)
        self._listeners.append((channel, listener))

    def unsubscribe(self, channel: str, listener: Listener) -> None:
        self._broker.remove_listener(channel, listener)
        if (channel, listener) in self._listeners:
            self._listeners.remove((channel, listener))

    def publish(self, channel: str, name: str, data: Any) -> None:
        self._require_connection()
        self._broker.deliver(Message(channel=channel, name=name, data=data, client_id=self._client_id))

    def presence_enter(self, channel: str, data: dict[str, Any]) -> None:
        self._require_connection()
        self._broker.enter(channel, self._client_id, data)
        self._presence_channels.add(channel)

    def presence_leave(self, channel: str) -> None:
        if self._client_id is None:
            return
        self._broker.leave(channel, self._client_id)
        self._presence_channels.discard(channel)

    def presence_members(self, channel: str) -> list[dict[str, Any]]:
        return self._broker.members(channel)

    def _require_connection(self) -> None:
        if self._state != CONNECTED or self._client_id is None:
            raise TransportError("Realtime transport is not connected.")


__all__ = [
    "CONNECTED",
    "DISCONNECTED",
    "LocalBroker",
    "LocalTransport",
    "Listener",
    "Message",
    "Transport",
    "TransportError",
]
