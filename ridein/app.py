"""Wires the Ledger client, channel router and session manager from config."""

from __future__ import annotations

from dataclasses import dataclass

import requests

from ridein.config import AppConfig
from ridein.data.cache import ResponseCache
from ridein.data.ledger_client import LedgerClient
from ridein.logic.trip_machine import TripStateMachine
from ridein.models import User
from ridein.realtime.router import ChannelRouter
from ridein.realtime.transport import LocalTransport, Transport
from ridein.session.manager import SessionManager
from ridein.session.store import FileSessionStore


@dataclass(frozen=True)
class Runtime:
    """Process-wide collaborators created at boot and torn down on exit."""

    config: AppConfig
    client: LedgerClient
    router: ChannelRouter
    session: SessionManager

    def trip_machine(self, user: User, **callbacks) -> TripStateMachine:
        return TripStateMachine(
            self.client,
            self.router,
            user,
            poll_interval_seconds=self.config.trips.poll_interval_seconds,
            dispatch_radius_km=self.config.trips.dispatch_radius_km,
            **callbacks,
        )

    def close(self) -> None:
        self.session.shutdown()
        self.router.disconnect()


def build_runtime(
    config: AppConfig,
    *,
    transport: Transport | None = None,
    http_session: requests.Session | None = None,
) -> Runtime:
    ledger = config.ledger
    client = LedgerClient(
        ledger.base_url,
        timeout_seconds=ledger.timeout_seconds,
        max_retries=ledger.max_retries,
        initial_retry_delay_seconds=ledger.initial_retry_delay_seconds,
        user_cache_ttl_seconds=ledger.user_cache_ttl_seconds,
        trips_cache_ttl_seconds=ledger.trips_cache_ttl_seconds,
        cache=ResponseCache(max_entries=ledger.cache_max_entries),
        session=http_session or requests.Session(),
    )
    router = ChannelRouter(transport or LocalTransport())
    session = SessionManager(
        client,
        router,
        FileSessionStore(config.session.store_path),
        check_interval_seconds=config.session.check_interval_seconds,
        refresh_threshold_seconds=config.session.refresh_threshold_seconds,
        default_token_lifetime_seconds=config.session.default_token_lifetime_seconds,
    )
    return Runtime(config=config, client=client, router=router, session=session)


__all__ = ["Runtime", "build_runtime"]
