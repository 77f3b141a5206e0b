"""Threaded scheduled tasks, including the active-trip fallback poller."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable

from ridein.data.errors import LedgerError, RequestCancelledError
from ridein.data.ledger_client import LedgerClient
from ridein.models import Trip

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Background loop that runs a callable on a fixed interval.

    The loop can be paused and resumed without losing its thread; stop()
    ends it for good and sets the cancel event handed to in-flight work.
    """

    def __init__(self, name: str, interval_seconds: float, run_once: Callable[[], None]) -> None:
        self._name = name
        self._interval_seconds = interval_seconds
        self._run_once = run_once
        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._thread: threading.Thread | None = None

    @property
    def cancel_event(self) -> threading.Event:
        return self._stop_event

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal the thread to stop."""
        self._stop_event.set()
        self._resume_event.set()

    def pause(self) -> None:
        self._resume_event.clear()

    def resume(self) -> None:
        self._resume_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._resume_event.wait()
            if self._stop_event.is_set():
                break
            try:
                self._run_once()
            except Exception:
                logger.exception("Scheduled task %s failed", self._name)
            self._stop_event.wait(timeout=self._interval_seconds)


@dataclass(frozen=True)
class PollResult:
    """Snapshot of the latest active-trip poll attempt."""

    trip: Trip | None
    fetched_at: float
    error: str | None
    started_at: float = 0.0


class ActiveTripPoller(ScheduledTask):
    """Polls the Ledger for the caller's active trip as a fallback to push events."""

    def __init__(
        self,
        client: LedgerClient,
        poll_interval_seconds: float,
        on_result: Callable[[PollResult], None] | None = None,
    ) -> None:
        super().__init__("active-trip-poller", poll_interval_seconds, self._poll)
        self._client = client
        self._on_result = on_result
        self._latest: PollResult | None = None
        self._lock = threading.Lock()

    def get_latest(self) -> PollResult | None:
        """Return the most recent poll result, if any."""
        with self._lock:
            return self._latest

    def set_visible(self, visible: bool) -> None:
        """Pause polling while the consumer is not visible."""
        if visible:
            self.resume()
        else:
            self.pause()

    def _poll(self) -> None:
        result = self._fetch_once()
        if result is None:
            return
        with self._lock:
            self._latest = result
        if self._on_result is not None:
            self._on_result(result)

    def _fetch_once(self) -> PollResult | None:
        started_at = time.monotonic()
        try:
            trip = self._client.get_active_trip(cancel_event=self.cancel_event)
            return PollResult(trip=trip, fetched_at=time.time(), error=None, started_at=started_at)
        except RequestCancelledError:
            return None
        except LedgerError as exc:
            logger.warning("Active trip poll failed: %s", exc)
            return PollResult(
                trip=None, fetched_at=time.time(), error=str(exc), started_at=started_at
            )


__all__ = ["ActiveTripPoller", "PollResult", "ScheduledTask"]
