"""Session and token lifecycle: boot, refresh scheduling, role switch and logout."""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable

from ridein.data.errors import (
    LedgerError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
)
from ridein.data.ledger_client import IDENTITY_ENDPOINT, AuthResult, LedgerClient
from ridein.data.poller import ScheduledTask
from ridein.models import User, UserRole
from ridein.realtime.router import ChannelRouter
from ridein.session.store import MemorySessionStore, StoredSession

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 30.0
DEFAULT_REFRESH_THRESHOLD_SECONDS = 3600.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 24 * 3600.0
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."


class AuthState(str, enum.Enum):
    INITIALIZING = "initializing"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    SESSION_EXPIRING = "session_expiring"
    REFRESHING = "refreshing"
    SESSION_EXPIRED = "session_expired"


Listener = Callable[[AuthState, "User | None"], None]


class SessionManager:
    """Owns the credential, its expiry and the cached identity.

    The manager is the only reader and writer of the session store. It plugs
    itself into the LedgerClient so every request carries the current token
    and a 401 on a protected endpoint tears the session down.
    """

    def __init__(
        self,
        client: LedgerClient,
        router: ChannelRouter,
        store: MemorySessionStore | None = None,
        *,
        check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        refresh_threshold_seconds: float = DEFAULT_REFRESH_THRESHOLD_SECONDS,
        default_token_lifetime_seconds: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.time,
        auto_monitor: bool = True,
        revoke_in_background: bool = True,
    ) -> None:
        self._client = client
        self._router = router
        self._store = store or MemorySessionStore()
        self._check_interval_seconds = check_interval_seconds
        self._refresh_threshold_ms = int(refresh_threshold_seconds * 1000)
        self._default_lifetime_ms = int(default_token_lifetime_seconds * 1000)
        self._clock = clock
        self._auto_monitor = auto_monitor
        self._revoke_in_background = revoke_in_background

        self._state = AuthState.INITIALIZING
        self._session: StoredSession | None = None
        self._user: User | None = None
        self._last_error: str | None = None
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self._refresh_latch = threading.Lock()
        self._monitor: ScheduledTask | None = None

        client.set_token_provider(self.token)
        client.set_auth_expired_handler(self._handle_auth_expired)

    # Read-only view -----------------------------------------------------------
    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def token_expiry_ms(self) -> int | None:
        session = self._session
        return session.token_expiry_ms if session else None

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_latch.locked()

    def token(self) -> str | None:
        session = self._session
        return session.token if session else None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def clear_error(self) -> None:
        self._last_error = None

    # Boot ----------------------------------------------------------------------
    def boot(self, cancel_event: threading.Event | None = None) -> AuthState:
        """Restore a stored session, trusting the cached identity only when offline."""
        stored = self._store.load()
        if stored is None:
            self._transition(AuthState.UNAUTHENTICATED)
            return self._state
        if stored.token_expiry_ms <= self._now_ms():
            logger.info("Stored session expired before boot; clearing it")
            self._store.clear()
            self._transition(AuthState.UNAUTHENTICATED)
            return self._state

        with self._lock:
            self._session = stored
        self._client.invalidate_cache(IDENTITY_ENDPOINT)
        try:
            user = self._client.get_me(cancel_event)
        except RequestCancelledError:
            raise
        except (NetworkError, RequestTimeoutError) as exc:
            logger.warning("Identity fetch failed while offline (%s); using cached identity", exc)
            user = self._cached_user(stored)
            if user is None:
                self._discard_local_session()
                return self._state
            self._activate(stored, user, persist=False)
            return self._state
        except LedgerError as exc:
            logger.warning("Stored session rejected during boot: %s", exc)
            self._discard_local_session()
            return self._state

        if user is None:
            logger.warning("Ledger returned no identity for the stored session")
            self._discard_local_session()
            return self._state
        self._activate(stored, user)
        return self._state

    # Credential flows ------------------------------------------------------------
    def login(self, phone: str, pin: str) -> User:
        return self._authenticate(lambda: self._client.login(phone=phone, pin=pin), "Login failed")

    def signup(self, profile: dict[str, Any], pin: str) -> User:
        return self._authenticate(lambda: self._client.signup(profile, pin), "Signup failed")

    def complete_password_reset(self, phone: str, code: str, new_pin: str) -> User:
        return self._authenticate(
            lambda: self._client.complete_password_reset(phone=phone, code=code, new_pin=new_pin),
            "Password reset failed",
        )

    def request_password_reset(self, phone: str) -> str:
        self._last_error = None
        try:
            return self._client.request_password_reset(phone)
        except LedgerError as exc:
            self._last_error = exc.message
            raise

    # Expiry & refresh ------------------------------------------------------------
    def check_expiry(self) -> None:
        """Periodic check: log out once expired, refresh once close to expiry."""
        with self._lock:
            if self._state not in (AuthState.AUTHENTICATED, AuthState.SESSION_EXPIRING):
                return
            session = self._session
        if session is None:
            self._expire(SESSION_EXPIRED_MESSAGE)
            return
        remaining_ms = session.token_expiry_ms - self._now_ms()
        if remaining_ms <= 0:
            logger.info("Session token expired; logging out")
            self._expire(SESSION_EXPIRED_MESSAGE)
        elif remaining_ms <= self._refresh_threshold_ms and not self._refresh_latch.locked():
            logger.info("Session token expires in %ds; refreshing", remaining_ms // 1000)
            self._transition(AuthState.SESSION_EXPIRING)
            self.refresh()

    def refresh(self) -> bool:
        """Replace the token; only one refresh may be in flight at a time."""
        if not self._refresh_latch.acquire(blocking=False):
            return False
        try:
            with self._lock:
                current = self._session
            if current is None:
                return False
            self._transition(AuthState.REFRESHING)
            try:
                auth = self._client.refresh_token()
            except LedgerError as exc:
                logger.error("Token refresh failed: %s", exc)
                self._expire(SESSION_EXPIRED_MESSAGE)
                return False

            refreshed = StoredSession(
                token=auth.token,
                token_expiry_ms=self._expiry_for(auth),
                user=current.user,
            )
            with self._lock:
                if self._session is None:
                    return False
                self._session = refreshed
                self._store.save(refreshed)
            self._client.invalidate_cache(IDENTITY_ENDPOINT)

            user = auth.user
            if user is None:
                try:
                    user = self._client.get_me()
                except LedgerError as exc:
                    logger.warning("Identity re-fetch after refresh failed: %s", exc)
            if user is not None:
                self._remember_user(user)
            logger.info("Session token refreshed")
            self._transition(AuthState.AUTHENTICATED)
            return True
        finally:
            self._refresh_latch.release()

    # Logout --------------------------------------------------------------------
    def logout(self, message: str | None = None) -> None:
        """Revoke best-effort, then clear storage, realtime and caches."""
        with self._lock:
            session = self._session
            self._session = None
            self._user = None
            monitor, self._monitor = self._monitor, None
            if message:
                self._last_error = message
        if monitor is not None:
            monitor.stop()
        if session is not None:
            self._revoke(session.token)
        self._store.clear()
        self._router.disconnect()
        self._client.invalidate_cache()
        self._transition(AuthState.UNAUTHENTICATED)
        logger.info("Logged out")

    def shutdown(self) -> None:
        """Stop background checks without touching the stored session."""
        with self._lock:
            monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor.stop()

    # Identity mutations --------------------------------------------------------
    def switch_role(self, role: UserRole) -> User:
        """Tear down role-scoped channels, switch on the Ledger, then update identity."""
        user = self._require_user()
        self._router.prepare_role_switch()
        try:
            updated = self._client.switch_role(user.id, role)
        except LedgerError as exc:
            self._last_error = exc.message
            raise
        self._remember_user(updated)
        self._notify()
        return updated

    def update_profile(self, fields: dict[str, Any]) -> User:
        self._require_user()
        try:
            updated = self._client.update_profile(fields)
        except LedgerError as exc:
            self._last_error = exc.message
            raise
        self._remember_user(updated)
        self._notify()
        return updated

    def refresh_user(self) -> User | None:
        self._require_user()
        self._client.invalidate_cache(IDENTITY_ENDPOINT)
        try:
            user = self._client.get_me()
        except LedgerError as exc:
            self._last_error = exc.message
            raise
        if user is not None:
            self._remember_user(user)
            self._notify()
        return user

    # Internal helpers ------------------------------------------------------------
    def _authenticate(self, call: Callable[[], AuthResult], failure: str) -> User:
        self._last_error = None
        self._transition(AuthState.INITIALIZING)
        try:
            auth = call()
            session = StoredSession(token=auth.token, token_expiry_ms=self._expiry_for(auth))
            with self._lock:
                self._session = session
            user = auth.user or self._client.get_me()
            if user is None:
                raise LedgerError("The service did not return your profile.")
        except LedgerError as exc:
            logger.warning("%s: %s", failure, exc)
            with self._lock:
                self._session = None
            self._last_error = exc.message
            self._transition(AuthState.UNAUTHENTICATED)
            raise
        self._activate(session, user)
        return user

    def _activate(self, session: StoredSession, user: User, *, persist: bool = True) -> None:
        stored = StoredSession(session.token, session.token_expiry_ms, user.as_payload())
        with self._lock:
            self._session = stored
            self._user = user
            if persist:
                self._store.save(stored)
        self._router.connect(user.id)
        self._transition(AuthState.AUTHENTICATED)
        self._start_monitor()

    def _remember_user(self, user: User) -> None:
        with self._lock:
            self._user = user
            if self._session is not None:
                self._session = StoredSession(
                    self._session.token, self._session.token_expiry_ms, user.as_payload()
                )
                self._store.save(self._session)

    def _start_monitor(self) -> None:
        if not self._auto_monitor:
            return
        with self._lock:
            if self._monitor is not None:
                return
            self._monitor = ScheduledTask(
                "session-monitor", self._check_interval_seconds, self.check_expiry
            )
            monitor = self._monitor
        monitor.start()

    def _expire(self, message: str) -> None:
        with self._lock:
            if self._session is None and self._state == AuthState.UNAUTHENTICATED:
                return
        self._last_error = message
        self._transition(AuthState.SESSION_EXPIRED)
        self.logout(message)

    def _handle_auth_expired(self) -> None:
        if self._session is None:
            return
        self._expire(SESSION_EXPIRED_MESSAGE)

    def _discard_local_session(self) -> None:
        with self._lock:
            self._session = None
            self._user = None
        self._store.clear()
        self._client.invalidate_cache()
        self._transition(AuthState.UNAUTHENTICATED)

    def _revoke(self, token: str) -> None:
        def run() -> None:
            try:
                self._client.revoke_token(token)
            except LedgerError as exc:
                logger.warning("Token revoke failed (ignored): %s", exc)

        if self._revoke_in_background:
            threading.Thread(target=run, name="token-revoke", daemon=True).start()
        else:
            run()

    def _cached_user(self, stored: StoredSession) -> User | None:
        if not stored.user:
            return None
        try:
            return User.from_payload(stored.user)
        except ValueError as exc:
            logger.warning("Cached identity is unusable: %s", exc)
            return None

    def _require_user(self) -> User:
        user = self._user
        if user is None or self._session is None:
            raise LedgerError("No user is logged in.")
        return user

    def _expiry_for(self, auth: AuthResult) -> int:
        return auth.expiry_ms or self._now_ms() + self._default_lifetime_ms

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _transition(self, state: AuthState) -> None:
        with self._lock:
            if self._state == state:
                return
            self._state = state
        logger.debug("Auth state -> %s", state.value)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, self._user)
            except Exception:
                logger.exception("Session listener failed")


__all__ = ["AuthState", "SessionManager", "SESSION_EXPIRED_MESSAGE"]
