"""Resilient HTTP client for the Ledger Service."""

from __future__ import annotations

from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Iterable

import requests

from ridein.data.cache import ResponseCache
from ridein.data.errors import (
    AuthExpiredError,
    ForbiddenError,
    InvalidCredentialsError,
    LedgerError,
    NetworkError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
    message_for_status,
)
from ridein.data.payloads import redact_for_log, sanitize_incoming, scrub, wire_id
from ridein.models import Trip, TripRequest, TripStatus, User, UserRole

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY_SECONDS = 1.0
USER_CACHE_TTL_SECONDS = 60.0
TRIPS_CACHE_TTL_SECONDS = 10.0
JOIN_POLL_SECONDS = 0.05

# A 401 from these means bad credentials rather than an expired session.
AUTH_ENDPOINTS = frozenset(
    {
        "/auth/login",
        "/auth/signup",
        "/auth/request-password-reset",
        "/auth/complete-password-reset",
        "/auth/revoke",
    }
)
# Repeating these can duplicate side effects on the Ledger.
NON_RETRYABLE_ENDPOINTS = frozenset(
    {"/auth/login", "/auth/signup", "/auth/complete-password-reset", "/auth/refresh"}
)
IDENTITY_ENDPOINT = "/auth/me"

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."
INVALID_CREDENTIALS_MESSAGE = "Incorrect phone number or PIN."
NETWORK_MESSAGE = "Unable to reach the service. Please check your connection."
TIMEOUT_MESSAGE = "The request timed out. Please check your connection and try again."
CANCELLED_MESSAGE = "The request was cancelled."


@dataclass(frozen=True)
class RequestOptions:
    """Per-call overrides for send()."""

    timeout_seconds: float | None = None
    retry: bool = True
    token: str | None = None


@dataclass(frozen=True)
class AuthResult:
    """Credential issued by a login, signup, password reset or refresh."""

    token: str
    expiry_ms: int | None
    user: User | None


def _server_message(data: Any) -> str | None:
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _parse_auth(payload: Any, now_ms: int) -> AuthResult:
    if not isinstance(payload, dict):
        raise LedgerError("The service returned an empty response.")
    token = payload.get("auth_token") or payload.get("token")
    if not token:
        raise LedgerError("The service did not return a session.")
    expiry_ms: int | None = None
    if payload.get("token_expiry") is not None:
        expiry_ms = int(payload["token_expiry"])
    elif payload.get("expires_at") is not None:
        expiry_ms = int(payload["expires_at"])
    elif payload.get("expires_in") is not None:
        expiry_ms = now_ms + int(float(payload["expires_in"]) * 1000)
    user_payload = payload.get("user")
    user = User.from_payload(user_payload) if isinstance(user_payload, dict) else None
    return AuthResult(token=str(token), expiry_ms=expiry_ms, user=user)


def _trip_or_none(payload: Any) -> Trip | None:
    if isinstance(payload, dict) and payload.get("id"):
        return Trip.from_payload(payload)
    return None


class LedgerClient:
    """Request/response access to the Ledger Service.

    Every call attaches the current credential, applies a timeout and retries
    transient failures with exponential backoff. Concurrent GETs for the same
    endpoint share one in-flight request. Incoming payloads are scrubbed of
    privacy-sensitive fields and normalized to snake_case keys with string ids.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay_seconds: float = DEFAULT_INITIAL_RETRY_DELAY_SECONDS,
        user_cache_ttl_seconds: float = USER_CACHE_TTL_SECONDS,
        trips_cache_ttl_seconds: float = TRIPS_CACHE_TTL_SECONDS,
        cache: ResponseCache | None = None,
        session: requests.Session | None = None,
        token_provider: Callable[[], str | None] | None = None,
        on_auth_expired: Callable[[], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._initial_retry_delay = initial_retry_delay_seconds
        self._user_cache_ttl = user_cache_ttl_seconds
        self._trips_cache_ttl = trips_cache_ttl_seconds
        self._cache = cache or ResponseCache()
        self._http = session or requests
        self._token_provider = token_provider
        self._on_auth_expired = on_auth_expired
        self._sleep = sleep
        self._clock = clock
        self._inflight: dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    def set_token_provider(self, provider: Callable[[], str | None] | None) -> None:
        self._token_provider = provider

    def set_auth_expired_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_auth_expired = handler

    # Auth -------------------------------------------------------------------
    def login(self, *, phone: str, pin: str) -> AuthResult:
        output = self.send("/auth/login", "POST", {"phone": phone, "password": pin})
        return _parse_auth(output, self._now_ms())

    def signup(self, profile: dict[str, Any], pin: str) -> AuthResult:
        payload = dict(profile)
        payload["password"] = pin
        output = self.send("/auth/signup", "POST", payload)
        return _parse_auth(output, self._now_ms())

    def get_me(self, cancel_event: threading.Event | None = None) -> User | None:
        output = self.cached_get(IDENTITY_ENDPOINT, self._user_cache_ttl, cancel_event)
        if isinstance(output, dict) and output.get("id"):
            return User.from_payload(output)
        return None

    def refresh_token(self) -> AuthResult:
        output = self.send("/auth/refresh", "POST")
        return _parse_auth(output, self._now_ms())

    def revoke_token(self, token: str) -> None:
        self.send("/auth/revoke", "POST", options=RequestOptions(retry=False, token=token))

    def request_password_reset(self, phone: str) -> str:
        output = self.send("/auth/request-password-reset", "POST", {"phone": phone})
        return _server_message(output) or "If the number is registered, a reset code is on its way."

    def complete_password_reset(self, *, phone: str, code: str, new_pin: str) -> AuthResult:
        output = self.send(
            "/auth/complete-password-reset",
            "POST",
            {"phone": phone, "code": code, "password": new_pin},
        )
        return _parse_auth(output, self._now_ms())

    def update_profile(self, fields: dict[str, Any]) -> User:
        output = self.send("/auth/profile", "PUT", fields)
        if not isinstance(output, dict):
            raise LedgerError("The service returned an empty profile.")
        return User.from_payload(output.get("user") if isinstance(output.get("user"), dict) else output)

    def switch_role(self, user_id: str, role: UserRole) -> User:
        output = self.send(
            "/switch-role", "POST", {"user_id": wire_id(user_id), "role": UserRole(role).value}
        )
        if not isinstance(output, dict):
            raise LedgerError("The service returned an empty profile.")
        return User.from_payload(output)

    # Trips ------------------------------------------------------------------
    def create_trip(
        self, request: TripRequest, cancel_event: threading.Event | None = None
    ) -> Trip:
        payload = {
            "rider_id": wire_id(request.rider_id),
            "vehicle_type": request.type.value,
            "category": request.category,
            "pickup": {"lat": request.pickup.lat, "lng": request.pickup.lng},
            "dropoff": {"lat": request.dropoff.lat, "lng": request.dropoff.lng},
            "pickup_address": request.pickup.address,
            "dropoff_address": request.dropoff.address,
            "proposed_price": float(request.proposed_price),
            "distance_km": float(request.distance_km),
            "duration_mins": int(request.duration_mins),
            "city": request.city,
            "is_guest_booking": request.is_guest_booking,
            "guest_name": request.guest_name,
            "guest_phone": request.guest_phone,
            "scheduled_time": request.scheduled_time,
            "item_description": request.item_description,
            "requires_assistance": request.requires_assistance,
            "cargo_photos": list(request.cargo_photos),
        }
        output = self.send("/trips", "POST", payload, cancel_event)
        trip = _trip_or_none(output)
        if trip is None:
            raise LedgerError("The service did not return the new trip.")
        return trip

    def get_active_trip(self, cancel_event: threading.Event | None = None) -> Trip | None:
        return _trip_or_none(self.send("/trips/active", "GET", cancel_event=cancel_event))

    def get_trip_history(self, cancel_event: threading.Event | None = None) -> list[Trip]:
        output = self.cached_get("/trips/history", self._trips_cache_ttl, cancel_event)
        if isinstance(output, dict):
            output = output.get("items") or output.get("trips") or []
        if not isinstance(output, list):
            return []
        return [Trip.from_payload(item) for item in output if isinstance(item, dict) and item.get("id")]

    def submit_offer(self, trip_id: str, driver_id: str, amount: float) -> str:
        output = self.send(
            f"/trips/{trip_id}/offers",
            "POST",
            {"trip_id": wire_id(trip_id), "driver_id": wire_id(driver_id), "offer_price": float(amount)},
        )
        if not isinstance(output, dict) or not output.get("id"):
            raise LedgerError("The service did not confirm the offer.")
        return str(output["id"])

    def accept_bid(self, trip_id: str, bid_id: str) -> Trip | None:
        output = self.send(f"/trips/{trip_id}/accept", "POST", {"bid_id": wire_id(bid_id)})
        return _trip_or_none(output)

    def accept_suggested_price(self, trip_id: str, driver_id: str) -> Trip | None:
        output = self.send(
            f"/trips/{trip_id}/accept",
            "POST",
            {"driver_id": wire_id(driver_id), "accept_suggested_price": True},
        )
        return _trip_or_none(output)

    def update_trip_status(self, trip_id: str, status: TripStatus) -> None:
        self.send(f"/trips/{trip_id}/status", "POST", {"status": TripStatus(status).value})

    def cancel_trip(self, trip_id: str, reason: str | None = None) -> None:
        body = {"reason": reason} if reason else None
        self.send(f"/trips/{trip_id}/cancel", "POST", body)

    def submit_review(
        self,
        trip_id: str,
        *,
        rating: float,
        tags: Iterable[str] = (),
        comment: str = "",
        is_favorite: bool = False,
    ) -> None:
        self.send(
            f"/trips/{trip_id}/review",
            "POST",
            {
                "trip_id": wire_id(trip_id),
                "rating": float(rating),
                "tags": list(tags),
                "comment": comment,
                "is_favorite": is_favorite,
            },
        )

    # Core -------------------------------------------------------------------
    def send(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        cancel_event: threading.Event | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Send one request and return the scrubbed, normalized payload."""
        method = method.upper()
        options = options or RequestOptions()
        if method != "GET":
            return self._execute(method, endpoint, body, cancel_event, options)

        request_key = f"{method}:{endpoint}"
        while True:
            with self._inflight_lock:
                future = self._inflight.get(request_key)
                leader = future is None
                if leader:
                    future = Future()
                    self._inflight[request_key] = future

            if leader:
                break
            logger.debug("Joining in-flight request %s", request_key)
            try:
                return self._await_shared(future, cancel_event)
            except RequestCancelledError:
                if cancel_event is not None and cancel_event.is_set():
                    raise
            # The shared call was cancelled by the caller that started it.
            logger.debug("Shared request %s was cancelled; re-issuing", request_key)

        try:
            result = self._execute(method, endpoint, body, cancel_event, options)
        except BaseException as exc:
            self._release_inflight(request_key, future)
            future.set_exception(exc)
            raise
        self._release_inflight(request_key, future)
        future.set_result(result)
        return result

    def cached_get(
        self,
        endpoint: str,
        ttl_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> Any:
        cache_key = f"GET:{endpoint}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached
        data = self.send(endpoint, "GET", cancel_event=cancel_event)
        if data is not None:
            self._cache.set(cache_key, data, ttl_seconds)
        return data

    def invalidate_cache(self, pattern: str | None = None) -> None:
        self._cache.invalidate(pattern)

    # Internal helpers -------------------------------------------------------
    def _execute(
        self,
        method: str,
        endpoint: str,
        body: Any,
        cancel_event: threading.Event | None,
        options: RequestOptions,
    ) -> Any:
        retries_allowed = options.retry and endpoint not in NON_RETRYABLE_ENDPOINTS
        attempt = 0
        while True:
            self._check_cancelled(cancel_event)
            try:
                return self._attempt(method, endpoint, body, cancel_event, options)
            except LedgerError as exc:
                if not exc.retryable or not retries_allowed or attempt >= self._max_retries:
                    raise
                delay = self._initial_retry_delay * (2**attempt)
                logger.warning(
                    "%s %s failed (%s); retry %d/%d in %.1fs",
                    method,
                    endpoint,
                    type(exc).__name__,
                    attempt + 1,
                    self._max_retries,
                    delay,
                )
                self._wait(delay, cancel_event)
                attempt += 1

    def _attempt(
        self,
        method: str,
        endpoint: str,
        body: Any,
        cancel_event: threading.Event | None,
        options: RequestOptions,
    ) -> Any:
        url = f"{self._base_url}{endpoint}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = options.token or (self._token_provider() if self._token_provider else None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        outgoing = scrub(body) if body is not None else None
        timeout = options.timeout_seconds or self._timeout_seconds
        logger.info(
            "[Client->Ledger] %s %s payload=%s", method, endpoint, redact_for_log(outgoing or {})
        )

        try:
            response = self._http.request(
                method, url, json=outgoing, headers=headers, timeout=timeout
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError(TIMEOUT_MESSAGE, code="TIMEOUT") from exc
        except requests.RequestException as exc:
            raise NetworkError(NETWORK_MESSAGE, code="NETWORK_ERROR") from exc

        self._check_cancelled(cancel_event)
        try:
            data = response.json()
        except ValueError:
            data = None

        status_code = response.status_code
        logger.info("[Client<-Ledger] %s %s status=%s", method, endpoint, status_code)
        if not 200 <= status_code < 300:
            self._raise_for_status(endpoint, status_code, data)

        result = sanitize_incoming(data)
        if method != "GET":
            self._invalidate_after_write(endpoint)
        return result

    def _raise_for_status(self, endpoint: str, status_code: int, data: Any) -> None:
        server_message = _server_message(data)
        code = data.get("code") if isinstance(data, dict) else None
        if status_code == 401:
            if endpoint in AUTH_ENDPOINTS:
                raise InvalidCredentialsError(
                    server_message or INVALID_CREDENTIALS_MESSAGE, 401, "INVALID_CREDENTIALS"
                )
            logger.warning("Session rejected by the Ledger on %s; tearing down", endpoint)
            if self._on_auth_expired is not None:
                try:
                    self._on_auth_expired()
                except Exception:
                    logger.exception("Session teardown after 401 failed")
            raise AuthExpiredError(SESSION_EXPIRED_MESSAGE, 401, "AUTH_EXPIRED")
        if status_code == 403:
            raise ForbiddenError(message_for_status(403), 403, code)
        if status_code in (400, 422):
            raise ValidationError(server_message or message_for_status(status_code), status_code, code)
        if status_code == 429:
            raise RateLimitError(message_for_status(429), 429, code)
        if status_code >= 500:
            raise ServerError(message_for_status(status_code), status_code, code)
        raise LedgerError(message_for_status(status_code), status_code, code)

    def _invalidate_after_write(self, endpoint: str) -> None:
        if endpoint.startswith("/trips"):
            self._cache.invalidate("trips")
        elif endpoint in ("/switch-role", "/auth/profile"):
            self._cache.invalidate(IDENTITY_ENDPOINT)

    def _await_shared(self, future: Future, cancel_event: threading.Event | None) -> Any:
        while True:
            self._check_cancelled(cancel_event)
            try:
                return future.result(timeout=JOIN_POLL_SECONDS)
            except FutureTimeoutError:
                continue

    def _release_inflight(self, request_key: str, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(request_key) is future:
                del self._inflight[request_key]

    def _wait(self, delay: float, cancel_event: threading.Event | None) -> None:
        if cancel_event is None:
            self._sleep(delay)
            return
        if cancel_event.wait(timeout=delay):
            raise RequestCancelledError(CANCELLED_MESSAGE, code="ABORTED")

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError(CANCELLED_MESSAGE, code="ABORTED")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)


__all__ = [
    "AUTH_ENDPOINTS",
    "AuthResult",
    "LedgerClient",
    "NON_RETRYABLE_ENDPOINTS",
    "RequestOptions",
]
