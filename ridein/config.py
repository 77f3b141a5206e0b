"""Configuration loader for the RideIn client core."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any

from dotenv import load_dotenv
import yaml


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger Service connection and request policy."""

    base_url: str
    timeout_seconds: float
    max_retries: int
    initial_retry_delay_seconds: float
    cache_max_entries: int
    user_cache_ttl_seconds: float
    trips_cache_ttl_seconds: float


@dataclass(frozen=True)
class SessionConfig:
    """Credential storage and expiry checks."""

    store_path: str
    check_interval_seconds: float
    refresh_threshold_seconds: float
    default_token_lifetime_seconds: float


@dataclass(frozen=True)
class TripsConfig:
    """Active-trip polling and driver dispatch."""

    poll_interval_seconds: float
    dispatch_radius_km: float


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str
    log_dir: str


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    ledger: LedgerConfig
    session: SessionConfig
    trips: TripsConfig
    log: LoggingConfig


def _require_key(mapping: dict[str, Any], key: str, context: str) -> Any:
    if key not in mapping:
        raise ValueError(f"Missing required key '{key}' in {context} config")
    return mapping[key]


def _require_section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = _require_key(data, name, name)
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' config must be a mapping")
    return section


def _positive(value: Any, key: str, context: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{key}' in {context} config must be a number") from exc
    if number <= 0:
        raise ValueError(f"'{key}' in {context} config must be positive")
    return number


def load_config(path: str = "config/config.yaml") -> AppConfig:
    """Load application configuration from a YAML file."""
    load_dotenv()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ValueError(f"Config file not found: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a mapping at the top level")

    ledger_section = _require_section(data, "ledger")
    session_section = _require_section(data, "session")
    trips_section = _require_section(data, "trips")
    logging_section = _require_section(data, "logging")

    base_url = os.environ.get("RIDEIN_LEDGER_URL") or _require_key(
        ledger_section, "base_url", "ledger"
    )
    max_retries = int(_require_key(ledger_section, "max_retries", "ledger"))
    if max_retries < 0:
        raise ValueError("'max_retries' in ledger config must not be negative")

    ledger = LedgerConfig(
        base_url=str(base_url),
        timeout_seconds=_positive(
            _require_key(ledger_section, "timeout_seconds", "ledger"), "timeout_seconds", "ledger"
        ),
        max_retries=max_retries,
        initial_retry_delay_seconds=float(
            _require_key(ledger_section, "initial_retry_delay_seconds", "ledger")
        ),
        cache_max_entries=int(_require_key(ledger_section, "cache_max_entries", "ledger")),
        user_cache_ttl_seconds=float(
            _require_key(ledger_section, "user_cache_ttl_seconds", "ledger")
        ),
        trips_cache_ttl_seconds=float(
            _require_key(ledger_section, "trips_cache_ttl_seconds", "ledger")
        ),
    )

    session = SessionConfig(
        store_path=str(_require_key(session_section, "store_path", "session")),
        check_interval_seconds=_positive(
            _require_key(session_section, "check_interval_seconds", "session"),
            "check_interval_seconds",
            "session",
        ),
        refresh_threshold_seconds=float(
            _require_key(session_section, "refresh_threshold_seconds", "session")
        ),
        default_token_lifetime_seconds=_positive(
            _require_key(session_section, "default_token_lifetime_seconds", "session"),
            "default_token_lifetime_seconds",
            "session",
        ),
    )

    trips = TripsConfig(
        poll_interval_seconds=_positive(
            _require_key(trips_section, "poll_interval_seconds", "trips"),
            "poll_interval_seconds",
            "trips",
        ),
        dispatch_radius_km=_positive(
            _require_key(trips_section, "dispatch_radius_km", "trips"),
            "dispatch_radius_km",
            "trips",
        ),
    )

    logging = LoggingConfig(
        level=_require_key(logging_section, "level", "logging"),
        log_dir=_require_key(logging_section, "log_dir", "logging"),
    )

    return AppConfig(ledger=ledger, session=session, trips=trips, log=logging)
