"""Transforms applied to every payload exchanged with the Ledger Service."""

from __future__ import annotations

import re
from typing import Any

FORBIDDEN_KEYS = frozenset(
    {"email", "mail", "user_email", "e-mail", "reference-email", "reference_email"}
)
LOG_REDACTED_KEYS = frozenset(
    {"password", "pin", "auth_token", "authtoken", "token", "session_token", "code"}
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _is_forbidden(key: str) -> bool:
    lowered = key.lower()
    return lowered in FORBIDDEN_KEYS or "reference-email" in lowered


def scrub(value: Any) -> Any:
    """Recursively drop privacy-sensitive fields from a payload."""
    if isinstance(value, dict):
        return {
            key: scrub(val)
            for key, val in value.items()
            if not (isinstance(key, str) and _is_forbidden(key))
        }
    if isinstance(value, (list, tuple)):
        return [scrub(item) for item in value]
    return value


def to_snake_case(key: str) -> str:
    """Convert a wire key (camelCase, kebab-case or snake_case) to snake_case."""
    key = key.replace("-", "_")
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _is_identifier(key: str) -> bool:
    return key == "id" or key.endswith("_id")


def _coerce_identifier(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, dict, list)):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize(value: Any) -> Any:
    """Recursively rewrite keys to snake_case and stringify identifier fields."""
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, val in value.items():
            new_key = to_snake_case(key) if isinstance(key, str) else key
            val = normalize(val)
            if isinstance(new_key, str) and _is_identifier(new_key):
                val = _coerce_identifier(val)
            normalized[new_key] = val
        return normalized
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    return value


def sanitize_incoming(value: Any) -> Any:
    """Scrub, then normalize, a payload received from the Ledger."""
    return normalize(scrub(value))


def redact_for_log(value: Any) -> Any:
    """Mask credentials so a payload can be written to the log."""
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, val in value.items():
            if isinstance(key, str) and key.lower() in LOG_REDACTED_KEYS:
                redacted[key] = "***"
            else:
                redacted[key] = redact_for_log(val)
        return redacted
    if isinstance(value, list):
        return [redact_for_log(item) for item in value]
    return value


def wire_id(value: str | int) -> str | int:
    """Send numeric-looking identifiers to the Ledger as integers."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else text


__all__ = [
    "FORBIDDEN_KEYS",
    "normalize",
    "redact_for_log",
    "sanitize_incoming",
    "scrub",
    "to_snake_case",
    "wire_id",
]
