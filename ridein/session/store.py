"""Persisted client session: credential, expiry and identity snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import threading
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSession:
    """A credential always travels with its absolute expiry (epoch ms)."""

    token: str
    token_expiry_ms: int
    user: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("A stored session requires a token.")
        if not isinstance(self.token_expiry_ms, int) or self.token_expiry_ms <= 0:
            raise ValueError("A stored session requires an absolute token expiry.")


class MemorySessionStore:
    """Keeps the session for the life of the process only."""

    def __init__(self) -> None:
        self._session: StoredSession | None = None
        self._lock = threading.Lock()

    def load(self) -> StoredSession | None:
        with self._lock:
            return self._session

    def save(self, session: StoredSession) -> None:
        with self._lock:
            self._session = session

    def clear(self) -> None:
        with self._lock:
            self._session = None


class FileSessionStore(MemorySessionStore):
    """JSON file store; token, expiry and identity are written and removed together."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        super().__init__()
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoredSession | None:
        with self._lock:
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except FileNotFoundError:
                return None
            except (OSError, ValueError) as exc:
                logger.warning("Discarding unreadable session file %s: %s", self._path, exc)
                return None
            try:
                return StoredSession(
                    token=str(data["token"]),
                    token_expiry_ms=int(data["token_expiry_ms"]),
                    user=dict(data.get("user") or {}),
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding incomplete session file %s: %s", self._path, exc)
                return None

    def save(self, session: StoredSession) -> None:
        record = {
            "token": session.token,
            "token_expiry_ms": session.token_expiry_ms,
            "user": session.user,
        }
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False)
            os.replace(tmp_path, self._path)

    def clear(self) -> None:
        with self._lock:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass


__all__ = ["FileSessionStore", "MemorySessionStore", "StoredSession"]
