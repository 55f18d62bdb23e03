"""Durable string-keyed local state used by the bootstrap."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol

MODE_KEY = "gesmind_db_mode"
CONFIG_KEY = "gesmind_firebase_config"
SESSION_KEY = "gesmind_auth_session"

_STATE_DIRNAME = ".gesmind"
_STATE_FILENAME = "local-state.json"


class StateStore(Protocol):
    """Minimal key/value contract for persisted local state."""

    def get(self, key: str) -> str | None:
        """Return the stored value for ``key``."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    def delete(self, key: str) -> None:
        """Remove ``key`` when present."""


def state_dir() -> Path:
    """Return the state directory, honoring ``GESMIND_HOME``."""
    override = os.environ.get("GESMIND_HOME")
    if override and override.strip():
        return Path(override.strip())
    return Path.home() / _STATE_DIRNAME


def state_store_path() -> Path:
    """Return the state file path under the state directory."""
    return state_dir() / _STATE_FILENAME


class FileStateStore:
    """JSON file backed store; a missing or corrupt file reads as empty."""

    def __init__(self, path: Path | None = None) -> None:
        """Bind the store to ``path`` (defaults to ``state_store_path()``)."""
        self.path = path or state_store_path()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        if not isinstance(payload, dict):
            return {}
        return {
            key: value
            for key, value in payload.items()
            if isinstance(key, str) and isinstance(value, str)
        }

    def _save(self, values: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(values, indent=2), encoding="utf-8")

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._load()
        values[key] = value
        self._save(values)

    def delete(self, key: str) -> None:
        values = self._load()
        if values.pop(key, None) is not None:
            self._save(values)


class MemoryStateStore:
    """Process-local store for ephemeral sessions and tests."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


__all__ = [
    "CONFIG_KEY",
    "MODE_KEY",
    "SESSION_KEY",
    "FileStateStore",
    "MemoryStateStore",
    "StateStore",
    "state_dir",
    "state_store_path",
]
