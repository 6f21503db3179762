"""Key-value persistence with two scopes: high-capacity ``local`` and small ``sync``.

Values are JSON documents. Every operation is awaitable so persistence is a
suspension point, the same as on a real browser host.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from trackwatch.core.base import RiskWeights, Settings

logger = logging.getLogger(__name__)

DB_FILENAME = "trackwatch.db"


class StorageError(Exception):
    """Raised when the backing store cannot be read or written."""


class KeyValueStore(Protocol):
    async def get(self, defaults: Mapping[str, Any]) -> dict[str, Any]:
        """Return the stored value for every key in *defaults*, or its default."""
        ...

    async def set(self, values: Mapping[str, Any]) -> None: ...

    async def remove(self, keys: Iterable[str]) -> None: ...


def _clone(value: Any) -> Any:
    return json.loads(json.dumps(value))


class MemoryStore:
    """In-process store. Values are copied on the way in and out."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        self.writes = 0
        if initial:
            self._data.update({k: json.dumps(v) for k, v in initial.items()})

    async def get(self, defaults: Mapping[str, Any]) -> dict[str, Any]:
        return {
            key: json.loads(self._data[key]) if key in self._data else _clone(default)
            for key, default in defaults.items()
        }

    async def set(self, values: Mapping[str, Any]) -> None:
        try:
            encoded = {k: json.dumps(v) for k, v in values.items()}
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value is not JSON serializable: {e}") from e
        self._data.update(encoded)
        self.writes += 1

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)


class SqliteStore:
    """One scope of a SQLite-backed store. Blocking I/O runs in a worker thread."""

    def __init__(self, path: Path, scope: str) -> None:
        self.path = path
        self.scope = scope
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path)
            if not self._initialized:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv ("
                    "  scope TEXT NOT NULL,"
                    "  key TEXT NOT NULL,"
                    "  value TEXT NOT NULL,"
                    "  PRIMARY KEY (scope, key)"
                    ")"
                )
                conn.commit()
                self._initialized = True
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.path}: {e}") from e
        return conn

    def _get(self, defaults: Mapping[str, Any]) -> dict[str, Any]:
        result = {key: _clone(default) for key, default in defaults.items()}
        if not defaults:
            return result
        conn = self._connect()
        try:
            placeholders = ", ".join("?" for _ in defaults)
            cursor = conn.execute(
                f"SELECT key, value FROM kv WHERE scope = ? AND key IN ({placeholders})",
                [self.scope, *defaults],
            )
            for key, value in cursor:
                result[key] = json.loads(value)
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()
        return result

    def _set(self, values: Mapping[str, Any]) -> None:
        try:
            rows = [(self.scope, key, json.dumps(value)) for key, value in values.items()]
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value is not JSON serializable: {e}") from e
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO kv (scope, key, value) VALUES (?, ?, ?) "
                    "ON CONFLICT (scope, key) DO UPDATE SET value = excluded.value",
                    rows,
                )
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def _remove(self, keys: list[str]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    "DELETE FROM kv WHERE scope = ? AND key = ?",
                    [(self.scope, key) for key in keys],
                )
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    async def get(self, defaults: Mapping[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._get, dict(defaults))

    async def set(self, values: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._set, dict(values))

    async def remove(self, keys: Iterable[str]) -> None:
        await asyncio.to_thread(self._remove, list(keys))


@dataclass
class Storage:
    """The two storage scopes the host exposes."""

    local: KeyValueStore
    sync: KeyValueStore


def open_storage(state_dir: Path) -> Storage:
    """Open both scopes on a single SQLite file inside *state_dir*."""
    state_dir.mkdir(parents=True, exist_ok=True)
    path = state_dir / DB_FILENAME
    return Storage(local=SqliteStore(path, "local"), sync=SqliteStore(path, "sync"))


def memory_storage() -> Storage:
    return Storage(local=MemoryStore(), sync=MemoryStore())


_SETTINGS_DEFAULTS = Settings().to_store()


async def load_settings(storage: Storage, seed_weights: RiskWeights | None = None) -> Settings:
    """Read user settings from the sync scope, filling gaps with defaults.

    *seed_weights* replaces the built-in weights when none are stored.
    """
    defaults = dict(_SETTINGS_DEFAULTS)
    if seed_weights is not None:
        defaults["riskWeights"] = seed_weights.to_store()
    stored = await storage.sync.get(defaults)
    try:
        return Settings.model_validate(stored)
    except ValidationError as e:
        logger.warning("Stored settings are invalid, using defaults: %s", e)
        return Settings.model_validate(defaults)


async def save_settings(storage: Storage, settings: Settings) -> None:
    await storage.sync.set(settings.to_store())
