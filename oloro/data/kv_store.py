from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from oloro.config import Config
from oloro.core.errors import StorageError


CREDENTIALS_KEY = "oloro_api_keys"
RECORDS_KEY = "oloro_records"
SETTINGS_KEY = "oloro_app_settings"


def _now_iso() -> str:
    return datetime.now().isoformat()


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store; nothing survives a restart."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class SqliteKeyValueStore:
    """Durable blob store keyed by a small fixed set of string keys."""

    def __init__(self, db_path: Path | None = None):
        self._db_path = Path(db_path) if db_path is not None else Config.DB_PATH
        self._lock = threading.Lock()
        self.init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def init_schema(self) -> None:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS kv (
                            key TEXT PRIMARY KEY,
                            value TEXT NOT NULL,
                            updated_at TEXT NOT NULL
                        )
                        """
                    )
                    conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Could not open local store at {self._db_path}: {exc}") from exc
        logger.debug(f"Key-value store ready at {self._db_path}")

    def get(self, key: str) -> str | None:
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read '{key}' from local store: {exc}") from exc
        if not row:
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                        (key, value, _now_iso()),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write '{key}' to local store: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                    conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete '{key}' from local store: {exc}") from exc


def load_json(store: KeyValueStore, key: str, default: Any) -> Any:
    raw = store.get(key)
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StorageError(f"Stored value for '{key}' is corrupt: {exc}") from exc


def dump_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False))
