"""SQLite-backed key/value store for persisted scheduler state.

Each logical key (`schedules`, `pending_schedules`, `execution_history`,
`auto_run_state`, `manual_scrape_state`, `source_mapping`,
`notification_settings`) is stored as one JSON document and is independently
readable and writable. Every `set` commits before returning.
"""

from __future__ import annotations

import copy
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Callable

from .config_loader import get_state_db_path
from .reference_clock import _utc_now, iso

DEFAULT_DB_PATH = "memory/savvy_pirate_state.db"

SCHEDULES_KEY = "schedules"
PENDING_SCHEDULES_KEY = "pending_schedules"
EXECUTION_HISTORY_KEY = "execution_history"
AUTO_RUN_STATE_KEY = "auto_run_state"
MANUAL_SCRAPE_STATE_KEY = "manual_scrape_state"
SOURCE_MAPPING_KEY = "source_mapping"
NOTIFICATION_SETTINGS_KEY = "notification_settings"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def resolve_state_db_path(path: str | Path | None) -> Path:
    candidate = Path(path or get_state_db_path() or DEFAULT_DB_PATH)
    if not candidate.is_absolute():
        candidate = _repo_root() / candidate
    return candidate.resolve()


class StateStore:
    """Persist JSON documents keyed by name."""

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_ms: int = 5000) -> None:
        self._db_path = resolve_state_db_path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_ms = int(busy_timeout_ms) if int(busy_timeout_ms) > 0 else 5000
        self._lock = RLock()
        self.ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_ms / 1000.0)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms:d};")
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS state_entries (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT value_json FROM state_entries WHERE key = ?;", (key,)).fetchone()
        if row is None:
            return copy.deepcopy(default)
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return copy.deepcopy(default)

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO state_entries(key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at;
                """,
                (key, payload, iso(_utc_now())),
            )

    def delete(self, key: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM state_entries WHERE key = ?;", (key,))
        return cur.rowcount > 0

    def mutate(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write one key under the store lock; returns the stored value."""
        with self._lock:
            current = self.get(key, default)
            updated = fn(current)
            self.set(key, updated)
            return updated

    def keys(self) -> list[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT key FROM state_entries ORDER BY key ASC;").fetchall()
        return [str(row["key"]) for row in rows]
