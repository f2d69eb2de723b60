"""SQLite-backed local key-value store.

Holds the bounded play-history cache, one-time flags and the snapshots of
the shield and rule state.  Values are JSON documents keyed by string.

This module is **synchronous** (plain ``sqlite3``); every call is a single
short statement so it is called directly from the event loop.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Well-known keys
RECENTLY_PLAYED_KEY = "streamshield:recently_played"
SHIELD_KEY = "streamshield:shield"
RULES_KEY = "streamshield:rules"
INSTRUCTIONS_SHOWN_KEY = "streamshield:exclusion_instructions_shown"


class LocalStore:
    """Persistent JSON key-value store backed by SQLite.

    Parameters
    ----------
    db_path:
        Path to the database file.  ``":memory:"`` gives a throwaway store.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        log.info("Opening local store at %s", self._db_path)
        self._conn: sqlite3.Connection = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
        )
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        with self._conn:
            self._conn.executescript(_SCHEMA)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for *key*, or *default*."""
        row = self._conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,),
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            log.warning("Corrupt JSON stored under %s, ignoring", key)
            return default

    def set(self, key: str, value: Any) -> None:
        """Upsert *value* (JSON-serialisable) under *key*."""
        now = datetime.now(timezone.utc).isoformat()
        payload = json.dumps(value, default=str)
        with self._conn:
            self._conn.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, payload, now),
            )
        log.debug("Stored %s (%d bytes)", key, len(payload))

    def remove(self, key: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        cursor = self._conn.execute("SELECT key FROM kv_store ORDER BY key")
        return [row[0] for row in cursor.fetchall()]

    def close(self) -> None:
        self._conn.close()
