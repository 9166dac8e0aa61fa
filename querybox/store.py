"""
SQLite-backed key/value Local Store.

Schema
──────
table: kv
  key        TEXT PRIMARY KEY
  value      TEXT NOT NULL  (JSON)
  updated_at TEXT NOT NULL  (ISO-8601 UTC)

Values are JSON-serialisable Python objects. Writers are expected to be rare
(a single active UI) and last-write-wins.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "querybox.db"


def _db_path() -> Path:
    """Return the database file path, honouring a DB_PATH env var if set."""
    env = os.getenv("DB_PATH")
    return Path(env) if env else DEFAULT_DB_PATH


class LocalStore:
    """Synchronous ``get`` / ``set`` / ``remove`` over a SQLite file.

    Args:
        path: Database file. Defaults to ``$DB_PATH`` or ``data/querybox.db``.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path else _db_path()
        self.init_db()

    @contextmanager
    def _connect(self):
        """Yield a connected sqlite3.Connection, creating the file/dir if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create the kv table if it doesn't exist yet."""
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
        logger.info("Local store initialised at %s", self.path)

    def get(self, key: str) -> Any:
        """Return the stored value for *key*, or ``None`` if absent or corrupt."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()

        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except ValueError as exc:
            logger.warning("Ignoring corrupt value for key=%r: %s", key, exc)
            return None

    def set(self, key: str, value: Any) -> None:
        """Store *value* (JSON-serialisable) under *key*, replacing any old value."""
        now = datetime.now(timezone.utc).isoformat()
        payload = json.dumps(value)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, payload, now),
            )
        logger.debug("Stored key=%r (%d bytes)", key, len(payload))

    def remove(self, key: str) -> bool:
        """Delete *key*. Returns True if a value was removed."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        """Return all stored keys starting with *prefix*, sorted."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (prefix.replace("%", r"\%").replace("_", r"\_") + "%",),
            ).fetchall()
        return [row["key"] for row in rows]
