"""SQLite key-value store for small state records that must survive restarts."""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any


class StateStore:
    """Persists JSON documents by name in ``<data_dir>/state.db``."""

    def __init__(self, data_dir: Path):
        """Initialize state store with database in given directory.

        Args:
            data_dir: Directory containing the state database
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "state.db"
        self._lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def _init_db(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def get(self, name: str) -> dict[str, Any] | None:
        """Return the stored document, or None if absent.

        Raises:
            ValueError: If the stored value is not valid JSON
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT value FROM state WHERE name = ?", (name,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt state record {name}: {e}") from e

    def set(self, name: str, value: dict[str, Any]) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO state (name, value, updated_at) VALUES (?, ?, ?)",
                    (name, json.dumps(value), time.time()),
                )
                conn.commit()
            finally:
                conn.close()

    def delete(self, name: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM state WHERE name = ?", (name,))
                conn.commit()
            finally:
                conn.close()
