"""Durable per-identity attribute storage.

The enrichment cache lives in the identity's own multi-valued attributes, so
any store that can read and replace a list of strings per (identity, key) can
back it. Two implementations are provided:

- InMemoryAttributeStore: process-local, for tests and development
- SqliteAttributeStore: SQLite file, thread-local connections, WAL mode
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from restclaim.settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)


class AttributeStoreError(Exception):
    """Raised when the attribute store is unavailable or corrupted."""


class AttributeStore(Protocol):
    """Multi-valued attribute storage keyed by (identity_id, key)."""

    def get_attribute(self, identity_id: str, key: str) -> list[str]:
        """Return the stored values, or an empty list if the key is absent."""
        ...

    def set_attribute(self, identity_id: str, key: str, values: list[str]) -> None:
        """Replace all values of the key."""
        ...


class InMemoryAttributeStore:
    """Thread-safe in-memory attribute store."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], list[str]] = {}
        self._lock = threading.Lock()

    def get_attribute(self, identity_id: str, key: str) -> list[str]:
        with self._lock:
            return list(self._data.get((identity_id, key), []))

    def set_attribute(self, identity_id: str, key: str, values: list[str]) -> None:
        with self._lock:
            self._data[(identity_id, key)] = list(values)

    def attributes_of(self, identity_id: str) -> dict[str, list[str]]:
        """Return a snapshot of every attribute stored for an identity."""
        with self._lock:
            return {
                key: list(values)
                for (owner, key), values in self._data.items()
                if owner == identity_id
            }

    def clear(self) -> None:
        """Remove all attributes."""
        with self._lock:
            self._data.clear()


class SqliteAttributeStore:
    """SQLite-backed attribute store with thread-safe access.

    Creates database and parent directories on first use.
    Uses WAL mode for better concurrent read performance.
    """

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS identity_attributes (
            identity_id TEXT NOT NULL,
            attr_key TEXT NOT NULL,
            attr_values TEXT NOT NULL,
            PRIMARY KEY (identity_id, attr_key)
        )
    """

    _SELECT_SQL = """
        SELECT attr_values FROM identity_attributes
        WHERE identity_id = ? AND attr_key = ?
    """

    _UPSERT_SQL = """
        INSERT OR REPLACE INTO identity_attributes (identity_id, attr_key, attr_values)
        VALUES (?, ?, ?)
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the attribute store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = db_path
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._ensure_database()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(self._db_path, check_same_thread=False)
                self._local.conn = conn
            except sqlite3.Error as e:
                raise AttributeStoreError(f"Failed to connect to attribute store: {e}") from e

        return conn

    def _ensure_database(self) -> None:
        try:
            db_path = Path(self._db_path)
            if db_path.is_dir():
                raise AttributeStoreError(f"Attribute store path is a directory: {self._db_path}")

            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self._db_path)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(self._CREATE_TABLE_SQL)
                conn.commit()
            finally:
                conn.close()

            logger.info("Initialized attribute store at %s", self._db_path)

        except sqlite3.Error as e:
            raise AttributeStoreError(f"Failed to initialize attribute store: {e}") from e
        except OSError as e:
            raise AttributeStoreError(f"Failed to create attribute store directory: {e}") from e

    def get_attribute(self, identity_id: str, key: str) -> list[str]:
        """Look up the values of one attribute.

        Raises:
            AttributeStoreError: If the lookup fails or the row is unreadable.
        """
        try:
            row = self._get_connection().execute(self._SELECT_SQL, (identity_id, key)).fetchone()
        except sqlite3.Error as e:
            raise AttributeStoreError(f"Failed to read attribute: {e}") from e

        if row is None:
            return []
        try:
            values = json.loads(row[0])
        except json.JSONDecodeError as e:
            raise AttributeStoreError(f"Stored attribute {key!r} is not valid JSON") from e
        return [str(v) for v in values] if isinstance(values, list) else []

    def set_attribute(self, identity_id: str, key: str, values: list[str]) -> None:
        """Replace the values of one attribute.

        Raises:
            AttributeStoreError: If storage fails.
        """
        try:
            conn = self._get_connection()
            conn.execute(self._UPSERT_SQL, (identity_id, key, json.dumps(list(values))))
            conn.commit()
        except sqlite3.Error as e:
            raise AttributeStoreError(f"Failed to store attribute: {e}") from e

    def close(self) -> None:
        """Close the thread-local database connection if open."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
            self._local.conn = None


def create_attribute_store(
    db_path: str | None = None, settings: EngineSettings | None = None
) -> SqliteAttributeStore:
    """Factory function to create a SQLite attribute store.

    Args:
        db_path: Path to the SQLite database. If None, the path comes from
            settings.attribute_db_path.
        settings: Engine settings. If None, loaded from the environment.

    Raises:
        EngineSettingsError: If settings are loaded and invalid.
    """
    if db_path is None:
        db_path = (settings or load_engine_settings()).attribute_db_path
    return SqliteAttributeStore(db_path=db_path)
