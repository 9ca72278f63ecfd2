"""
Repository pattern for state persistence.

Each component owns one opaque state blob, addressed by key ("queue",
"budget"). Blobs are read and replaced whole; a reader never observes a
half-written blob.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from .db import get_connection

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "relay_guard.db"
DEFAULT_STATE_DIR = ".relay-guard"


class StateCorruptedError(Exception):
    """Raised when a persisted state blob cannot be decoded."""
    def __init__(self, key: str, reason: str):
        super().__init__(f"State '{key}' is corrupted: {reason}")
        self.key = key


class StateStore:
    """Interface for whole-blob state persistence."""

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored blob for ``key`` or None if never saved."""
        raise NotImplementedError

    def save(self, key: str, state: Dict[str, Any]) -> None:
        """Replace the stored blob for ``key``."""
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    """Non-durable store for tests and dry runs.

    Blobs are round-tripped through JSON so callers get the same types
    back as from the durable stores.
    """

    def __init__(self):
        self._blobs: Dict[str, str] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._blobs.get(key)
        return None if raw is None else json.loads(raw)

    def save(self, key: str, state: Dict[str, Any]) -> None:
        self._blobs[key] = json.dumps(state)


class JsonFileStateStore(StateStore):
    """One JSON file per key, replaced atomically on every save.

    The new content is written to a temporary file in the same directory,
    fsynced, then renamed over the old file with ``os.replace``.
    """

    def __init__(self, directory: str = DEFAULT_STATE_DIR):
        """Initialize the store.

        Args:
            directory: Directory holding the ``<key>.json`` files
        """
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise StateCorruptedError(key, str(e)) from e
        if not isinstance(data, dict):
            raise StateCorruptedError(key, "top-level value is not an object")
        return data

    def save(self, key: str, state: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.directory), prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Saved state '{key}' to {path}")


class SQLiteStateStore(StateStore):
    """State blobs stored as JSON text in a single SQLite table.

    Every save is one upsert inside a transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT body FROM state_blob WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StateCorruptedError(key, str(e)) from e
        if not isinstance(data, dict):
            raise StateCorruptedError(key, "top-level value is not an object")
        return data

    def save(self, key: str, state: Dict[str, Any]) -> None:
        body = json.dumps(state)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                INSERT INTO state_blob (key, body) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET body = excluded.body
            """, (key, body))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.debug(f"Saved state '{key}' to {self.db_path}")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the state_blob table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS state_blob (
                key TEXT PRIMARY KEY,
                body TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def open_store(backend: str, path: Optional[str] = None) -> StateStore:
    """Build the configured state store.

    Args:
        backend: "json", "sqlite" or "memory"
        path: State directory (json) or database file (sqlite)

    Returns:
        A ready-to-use StateStore

    Raises:
        ValueError: If backend is unknown
    """
    if backend == "json":
        return JsonFileStateStore(path or DEFAULT_STATE_DIR)
    if backend == "sqlite":
        return SQLiteStateStore(path or DEFAULT_DB_PATH)
    if backend == "memory":
        return InMemoryStateStore()
    raise ValueError(f"Unsupported storage backend: {backend}")
