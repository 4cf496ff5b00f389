"""SQLite key/value store for Time Tracker data.

This module is the durable mirror of the tracker's in-memory state. It keeps
one JSON blob per fixed key in a single SQLite table, so a whole snapshot can
be written in one transaction and readers never see one collection updated
without the others.

Stored keys:
    projects: JSON array of project objects
    tasks:    JSON array of task objects
    sessions: JSON array of session objects
    settings: JSON object of user preferences

Key Features:
- Automatic schema initialization
- Context manager for connection handling
- Multi-key writes in a single transaction
- Retry of failed writes before reporting a StorageError
- Reads that degrade to defaults instead of raising

Database Schema:
    kv table:
        - key: Primary key, one of KEYS
        - value: JSON text
        - updated_at: ISO timestamp of the last write

Example:
    >>> store = TrackerStore("/tmp/tracker.db")
    >>> store.save_collections([], [], [])
    >>> store.load_collection("projects")
    []
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)

KEYS = ("projects", "tasks", "sessions", "settings")
COLLECTION_KEYS = ("projects", "tasks", "sessions")

DEFAULT_DATA_DIR = Path.home() / "time-tracker-data"


class TrackerStore:
    """SQLite-backed key/value store for the four tracker keys.

    Attributes:
        db_path (str): Absolute path to the SQLite database file
        write_retries (int): Attempts per write before giving up

    Example:
        >>> store = TrackerStore()
        >>> store.set("settings", '{"darkMode": true}')
        >>> store.load_settings()
        {'darkMode': True}
    """

    def __init__(self, db_path: str = None, write_retries: int = 3):
        """Initialize TrackerStore and make sure the schema exists.

        Args:
            db_path (str, optional): Path to SQLite database file. If None,
                uses ~/time-tracker-data/tracker.db
            write_retries (int): Attempts per write (minimum 1)

        Raises:
            StorageError: If the data directory cannot be created
        """
        if db_path is None:
            db_path = DEFAULT_DATA_DIR / "tracker.db"

        db_path = Path(db_path).expanduser()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {db_path.parent}: {e}") from e

        self.db_path = str(db_path)
        self.write_retries = max(1, write_retries)
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite database connections.

        Yields:
            sqlite3.Connection: Database connection with Row factory enabled

        Raises:
            StorageError: If the database cannot be opened or accessed
        """
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()
        except (sqlite3.Error, PermissionError) as e:
            raise StorageError(f"Database access error for {self.db_path}: {e}") from e

    def init_db(self):
        """Create the kv table if it doesn't exist."""
        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT
                )
            """)
            conn.commit()

    def get(self, key: str) -> Optional[str]:
        """Return the raw blob stored under ``key``, or None.

        Read failures are logged and reported as absent.
        """
        try:
            with self.get_connection() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except StorageError as e:
            logger.warning(f"Failed to read '{key}': {e}")
            return None
        return row["value"] if row else None

    def set(self, key: str, blob: str) -> None:
        """Store a single blob. See ``set_many``."""
        self.set_many({key: blob})

    def set_many(self, blobs: Dict[str, str]) -> None:
        """Write several keys in one transaction.

        Args:
            blobs: Mapping of key to serialized value

        Raises:
            ValueError: If a key is not one of KEYS
            StorageError: If every attempt failed
        """
        unknown = set(blobs) - set(KEYS)
        if unknown:
            raise ValueError(f"Unknown store keys: {sorted(unknown)}")

        updated_at = datetime.now().astimezone().isoformat()
        rows = [(key, blob, updated_at) for key, blob in blobs.items()]

        last_error = None
        for attempt in range(1, self.write_retries + 1):
            try:
                with self.get_connection() as conn:
                    with conn:
                        conn.executemany(
                            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                            rows,
                        )
                return
            except StorageError as e:
                last_error = e
                logger.warning(f"Write attempt {attempt}/{self.write_retries} failed: {e}")
                if attempt < self.write_retries:
                    time.sleep(0.05 * attempt)

        raise StorageError(f"Failed to write {sorted(blobs)}: {last_error}")

    def _load_json(self, key: str, expected: type, default):
        blob = self.get(key)
        if blob is None:
            return default
        try:
            value = json.loads(blob)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed JSON under '{key}', using default: {e}")
            return default
        if not isinstance(value, expected):
            logger.warning(f"Unexpected {type(value).__name__} under '{key}', using default")
            return default
        return value

    def load_collection(self, key: str) -> List[dict]:
        """Load one of the entity collections as decoded JSON.

        Returns:
            The stored list, or [] when absent or malformed.
        """
        if key not in COLLECTION_KEYS:
            raise ValueError(f"Not a collection key: {key}")
        return self._load_json(key, list, [])

    def load_settings(self) -> dict:
        """Load the settings record, or {} when absent or malformed."""
        return self._load_json("settings", dict, {})

    def save_collections(self, projects: List[dict], tasks: List[dict], sessions: List[dict]) -> None:
        """Persist all three collections atomically.

        Raises:
            StorageError: If the write failed after retries
        """
        self.set_many({
            "projects": json.dumps(projects),
            "tasks": json.dumps(tasks),
            "sessions": json.dumps(sessions),
        })

    def save_settings(self, settings: dict) -> None:
        """Persist the settings record.

        Raises:
            StorageError: If the write failed after retries
        """
        self.set("settings", json.dumps(settings))

    def dump(self) -> dict:
        """Return all four keys decoded, with defaults for missing ones."""
        return {
            "projects": self.load_collection("projects"),
            "tasks": self.load_collection("tasks"),
            "sessions": self.load_collection("sessions"),
            "settings": self.load_settings(),
        }
