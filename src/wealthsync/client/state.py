"""Local state management for the sync client.

This module provides:
- LocalSyncState: SQLite-based key/value store for per-installation state

Stored keys:
    client_id      Stable identifier of this installation
    auth_token     Session token presented in the transport handshake
    last_sync_at   Unix timestamp of the last completed flush pass
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client_id"
AUTH_TOKEN_KEY = "auth_token"
LAST_SYNC_AT_KEY = "last_sync_at"


class LocalSyncState:
    """SQLite-based local state for the sync client."""

    def __init__(self, db_path: Path) -> None:
        """Open (or create) the state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def get_state(self, key: str) -> str | None:
        """Get a raw value, None if unset."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        """Store a raw value, replacing any previous one."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def delete_state(self, key: str) -> None:
        """Remove a sync state value."""
        with self._lock:
            self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))

    def get_or_create_client_id(
        self,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> str:
        """Get the installation's client id, minting it on first use."""
        with self._lock:
            client_id = self.get_state(CLIENT_ID_KEY)
            if client_id is None:
                client_id = id_factory()
                self.set_state(CLIENT_ID_KEY, client_id)
                logger.info("Generated client id %s", client_id)
            return client_id

    def get_auth_token(self) -> str | None:
        """Get the stored session token."""
        return self.get_state(AUTH_TOKEN_KEY)

    def set_auth_token(self, token: str | None) -> None:
        """Store the session token. None removes it."""
        if token is None:
            self.delete_state(AUTH_TOKEN_KEY)
        else:
            self.set_state(AUTH_TOKEN_KEY, token)

    def get_last_sync_at(self) -> float | None:
        """Get the Unix time of the last completed flush pass."""
        value = self.get_state(LAST_SYNC_AT_KEY)
        return float(value) if value else None

    def set_last_sync_at(self, timestamp: float) -> None:
        """Record the Unix time of a completed flush pass."""
        self.set_state(LAST_SYNC_AT_KEY, str(timestamp))
