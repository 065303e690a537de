"""Durable operation queue for the sync engine.

This module provides:
- QueueStore: Protocol for loading/saving the pending operations
- SQLiteQueueStore: SQLite-backed store (survives restarts)
- MemoryQueueStore: Store keeping serialized JSON in memory
- OperationQueue: Thread-safe FIFO that persists on every mutation

The queue is the only durable record of operations not yet confirmed by
the server. Every mutation (append, remove, retry bump, requeue, clear)
saves the whole queue before returning, so a reload never loses or
duplicates operations.

Loading is defensive: rows that do not decode into a valid operation are
skipped, and a store that cannot be read at all yields an empty queue.
Both cases are logged, neither raises.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from wealthsync.client.sync.retry import retry_with_backoff
from wealthsync.client.sync.types import QueueItem, QueueStoreError
from wealthsync.core.config import BackoffPolicy

if TYPE_CHECKING:
    from collections.abc import Iterator

    from wealthsync.client.sync.types import SyncOperation

logger = logging.getLogger(__name__)

LOCKED_RETRY_POLICY = BackoffPolicy(max_attempts=3, base_delay=0.05, max_delay=0.5)


class QueueStore(Protocol):
    """Protocol for durable queue persistence."""

    def load(self) -> list[QueueItem]:
        """Load persisted items in queue order. Must not raise."""
        ...

    def save(self, items: list[QueueItem]) -> None:
        """Replace the persisted queue with the given items."""
        ...


def decode_items(raw_items: list[object]) -> list[QueueItem]:
    """Decode raw item dicts, skipping the ones that are malformed."""
    items: list[QueueItem] = []
    for raw in raw_items:
        try:
            items.append(QueueItem.from_dict(raw))
        except ValueError as e:
            logger.error("Skipping malformed queue item: %s", e)
    return items


class MemoryQueueStore:
    """Queue store holding the serialized queue as JSON text.

    Goes through the same encode/decode path as a real store, which
    makes it suitable for local-only mode and for simulating reloads.
    """

    def __init__(self, text: str | None = None) -> None:
        self.text = text

    def load(self) -> list[QueueItem]:
        if not self.text:
            return []
        try:
            raw = json.loads(self.text)
        except json.JSONDecodeError as e:
            logger.error("Failed to load sync queue: %s", e)
            return []
        if not isinstance(raw, list):
            logger.error("Failed to load sync queue: expected a list")
            return []
        return decode_items(raw)

    def save(self, items: list[QueueItem]) -> None:
        self.text = json.dumps([item.to_dict() for item in items])


class SQLiteQueueStore:
    """SQLite-backed queue store.

    Each save rewrites the table inside a single transaction, so the
    persisted queue is always one complete snapshot.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database (created if missing)
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._db: sqlite3.Connection | None = None

        try:
            self._init_db()
        except sqlite3.Error as e:
            logger.error("Failed to open sync queue database %s: %s", self.db_path, e)
            self._db = None

    def _init_db(self) -> None:
        """Open the database and create the queue table."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                position INTEGER PRIMARY KEY,
                operation_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL
            )
        """)
        self._db.commit()
        logger.debug("Initialized sync queue persistence at %s", self.db_path)

    def load(self) -> list[QueueItem]:
        with self._lock:
            if not self._db:
                return []
            try:
                rows = self._db.execute(
                    "SELECT payload, retry_count, max_retries FROM sync_queue "
                    "ORDER BY position"
                ).fetchall()
            except sqlite3.Error as e:
                logger.error("Failed to load sync queue: %s", e)
                return []

        raw_items: list[object] = []
        for payload, retry_count, max_retries in rows:
            try:
                operation = json.loads(payload)
            except (TypeError, json.JSONDecodeError) as e:
                logger.error("Skipping unreadable queue row: %s", e)
                continue
            raw_items.append(
                {
                    "operation": operation,
                    "retryCount": retry_count,
                    "maxRetries": max_retries,
                }
            )

        items = decode_items(raw_items)
        if items:
            logger.info("Loaded %d pending operations from persistence", len(items))
        return items

    def save(self, items: list[QueueItem]) -> None:
        with self._lock:
            if not self._db:
                raise QueueStoreError(f"Sync queue database {self.db_path} is not open")
            rows = [
                (
                    position,
                    item.operation.id,
                    json.dumps(item.operation.to_dict()),
                    item.retry_count,
                    item.max_retries,
                )
                for position, item in enumerate(items)
            ]
            db = self._db

            def write() -> None:
                with db:
                    db.execute("DELETE FROM sync_queue")
                    db.executemany(
                        """
                        INSERT INTO sync_queue
                        (position, operation_id, payload, retry_count, max_retries)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        rows,
                    )

            try:
                # Another process (e.g. the CLI) may hold the write lock briefly
                retry_with_backoff(
                    write,
                    LOCKED_RETRY_POLICY,
                    retryable_exceptions=(sqlite3.OperationalError,),
                )
            except sqlite3.Error as e:
                raise QueueStoreError(f"Failed to save sync queue: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._db:
                self._db.close()
                self._db = None


class OperationQueue:
    """Thread-safe FIFO of pending operations backed by a QueueStore.

    Usage:
        queue = OperationQueue(SQLiteQueueStore(path))
        queue.append(QueueItem(operation))
        for item in queue.batch(10):
            ...
        queue.remove(operation.id)
    """

    def __init__(self, store: QueueStore) -> None:
        """Initialize the queue, loading whatever the store holds.

        Args:
            store: Persistence backend
        """
        self._store = store
        self._lock = threading.RLock()
        self._items: list[QueueItem] = store.load()

    def _persist(self) -> None:
        """Save the current queue to the store."""
        try:
            self._store.save(list(self._items))
        except QueueStoreError as e:
            logger.error("Failed to save sync queue: %s", e)

    def append(self, item: QueueItem) -> None:
        """Add an item at the back of the queue."""
        with self._lock:
            self._items.append(item)
            self._persist()
            logger.debug("Queued %r (queue size: %d)", item.operation, len(self._items))

    def get(self, operation_id: str) -> QueueItem | None:
        """Get a pending item by operation id."""
        with self._lock:
            for item in self._items:
                if item.operation.id == operation_id:
                    return item
            return None

    def remove(self, operation_id: str) -> QueueItem | None:
        """Remove an item by operation id.

        Returns:
            The removed item, or None if it was not queued
        """
        with self._lock:
            for index, item in enumerate(self._items):
                if item.operation.id == operation_id:
                    del self._items[index]
                    self._persist()
                    logger.debug(
                        "Dequeued %r (queue size: %d)", item.operation, len(self._items)
                    )
                    return item
            return None

    def bump_retry(self, operation_id: str) -> QueueItem | None:
        """Record a failed send and move the item to the back.

        Returns:
            The updated item, or None if it was not queued
        """
        with self._lock:
            for index, item in enumerate(self._items):
                if item.operation.id == operation_id:
                    del self._items[index]
                    item.retry_count += 1
                    self._items.append(item)
                    self._persist()
                    return item
            return None

    def requeue(self, operation_id: str, version: int | None = None) -> bool:
        """Move an item to the back without touching its retry count.

        Args:
            operation_id: Id of the queued operation
            version: If given, re-stamp the operation with this version
        """
        with self._lock:
            for index, item in enumerate(self._items):
                if item.operation.id == operation_id:
                    del self._items[index]
                    if version is not None:
                        item.operation = item.operation.with_version(version)
                    self._items.append(item)
                    self._persist()
                    return True
            return False

    def batch(self, size: int) -> list[QueueItem]:
        """Get up to `size` items from the front without removing them."""
        with self._lock:
            return list(self._items[:size])

    def find_latest(self, entity_id: str) -> SyncOperation | None:
        """Get the most recently queued operation for an entity."""
        with self._lock:
            for item in reversed(self._items):
                if item.operation.entity_id == entity_id:
                    return item.operation
            return None

    def latest_version(self, entity_id: str) -> int | None:
        """Get the highest version queued for an entity."""
        with self._lock:
            versions = [
                item.operation.version
                for item in self._items
                if item.operation.entity_id == entity_id
            ]
            return max(versions) if versions else None

    def clear(self) -> int:
        """Remove all items.

        Returns:
            Number of items removed
        """
        with self._lock:
            count = len(self._items)
            self._items.clear()
            self._persist()
            logger.info("Cleared %d operations from sync queue", count)
            return count

    def snapshot(self) -> list[QueueItem]:
        """Copy of the queued items in order."""
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[QueueItem]:
        """Iterate over a snapshot (does not remove items)."""
        return iter(self.snapshot())

    def __bool__(self) -> bool:
        with self._lock:
            return bool(self._items)
