"""Typed events emitted by the sync engine.

Every event kind has its own payload dataclass, tagged with the
SyncEventType it is published under:

| Event type              | Payload               |
|-------------------------|-----------------------|
| status-changed          | StatusChanged         |
| remote-create/update/   | RemoteChange          |
| remote-delete           |                       |
| remote-merge            | RemoteMerge           |
| conflict-detected       | ConflictDetected      |
| conflict-auto-resolved  | ConflictAutoResolved  |
| sync-failed             | SyncFailed            |

Handlers subscribe per type with EventBus.on(), or to everything with
EventBus.on_any() and dispatch on the payload class.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from wealthsync.core.types import EntityType, OperationType, Resolution

if TYPE_CHECKING:
    from wealthsync.client.sync.conflict import ConflictAnalysis
    from wealthsync.client.sync.types import (
        SyncConflict,
        SyncOperation,
        SyncPayload,
        SyncStatus,
    )

logger = logging.getLogger(__name__)


class SyncEventType(str, Enum):
    """Names of the events published by the engine."""

    STATUS_CHANGED = "status-changed"
    REMOTE_CREATE = "remote-create"
    REMOTE_UPDATE = "remote-update"
    REMOTE_DELETE = "remote-delete"
    REMOTE_MERGE = "remote-merge"
    CONFLICT_DETECTED = "conflict-detected"
    CONFLICT_AUTO_RESOLVED = "conflict-auto-resolved"
    SYNC_FAILED = "sync-failed"

    @classmethod
    def for_operation(cls, operation_type: OperationType) -> SyncEventType:
        """Get the remote-* event type matching an operation type."""
        return {
            OperationType.CREATE: cls.REMOTE_CREATE,
            OperationType.UPDATE: cls.REMOTE_UPDATE,
            OperationType.DELETE: cls.REMOTE_DELETE,
        }[OperationType(operation_type)]


@dataclass(frozen=True)
class StatusChanged:
    status: SyncStatus

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.STATUS_CHANGED


@dataclass(frozen=True)
class RemoteChange:
    """A remote create/update/delete the application should apply."""

    operation_type: OperationType
    entity: EntityType
    entity_id: str
    data: SyncPayload

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.for_operation(self.operation_type)


@dataclass(frozen=True)
class RemoteMerge:
    """Merged data the application should write over its local record."""

    entity: EntityType
    entity_id: str
    data: SyncPayload

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.REMOTE_MERGE


@dataclass(frozen=True)
class ConflictDetected:
    conflict: SyncConflict
    analysis: ConflictAnalysis | None

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.CONFLICT_DETECTED


@dataclass(frozen=True)
class ConflictAutoResolved:
    conflict: SyncConflict
    analysis: ConflictAnalysis
    resolution: Resolution

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.CONFLICT_AUTO_RESOLVED


@dataclass(frozen=True)
class SyncFailed:
    """An operation was dropped after exhausting its retries."""

    operation: SyncOperation
    error: str

    @property
    def event_type(self) -> SyncEventType:
        return SyncEventType.SYNC_FAILED


SyncEvent = Union[
    StatusChanged,
    RemoteChange,
    RemoteMerge,
    ConflictDetected,
    ConflictAutoResolved,
    SyncFailed,
]

EventHandler = Callable[[SyncEvent], None]


class EventBus:
    """In-process publish/subscribe for sync events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[SyncEventType, list[EventHandler]] = defaultdict(list)
        self._any_handlers: list[EventHandler] = []

    def on(self, event_type: SyncEventType | str, handler: EventHandler) -> None:
        """Subscribe a handler to one event type."""
        with self._lock:
            handlers = self._handlers[SyncEventType(event_type)]
            if handler not in handlers:
                handlers.append(handler)

    def off(self, event_type: SyncEventType | str, handler: EventHandler) -> None:
        """Unsubscribe a handler. Unknown handlers are ignored."""
        with self._lock:
            handlers = self._handlers.get(SyncEventType(event_type), [])
            if handler in handlers:
                handlers.remove(handler)

    def on_any(self, handler: EventHandler) -> None:
        """Subscribe a handler to every event type."""
        with self._lock:
            if handler not in self._any_handlers:
                self._any_handlers.append(handler)

    def off_any(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._any_handlers:
                self._any_handlers.remove(handler)

    def emit(self, event: SyncEvent) -> None:
        """Deliver an event to its subscribers.

        Handler exceptions are logged and never reach the emitter.
        """
        with self._lock:
            handlers = [*self._handlers.get(event.event_type, []), *self._any_handlers]
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Sync event handler failed for %s: %s", event.event_type.value, e)
                logger.debug("Full traceback:", exc_info=True)
