"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, TransportError, SendTimeoutError, QueueStoreError: Exceptions
- SyncOperation: One replayable create/update/delete intent
- QueueItem: A queued operation with delivery bookkeeping
- SyncConflict: A local/remote operation pair for the same entity
- SyncStatus: Observable engine status snapshot
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from wealthsync.core.types import EntityType, OperationType, Resolution

if TYPE_CHECKING:
    from wealthsync.client.sync.conflict import ConflictAnalysis

DEFAULT_MAX_RETRIES = 3

# Opaque entity payload as produced by the application layer
SyncPayload = dict[str, Any]


class SyncError(Exception):
    """Base exception for sync errors."""


class TransportError(SyncError):
    """Sending over the transport failed."""


class SendTimeoutError(TransportError):
    """No acknowledgement arrived within the send timeout."""


class QueueStoreError(SyncError):
    """The local queue store could not be read or written."""


@dataclass(frozen=True)
class SyncOperation:
    """An atomic, replayable intent to mutate one entity.

    Attributes:
        id: Client-generated unique identifier
        type: CREATE, UPDATE or DELETE
        entity: Domain kind of the record
        entity_id: Identifier of the record, stable across devices
        data: Field set of the entity at mutation time
        timestamp: Client wall clock in milliseconds (tie-break only)
        client_id: Installation that minted the operation
        version: Per-entity version assigned at mint time
    """

    id: str
    type: OperationType
    entity: EntityType
    entity_id: str
    data: SyncPayload
    timestamp: int
    client_id: str
    version: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/storage representation."""
        return {
            "id": self.id,
            "type": self.type.value,
            "entity": self.entity.value,
            "entityId": self.entity_id,
            "data": copy.deepcopy(self.data),
            "timestamp": self.timestamp,
            "clientId": self.client_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> SyncOperation:
        """Parse the wire/storage representation.

        Raises:
            ValueError: If a field is missing or has an invalid value.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Operation must be an object, got {type(raw).__name__}")
        try:
            data = raw.get("data") or {}
            if not isinstance(data, dict):
                raise ValueError("Operation data must be an object")
            return cls(
                id=str(raw["id"]),
                type=OperationType(raw["type"]),
                entity=EntityType(raw["entity"]),
                entity_id=str(raw["entityId"]),
                data=data,
                timestamp=int(raw["timestamp"]),
                client_id=str(raw["clientId"]),
                version=int(raw["version"]),
            )
        except KeyError as e:
            raise ValueError(f"Operation is missing field {e.args[0]!r}") from e
        except TypeError as e:
            raise ValueError(f"Invalid operation: {e}") from e

    def with_version(self, version: int) -> SyncOperation:
        """Copy of this operation stamped with another version."""
        return replace(self, version=version)

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"SyncOperation({self.type.value} {self.entity.value}/{self.entity_id}, "
            f"v{self.version}, id={self.id!r})"
        )


@dataclass
class QueueItem:
    """A queued operation plus its delivery bookkeeping."""

    operation: SyncOperation
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    @property
    def exhausted(self) -> bool:
        """True once the item failed more often than it may be retried."""
        return self.retry_count > self.max_retries

    def to_dict(self) -> dict[str, Any]:
        """Convert to the storage representation."""
        return {
            "operation": self.operation.to_dict(),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> QueueItem:
        """Parse the storage representation.

        Raises:
            ValueError: If the item is malformed.
        """
        if not isinstance(raw, dict) or "operation" not in raw:
            raise ValueError("Queue item must be an object with an operation")
        operation = SyncOperation.from_dict(raw["operation"])
        try:
            retry_count = int(raw.get("retryCount", 0))
            max_retries = int(raw.get("maxRetries", DEFAULT_MAX_RETRIES))
        except TypeError as e:
            raise ValueError(f"Invalid retry bookkeeping: {e}") from e
        return cls(operation=operation, retry_count=retry_count, max_retries=max_retries)


@dataclass
class SyncConflict:
    """Competing local and remote operations for the same entity.

    Attributes:
        id: Conflict identifier
        local_operation: What this client holds for the entity
        remote_operation: What arrived from the server
        resolution: Final (or provisional) resolution
        merged_data: Payload used for a merge resolution
        analysis: Analyzer output, if an analyzer was available
        applied_resolution: Resolution already applied as a default while
            the conflict is still waiting for the user
    """

    id: str
    local_operation: SyncOperation
    remote_operation: SyncOperation
    resolution: Resolution | None = None
    merged_data: SyncPayload | None = None
    analysis: ConflictAnalysis | None = None
    applied_resolution: Resolution | None = None

    @property
    def entity(self) -> EntityType:
        return self.remote_operation.entity

    @property
    def entity_id(self) -> str:
        return self.remote_operation.entity_id

    @classmethod
    def from_dict(cls, raw: Any) -> SyncConflict:
        """Parse a server-pushed conflict.

        Raises:
            ValueError: If the conflict is malformed.
        """
        if not isinstance(raw, dict):
            raise ValueError("Conflict must be an object")
        try:
            return cls(
                id=str(raw["id"]),
                local_operation=SyncOperation.from_dict(raw["localOperation"]),
                remote_operation=SyncOperation.from_dict(raw["remoteOperation"]),
            )
        except KeyError as e:
            raise ValueError(f"Conflict is missing field {e.args[0]!r}") from e


@dataclass
class SyncStatus:
    """Observable, derived status of the sync engine."""

    is_connected: bool = False
    is_syncing: bool = False
    last_sync_time: datetime | None = None
    pending_operations: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    error: str | None = None

    def copy(self) -> SyncStatus:
        """Snapshot that does not share the conflicts list."""
        return replace(self, conflicts=list(self.conflicts))
