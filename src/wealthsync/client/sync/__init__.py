"""Offline-first replication of financial records.

Architecture:
    Application → SyncEngine → OperationQueue (durable) → Transport → Server
                      ▲                                        │
                      └──── remote updates / conflicts ◄───────┘

Components:
- **SyncEngine**: Mints versioned operations, flushes the queue, applies
  remote updates and runs the conflict pipeline
- **OperationQueue**: FIFO of pending operations, persisted on every change
- **VectorClockTracker**: Per-entity, per-client confirmed versions
- **FieldMergeAnalyzer**: Field-level merge with confidence scoring
- **WebSocketTransport**: Authenticated connection with acknowledged sends
- **EventBus**: Typed events for the application layer
"""

from wealthsync.client.sync.clock import VectorClockTracker
from wealthsync.client.sync.conflict import (
    ConflictAnalysis,
    ConflictAnalyzer,
    FieldMergeAnalyzer,
    requires_user_intervention,
    timestamp_resolution,
)
from wealthsync.client.sync.engine import SyncEngine, create_engine
from wealthsync.client.sync.events import (
    ConflictAutoResolved,
    ConflictDetected,
    EventBus,
    RemoteChange,
    RemoteMerge,
    StatusChanged,
    SyncEvent,
    SyncEventType,
    SyncFailed,
)
from wealthsync.client.sync.queue import (
    MemoryQueueStore,
    OperationQueue,
    QueueStore,
    SQLiteQueueStore,
)
from wealthsync.client.sync.retry import backoff_delays, retry_with_backoff
from wealthsync.client.sync.scheduler import Scheduler, ThreadScheduler
from wealthsync.client.sync.transport import Transport, WebSocketTransport
from wealthsync.client.sync.types import (
    QueueItem,
    QueueStoreError,
    SendTimeoutError,
    SyncConflict,
    SyncError,
    SyncOperation,
    SyncStatus,
    TransportError,
)

__all__ = [
    # Engine
    "SyncEngine",
    "create_engine",
    # Queue
    "MemoryQueueStore",
    "OperationQueue",
    "QueueStore",
    "SQLiteQueueStore",
    # Versions and conflicts
    "ConflictAnalysis",
    "ConflictAnalyzer",
    "FieldMergeAnalyzer",
    "VectorClockTracker",
    "requires_user_intervention",
    "timestamp_resolution",
    # Events
    "ConflictAutoResolved",
    "ConflictDetected",
    "EventBus",
    "RemoteChange",
    "RemoteMerge",
    "StatusChanged",
    "SyncEvent",
    "SyncEventType",
    "SyncFailed",
    # Transport and timers
    "Scheduler",
    "ThreadScheduler",
    "Transport",
    "WebSocketTransport",
    "backoff_delays",
    "retry_with_backoff",
    # Types
    "QueueItem",
    "QueueStoreError",
    "SendTimeoutError",
    "SyncConflict",
    "SyncError",
    "SyncOperation",
    "SyncStatus",
    "TransportError",
]
