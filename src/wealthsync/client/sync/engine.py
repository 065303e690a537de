"""Sync engine coordinating offline-first replication.

This module provides:
- SyncEngine: Owns the durable queue, the version clocks and the conflict
  pipeline, and drives the transport
- create_engine: Wires an engine from a config and a state directory

Flow:
    queue_operation() ──► OperationQueue (persisted) ──► process_sync_queue()
                                                              │ send + ack
                                                              ▼
    events ◄── handle_remote_update() ◄── on_message ◄── Transport

Conflict pipeline (remote operation not newer than what we know):

| Analysis                                  | Outcome                          |
|-------------------------------------------|----------------------------------|
| auto-resolvable, no intervention, merged  | remote-merge, auto-resolved      |
| anything else                             | pending, conflict-detected,      |
|                                           | suggestion pre-applied if sure   |
| none (no analyzer or analyzer failed)     | conflict-detected, then resolved |
|                                           | by timestamp                     |

Nothing raises out of the engine once an operation is queued: transport
failures become retry bookkeeping, status errors or sync-failed events.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wealthsync.client.state import LocalSyncState
from wealthsync.client.sync.clock import VectorClockTracker
from wealthsync.client.sync.conflict import (
    FieldMergeAnalyzer,
    delete_conflict_analysis,
    is_delete_conflict,
    requires_user_intervention,
    timestamp_resolution,
)
from wealthsync.client.sync.events import (
    ConflictAutoResolved,
    ConflictDetected,
    EventBus,
    RemoteChange,
    RemoteMerge,
    StatusChanged,
    SyncEventType,
    SyncFailed,
)
from wealthsync.client.sync.queue import OperationQueue, SQLiteQueueStore
from wealthsync.client.sync.scheduler import ThreadScheduler
from wealthsync.client.sync.transport import GIVE_UP_MESSAGE, WebSocketTransport
from wealthsync.client.sync.types import (
    QueueItem,
    SyncConflict,
    SyncOperation,
    SyncStatus,
)
from wealthsync.core.types import EntityType, OperationType, Resolution

if TYPE_CHECKING:
    from wealthsync.client.sync.conflict import ConflictAnalysis, ConflictAnalyzer
    from wealthsync.client.sync.events import EventHandler
    from wealthsync.client.sync.queue import QueueStore
    from wealthsync.client.sync.scheduler import Handle, Scheduler
    from wealthsync.client.sync.transport import Transport
    from wealthsync.client.sync.types import SyncPayload
    from wealthsync.core.config import SyncConfig

logger = logging.getLogger(__name__)

# (client_id, token_provider) -> Transport
TransportFactory = Callable[[str, Callable[[], "str | None"]], "Transport"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _no_token() -> str | None:
    return None


class SyncEngine:
    """Offline-first sync engine.

    Usage:
        engine = create_engine(SyncConfig.from_env(), state_dir)
        engine.on(SyncEventType.REMOTE_UPDATE, apply_to_local_db)
        engine.connect()

        engine.queue_operation("UPDATE", "transaction", "tx-1", {"amount": 10})

        engine.dispose()
    """

    def __init__(
        self,
        store: QueueStore,
        config: SyncConfig,
        client_id: str,
        transport_factory: TransportFactory | None = None,
        analyzer: ConflictAnalyzer | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _new_id,
        token_provider: Callable[[], str | None] = _no_token,
        state: LocalSyncState | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Persistence for the pending operation queue.
            config: Engine configuration.
            client_id: Stable identifier of this installation.
            transport_factory: Builds the transport on connect(). None, or a
                config without sync_url, selects local-only mode.
            analyzer: Conflict analyzer. None resolves every conflict by
                timestamp.
            scheduler: Timer source. Defaults to a ThreadScheduler.
            clock: Wall clock in seconds.
            id_factory: Generates operation and conflict ids.
            token_provider: Returns the auth token for the handshake.
            state: Local state; receives the last sync time when given.
        """
        self._config = config
        self._client_id = client_id
        self._transport_factory = transport_factory
        self._analyzer = analyzer
        self._owns_scheduler = scheduler is None
        self._scheduler: Scheduler = scheduler or ThreadScheduler()
        self._clock = clock
        self._id_factory = id_factory
        self._token_provider = token_provider
        self._state = state
        self._store = store

        self._lock = threading.RLock()
        self._queue = OperationQueue(store)
        self._versions = VectorClockTracker()
        self._events = EventBus()
        self._conflicts: dict[str, SyncConflict] = {}
        self._status = SyncStatus(pending_operations=len(self._queue))

        self._transport: Transport | None = None
        self._interval_handle: Handle | None = None
        self._flush_handle: Handle | None = None

        if state is not None:
            last_sync_at = state.get_last_sync_at()
            if last_sync_at is not None:
                self._status.last_sync_time = datetime.fromtimestamp(last_sync_at)

        if self.local_only:
            logger.info("No sync server configured, running in local-only mode")

    # === Properties ===

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def local_only(self) -> bool:
        """True when no transport will ever be created."""
        return self._config.offline or self._transport_factory is None

    @property
    def vector_clock(self) -> VectorClockTracker:
        return self._versions

    # === Events ===

    def on(self, event_type: SyncEventType | str, handler: EventHandler) -> None:
        """Subscribe to one event type."""
        self._events.on(event_type, handler)

    def off(self, event_type: SyncEventType | str, handler: EventHandler) -> None:
        """Unsubscribe from one event type."""
        self._events.off(event_type, handler)

    def on_any(self, handler: EventHandler) -> None:
        """Subscribe to every event type."""
        self._events.on_any(handler)

    def off_any(self, handler: EventHandler) -> None:
        self._events.off_any(handler)

    # === Status ===

    def get_status(self) -> SyncStatus:
        """Get a snapshot of the engine status."""
        with self._lock:
            status = self._status.copy()
            status.pending_operations = len(self._queue)
            status.conflicts = list(self._conflicts.values())
            return status

    def get_conflicts(self) -> list[SyncConflict]:
        """Get the conflicts waiting for a resolution."""
        with self._lock:
            return list(self._conflicts.values())

    def get_pending_operations(self) -> list[SyncOperation]:
        """Get the queued operations in send order."""
        return [item.operation for item in self._queue.snapshot()]

    def _emit_status(self) -> None:
        self._events.emit(StatusChanged(self.get_status()))

    # === Local operations ===

    def queue_operation(
        self,
        type: OperationType | str,
        entity: EntityType | str,
        entity_id: str,
        data: SyncPayload | None = None,
    ) -> SyncOperation:
        """Record a local mutation for replication.

        Args:
            type: CREATE, UPDATE or DELETE.
            entity: Entity kind.
            entity_id: Identifier of the record.
            data: Field set of the record after the mutation.

        Returns:
            The minted operation, already persisted in the queue.

        Raises:
            ValueError: If type or entity is not a known value.
        """
        op_type = OperationType(type)
        entity_type = EntityType(entity)
        if not entity_id:
            raise ValueError("entity_id must not be empty")

        with self._lock:
            pending_version = self._queue.latest_version(entity_id) or 0
            version = max(self._versions.get_next_version(entity_id), pending_version + 1)
            operation = SyncOperation(
                id=self._id_factory(),
                type=op_type,
                entity=entity_type,
                entity_id=entity_id,
                data=copy.deepcopy(dict(data or {})),
                timestamp=int(self._clock() * 1000),
                client_id=self._client_id,
                version=version,
            )
            self._queue.append(QueueItem(operation, max_retries=self._config.max_retries))

        logger.debug("Queued %r", operation)
        self._emit_status()
        if self._can_flush():
            self._schedule_flush()
        return operation

    def clear_queue(self) -> int:
        """Drop every pending operation.

        Returns:
            Number of operations dropped
        """
        count = self._queue.clear()
        self._emit_status()
        return count

    # === Flushing ===

    def _can_flush(self) -> bool:
        with self._lock:
            return (
                self._transport is not None
                and self._status.is_connected
                and not self._status.is_syncing
            )

    def _schedule_flush(self) -> None:
        """Schedule a flush pass on the scheduler, at most one at a time."""
        with self._lock:
            if self._flush_handle is not None:
                return
            self._flush_handle = self._scheduler.call_later(0, self._run_scheduled_flush)

    def _run_scheduled_flush(self) -> None:
        with self._lock:
            self._flush_handle = None
        self.process_sync_queue()

    def _on_interval(self) -> None:
        if self._queue and self._can_flush():
            self.process_sync_queue()

    def force_sync(self) -> None:
        """Run a flush pass now, in the calling thread."""
        if not self._can_flush():
            logger.info("Not connected to sync server, sync skipped")
            return
        self.process_sync_queue()

    def process_sync_queue(self) -> None:
        """Send the next batch of pending operations.

        Does nothing when disconnected, when the queue is empty or when a
        pass is already running.
        """
        with self._lock:
            transport = self._transport
            if (
                transport is None
                or not self._status.is_connected
                or self._status.is_syncing
                or not self._queue
            ):
                return
            self._status.is_syncing = True

        self._emit_status()
        failures = 0
        sent = 0
        try:
            for item in self._queue.batch(self._config.batch_size):
                if not transport.connected:
                    logger.info("Connection lost, stopping sync pass")
                    break
                # May have been acknowledged by a server push meanwhile
                if self._queue.get(item.operation.id) is None:
                    continue
                try:
                    transport.send(item.operation.to_dict(), timeout=self._config.send_timeout)
                except Exception as e:
                    failures += 1
                    self._record_failure(item.operation, e)
                    continue
                sent += 1
                self._acknowledge(item.operation)
        finally:
            now = self._clock()
            with self._lock:
                self._status.is_syncing = False
                self._status.last_sync_time = datetime.fromtimestamp(now)
            if self._state is not None:
                self._state.set_last_sync_at(now)

        logger.debug("Sync pass finished: %d sent, %d failed", sent, failures)
        self._emit_status()

        if failures == 0 and self._queue and self._can_flush():
            self._schedule_flush()

    def _acknowledge(self, operation: SyncOperation) -> None:
        """Dequeue an operation the server accepted and advance our clock."""
        with self._lock:
            removed = self._queue.remove(operation.id)
            if removed is None:
                return
            self._versions.update(operation.entity_id, self._client_id, operation.version)
        logger.debug("Synced %r", operation)
        self._emit_status()

    def _record_failure(self, operation: SyncOperation, error: Exception) -> None:
        """Count a failed send; drop the operation once out of retries."""
        with self._lock:
            item = self._queue.bump_retry(operation.id)
            if item is None:
                return
            if item.exhausted:
                self._queue.remove(operation.id)

        if not item.exhausted:
            logger.warning(
                "Failed to sync %r (attempt %d/%d): %s",
                operation,
                item.retry_count,
                item.max_retries + 1,
                error,
            )
            return

        logger.error(
            "Giving up on %r after %d attempts: %s", operation, item.retry_count, error
        )
        self._events.emit(SyncFailed(operation=operation, error=str(error)))
        self._emit_status()

    # === Remote operations ===

    def handle_remote_update(self, operation: SyncOperation) -> None:
        """Apply an operation pushed by the server.

        A remote operation whose version is not newer than the local one is
        a conflict; otherwise it is handed to the application.
        """
        conflict: SyncConflict | None = None
        with self._lock:
            local_version = self._versions.get_version(operation.entity_id)
            if local_version is not None and local_version >= operation.version:
                local_operation = self._queue.find_latest(
                    operation.entity_id
                ) or operation.with_version(local_version)
                conflict = SyncConflict(
                    id=self._id_factory(),
                    local_operation=local_operation,
                    remote_operation=operation,
                )
            else:
                self._versions.update(operation.entity_id, operation.client_id, operation.version)

        if conflict is not None:
            logger.info(
                "Conflict on %s/%s: remote v%d, local v%d",
                operation.entity.value,
                operation.entity_id,
                operation.version,
                local_version,
            )
            self._handle_conflict(conflict)
            return

        logger.debug("Applying remote %r", operation)
        self._emit_remote_change(operation)

    def _emit_remote_change(self, operation: SyncOperation) -> None:
        self._events.emit(
            RemoteChange(
                operation_type=operation.type,
                entity=operation.entity,
                entity_id=operation.entity_id,
                data=copy.deepcopy(operation.data),
            )
        )

    def _analyze(self, conflict: SyncConflict) -> ConflictAnalysis | None:
        """Run the analyzer; failures count as no analysis."""
        if self._analyzer is None:
            return None
        local = conflict.local_operation
        remote = conflict.remote_operation
        if is_delete_conflict(local, remote):
            return delete_conflict_analysis()
        try:
            return self._analyzer.analyze(
                remote.entity, local.data, remote.data, local.timestamp, remote.timestamp
            )
        except Exception as e:
            logger.error("Conflict analysis failed for %s: %s", conflict.id, e)
            logger.debug("Full traceback:", exc_info=True)
            return None

    def _handle_conflict(self, conflict: SyncConflict) -> None:
        analysis = self._analyze(conflict)
        conflict.analysis = analysis

        if (
            analysis is not None
            and analysis.can_auto_resolve
            and not requires_user_intervention(analysis)
            and analysis.merged_data is not None
        ):
            conflict.resolution = Resolution.MERGE
            conflict.merged_data = analysis.merged_data
            self._apply_merge(conflict, analysis.merged_data)
            logger.info(
                "Auto-resolved conflict on %s/%s (confidence %d)",
                conflict.entity.value,
                conflict.entity_id,
                analysis.confidence,
            )
            self._events.emit(
                ConflictAutoResolved(
                    conflict=conflict, analysis=analysis, resolution=Resolution.MERGE
                )
            )
            return

        with self._lock:
            self._conflicts[conflict.id] = conflict
        self._emit_status()
        self._events.emit(ConflictDetected(conflict=conflict, analysis=analysis))

        if analysis is None:
            self.resolve_conflict(
                conflict.id,
                timestamp_resolution(conflict.local_operation, conflict.remote_operation),
            )
            return

        suggestion = analysis.suggested_resolution.to_resolution()
        if suggestion is None or analysis.confidence < self._config.policy.pre_apply_confidence:
            return
        if suggestion == Resolution.MERGE and analysis.merged_data is None:
            return

        self._apply_resolution(conflict, suggestion, analysis.merged_data)
        with self._lock:
            conflict.applied_resolution = suggestion
            if suggestion == Resolution.MERGE:
                conflict.merged_data = analysis.merged_data
        logger.info(
            "Applied suggested %s resolution for conflict %s, awaiting confirmation",
            suggestion.value,
            conflict.id,
        )

    def handle_remote_conflict(self, conflict: SyncConflict) -> None:
        """Run a conflict reported by the server through the pipeline."""
        logger.info("Server reported conflict %s on %s", conflict.id, conflict.entity_id)
        self._handle_conflict(conflict)

    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        merged_data: SyncPayload | None = None,
    ) -> bool:
        """Settle a pending conflict.

        Args:
            conflict_id: Id of the pending conflict.
            resolution: local, remote or merge.
            merged_data: Payload to apply for a merge.

        Returns:
            True if the conflict was resolved, False if it is unknown or a
            merge was requested without data.
        """
        resolution = Resolution(resolution)
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                logger.warning("Cannot resolve unknown conflict %s", conflict_id)
                return False
            already_applied = conflict.applied_resolution == resolution
            if resolution == Resolution.MERGE and not already_applied and merged_data is None:
                logger.warning("Merge resolution for conflict %s needs merged data", conflict_id)
                return False
            del self._conflicts[conflict_id]
            conflict.resolution = resolution
            if merged_data is not None:
                conflict.merged_data = merged_data

        if not already_applied:
            self._apply_resolution(conflict, resolution, merged_data)
        logger.info("Resolved conflict %s with %s", conflict_id, resolution.value)
        self._emit_status()
        return True

    def _apply_resolution(
        self,
        conflict: SyncConflict,
        resolution: Resolution,
        merged_data: SyncPayload | None,
    ) -> None:
        if resolution == Resolution.LOCAL:
            self._requeue_local(conflict)
        elif resolution == Resolution.REMOTE:
            remote = conflict.remote_operation
            self._discard_local(conflict)
            self._versions.update(remote.entity_id, remote.client_id, remote.version)
            self._emit_remote_change(remote)
        elif merged_data is not None:
            self._apply_merge(conflict, merged_data)

    def _requeue_local(self, conflict: SyncConflict) -> None:
        """Send the local side again, stamped above the remote version."""
        local = conflict.local_operation
        with self._lock:
            if self._queue.get(local.id) is None:
                requeued = False
            else:
                version = max(
                    local.version,
                    conflict.remote_operation.version + 1,
                    self._versions.get_next_version(local.entity_id),
                )
                requeued = self._queue.requeue(local.id, version)
        if not requeued:
            self.queue_operation(local.type, local.entity, local.entity_id, local.data)
            return
        logger.debug("Requeued %r to win conflict %s", local, conflict.id)
        if self._can_flush():
            self._schedule_flush()

    def _discard_local(self, conflict: SyncConflict) -> None:
        """Drop the queued local side so a flush cannot overwrite the resolution."""
        if self._queue.remove(conflict.local_operation.id) is not None:
            logger.debug("Discarded %r for conflict %s", conflict.local_operation, conflict.id)

    def _apply_merge(self, conflict: SyncConflict, merged_data: SyncPayload) -> None:
        local = conflict.local_operation
        remote = conflict.remote_operation
        self._discard_local(conflict)
        self._versions.update(
            remote.entity_id, remote.client_id, max(local.version, remote.version) + 1
        )
        self._events.emit(
            RemoteMerge(
                entity=remote.entity,
                entity_id=remote.entity_id,
                data=copy.deepcopy(merged_data),
            )
        )

    # === Transport ===

    def connect(self) -> None:
        """Start the transport and the periodic flush."""
        if self.local_only:
            logger.debug("connect() ignored in local-only mode")
            return
        with self._lock:
            if self._transport is not None:
                return
            assert self._transport_factory is not None
            transport = self._transport_factory(self._client_id, self._token_provider)
            transport.set_handlers(
                on_connected=self._on_connected,
                on_disconnected=self._on_disconnected,
                on_message=self._on_message,
                on_error=self._on_error,
                on_give_up=self._on_give_up,
            )
            self._transport = transport
            self._interval_handle = self._scheduler.call_every(
                self._config.sync_interval, self._on_interval
            )
        transport.start()

    def disconnect(self) -> None:
        """Stop the transport; the queue keeps accruing."""
        with self._lock:
            transport = self._transport
            self._transport = None
            if self._interval_handle is not None:
                self._interval_handle.cancel()
                self._interval_handle = None
            if self._flush_handle is not None:
                self._flush_handle.cancel()
                self._flush_handle = None
            self._status.is_connected = False
        if transport is not None:
            transport.stop()
            self._emit_status()

    def dispose(self) -> None:
        """Tear the engine down and release what it owns."""
        self.disconnect()
        if self._owns_scheduler and isinstance(self._scheduler, ThreadScheduler):
            self._scheduler.shutdown()
        if isinstance(self._store, SQLiteQueueStore):
            self._store.close()
        if self._state is not None:
            self._state.close()

    def _on_connected(self) -> None:
        with self._lock:
            self._status.is_connected = True
            self._status.error = None
        logger.info("Connected to sync server")
        self._emit_status()
        self._schedule_flush()

    def _on_disconnected(self) -> None:
        with self._lock:
            self._status.is_connected = False
        logger.info("Disconnected from sync server")
        self._emit_status()

    def _on_error(self, error: str) -> None:
        with self._lock:
            self._status.error = error
        self._emit_status()

    def _on_give_up(self, reason: str) -> None:
        with self._lock:
            self._status.is_connected = False
            self._status.error = reason or GIVE_UP_MESSAGE
        logger.warning("%s, pending operations stay queued", self._status.error)
        self._emit_status()

    def _on_message(self, msg_type: str, message: dict[str, Any]) -> None:
        """Dispatch a server push."""
        if msg_type == "sync-update":
            try:
                operation = SyncOperation.from_dict(message.get("operation"))
            except ValueError as e:
                logger.warning("Ignoring malformed sync-update: %s", e)
                return
            self.handle_remote_update(operation)

        elif msg_type == "sync-ack":
            operation_id = message.get("operation_id")
            item = self._queue.get(str(operation_id)) if operation_id else None
            if item is None:
                logger.debug("Ack for unknown operation %s", operation_id)
                return
            self._acknowledge(item.operation)

        elif msg_type == "sync-conflict":
            try:
                conflict = SyncConflict.from_dict(message.get("conflict"))
            except ValueError as e:
                logger.warning("Ignoring malformed sync-conflict: %s", e)
                return
            self.handle_remote_conflict(conflict)

        else:
            logger.debug("Ignoring message of type %s", msg_type)


def create_engine(config: SyncConfig, state_dir: Path) -> SyncEngine:
    """Build an engine persisting its state under state_dir.

    Args:
        config: Engine configuration.
        state_dir: Directory holding state.db and queue.db.

    Returns:
        A ready engine; call connect() to start syncing.
    """
    state_dir = Path(state_dir)
    state = LocalSyncState(state_dir / "state.db")
    client_id = state.get_or_create_client_id()
    store = SQLiteQueueStore(state_dir / "queue.db")

    transport_factory: TransportFactory | None = None
    if not config.offline:
        transport_factory = functools.partial(WebSocketTransport, config)

    return SyncEngine(
        store,
        config,
        client_id,
        transport_factory=transport_factory,
        analyzer=FieldMergeAnalyzer(config.policy),
        token_provider=state.get_auth_token,
        state=state,
    )
