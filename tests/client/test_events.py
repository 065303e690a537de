"""Tests for sync events and the event bus."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from wealthsync.client.sync.events import (
    EventBus,
    RemoteChange,
    RemoteMerge,
    StatusChanged,
    SyncEventType,
)
from wealthsync.client.sync.types import SyncStatus
from wealthsync.core.types import EntityType, OperationType


def remote_change(operation_type: OperationType = OperationType.UPDATE) -> RemoteChange:
    return RemoteChange(
        operation_type=operation_type,
        entity=EntityType.BUDGET,
        entity_id="b1",
        data={"amount": 300},
    )


class TestSyncEventType:
    """Tests for SyncEventType."""

    def test_values(self) -> None:
        assert SyncEventType.STATUS_CHANGED.value == "status-changed"
        assert SyncEventType.CONFLICT_AUTO_RESOLVED.value == "conflict-auto-resolved"
        assert SyncEventType("sync-failed") == SyncEventType.SYNC_FAILED

    @pytest.mark.parametrize(
        ("operation_type", "expected"),
        [
            (OperationType.CREATE, SyncEventType.REMOTE_CREATE),
            (OperationType.UPDATE, SyncEventType.REMOTE_UPDATE),
            (OperationType.DELETE, SyncEventType.REMOTE_DELETE),
        ],
    )
    def test_remote_change_type(
        self, operation_type: OperationType, expected: SyncEventType
    ) -> None:
        assert remote_change(operation_type).event_type == expected


class TestEventBus:
    """Tests for EventBus."""

    def test_typed_subscription(self) -> None:
        bus = EventBus()
        updates = MagicMock()
        merges = MagicMock()
        bus.on(SyncEventType.REMOTE_UPDATE, updates)
        bus.on("remote-merge", merges)

        event = remote_change()
        bus.emit(event)

        updates.assert_called_once_with(event)
        merges.assert_not_called()

    def test_any_subscription(self) -> None:
        bus = EventBus()
        handler = MagicMock()
        bus.on_any(handler)

        status = StatusChanged(SyncStatus())
        merge = RemoteMerge(entity=EntityType.GOAL, entity_id="g1", data={})
        bus.emit(status)
        bus.emit(merge)

        assert [c.args[0] for c in handler.call_args_list] == [status, merge]

    def test_duplicate_subscription_delivers_once(self) -> None:
        bus = EventBus()
        handler = MagicMock()
        bus.on(SyncEventType.REMOTE_UPDATE, handler)
        bus.on(SyncEventType.REMOTE_UPDATE, handler)

        bus.emit(remote_change())

        handler.assert_called_once()

    def test_off(self) -> None:
        bus = EventBus()
        handler = MagicMock()
        catch_all = MagicMock()
        bus.on(SyncEventType.REMOTE_UPDATE, handler)
        bus.on_any(catch_all)

        bus.off(SyncEventType.REMOTE_UPDATE, handler)
        bus.off_any(catch_all)
        bus.off(SyncEventType.REMOTE_DELETE, handler)
        bus.emit(remote_change())

        handler.assert_not_called()
        catch_all.assert_not_called()

    def test_unknown_event_name(self) -> None:
        with pytest.raises(ValueError):
            EventBus().on("remote-rename", MagicMock())

    def test_failing_handler_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """One failing subscriber must not stop the others or the emitter."""
        bus = EventBus()
        after = MagicMock()
        bus.on_any(MagicMock(side_effect=RuntimeError("handler bug")))
        bus.on_any(after)

        bus.emit(remote_change())

        after.assert_called_once()
        assert "handler bug" in caplog.text

    def test_handler_may_unsubscribe_during_emit(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def once(event: object) -> None:
            calls.append("once")
            bus.off_any(once)

        bus.on_any(once)
        bus.emit(remote_change())
        bus.emit(remote_change())

        assert calls == ["once"]
