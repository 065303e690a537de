"""Shared fixtures for wealthsync tests.

Provides deterministic stand-ins for the engine's collaborators:
- ManualScheduler: callbacks only run when the test fires them
- FakeTransport: records sends, connects and pushes on demand
- StepClock: wall clock advancing one second per reading
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from wealthsync.client.sync.conflict import FieldMergeAnalyzer
from wealthsync.client.sync.engine import SyncEngine
from wealthsync.client.sync.events import SyncEvent
from wealthsync.client.sync.queue import MemoryQueueStore
from wealthsync.client.sync.transport import GIVE_UP_MESSAGE
from wealthsync.core.config import SyncConfig

START_TIME = 1_700_000_000.0


class ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], None], repeating: bool) -> None:
        self.delay = delay
        self.callback = callback
        self.repeating = repeating
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose callbacks run only when the test says so."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(delay, callback, repeating=False)
        self.handles.append(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(interval, callback, repeating=True)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        """One-shot callbacks waiting to run."""
        return [h for h in self.handles if not h.repeating and not h.cancelled]

    @property
    def intervals(self) -> list[ManualHandle]:
        return [h for h in self.handles if h.repeating and not h.cancelled]

    def run_next(self) -> bool:
        """Run the oldest pending one-shot callback."""
        for handle in self.handles:
            if not handle.repeating and not handle.cancelled:
                self.handles.remove(handle)
                handle.callback()
                return True
        return False

    def run_pending(self, limit: int = 100) -> int:
        """Run one-shot callbacks (including newly scheduled ones) until none are left."""
        count = 0
        while count < limit and self.run_next():
            count += 1
        return count

    def tick(self) -> None:
        """Fire every interval callback once."""
        for handle in self.intervals:
            handle.callback()


class FakeTransport:
    """In-memory Transport recording every send."""

    def __init__(self) -> None:
        self.connected = False
        self.started = False
        self.stopped = False
        self.sent: list[dict[str, Any]] = []
        self.timeouts: list[float] = []
        self.errors: list[Exception] = []
        self.always_fail: Exception | None = None
        self.on_send: Callable[[dict[str, Any]], None] | None = None
        self.client_id: str | None = None
        self.token: str | None = None

        self._on_connected: Callable[[], None] | None = None
        self._on_disconnected: Callable[[], None] | None = None
        self._on_message: Callable[[str, dict[str, Any]], None] | None = None
        self._on_error: Callable[[str], None] | None = None
        self._on_give_up: Callable[[str], None] | None = None

    def set_handlers(
        self,
        on_connected: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_message: Callable[[str, dict[str, Any]], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_give_up: Callable[[str], None] | None = None,
    ) -> None:
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_message = on_message
        self._on_error = on_error
        self._on_give_up = on_give_up

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True
        self.connected = False

    def send(self, operation: dict[str, Any], timeout: float) -> None:
        self.sent.append(operation)
        self.timeouts.append(timeout)
        if self.on_send is not None:
            self.on_send(operation)
        if self.errors:
            raise self.errors.pop(0)
        if self.always_fail is not None:
            raise self.always_fail

    @property
    def sent_ids(self) -> list[str]:
        return [operation["id"] for operation in self.sent]

    # Test controls

    def connect(self) -> None:
        self.connected = True
        if self._on_connected:
            self._on_connected()

    def drop(self) -> None:
        self.connected = False
        if self._on_disconnected:
            self._on_disconnected()

    def push(self, msg_type: str, message: dict[str, Any]) -> None:
        assert self._on_message is not None
        self._on_message(msg_type, message)

    def error(self, message: str) -> None:
        if self._on_error:
            self._on_error(message)

    def give_up(self, reason: str = GIVE_UP_MESSAGE) -> None:
        self.connected = False
        if self._on_give_up:
            self._on_give_up(reason)


class StepClock:
    """Wall clock that advances by `step` seconds on every reading."""

    def __init__(self, start: float = START_TIME, step: float = 1.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class EventRecorder:
    """Collects every event an engine emits."""

    def __init__(self) -> None:
        self.events: list[SyncEvent] = []

    def __call__(self, event: SyncEvent) -> None:
        self.events.append(event)

    def of_type(self, event_class: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_class)]

    def clear(self) -> None:
        self.events.clear()


def id_sequence(prefix: str = "op") -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def store() -> MemoryQueueStore:
    return MemoryQueueStore()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(sync_url="ws://sync.test")


@pytest.fixture
def make_engine(
    store: MemoryQueueStore,
    config: SyncConfig,
    transport: FakeTransport,
    scheduler: ManualScheduler,
    clock: StepClock,
) -> Iterator[Callable[..., SyncEngine]]:
    """Factory building engines wired to the fake collaborators."""
    engines: list[SyncEngine] = []

    def transport_factory(client_id: str, token_provider: Callable[[], str | None]) -> FakeTransport:
        transport.client_id = client_id
        transport.token = token_provider()
        return transport

    def factory(**overrides: Any) -> SyncEngine:
        kwargs: dict[str, Any] = {
            "store": store,
            "config": config,
            "client_id": "client-a",
            "transport_factory": transport_factory,
            "analyzer": FieldMergeAnalyzer(config.policy),
            "scheduler": scheduler,
            "clock": clock,
            "id_factory": id_sequence(),
        }
        kwargs.update(overrides)
        engine = SyncEngine(**kwargs)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.disconnect()


@pytest.fixture
def engine(make_engine: Callable[..., SyncEngine]) -> SyncEngine:
    return make_engine()


@pytest.fixture
def record_events() -> Callable[[SyncEngine], EventRecorder]:
    """Attach a fresh EventRecorder to an engine."""

    def attach(target: SyncEngine) -> EventRecorder:
        events = EventRecorder()
        target.on_any(events)
        return events

    return attach


@pytest.fixture
def recorder(
    engine: SyncEngine, record_events: Callable[[SyncEngine], EventRecorder]
) -> EventRecorder:
    return record_events(engine)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path
