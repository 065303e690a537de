"""Timer scheduling for the sync engine.

This module provides:
- Scheduler: Protocol for one-shot and repeating callbacks
- ThreadScheduler: Implementation on daemon threads

The engine never creates timers itself; it asks its scheduler. Tests
pass a manual scheduler and fire callbacks explicitly.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class Handle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None:
        """Prevent the callback from running (again)."""
        ...


class Scheduler(Protocol):
    """Protocol for scheduling engine callbacks."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Handle:
        """Run callback once after `delay` seconds."""
        ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> Handle:
        """Run callback every `interval` seconds until cancelled."""
        ...


def _run_callback(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception as e:
        logger.error("Scheduled callback %r failed: %s", callback, e)
        logger.debug("Full traceback:", exc_info=True)


class _RepeatingHandle:
    """Daemon thread firing a callback at a fixed interval."""

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name="SyncInterval",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        # wait() returns True once cancelled
        while not self._stop_event.wait(self._interval):
            _run_callback(self._callback)

    def cancel(self) -> None:
        self._stop_event.set()


class ThreadScheduler:
    """Scheduler backed by threading.Timer and interval threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: set[threading.Timer | _RepeatingHandle] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Handle:
        timer: threading.Timer

        def fire() -> None:
            with self._lock:
                self._handles.discard(timer)
            _run_callback(callback)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._lock:
            self._handles.add(timer)
        timer.start()
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> Handle:
        handle = _RepeatingHandle(interval, callback)
        with self._lock:
            self._handles.add(handle)
        handle.start()
        return handle

    def shutdown(self) -> None:
        """Cancel everything still scheduled."""
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle.cancel()
