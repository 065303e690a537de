"""Sync command for the wealthsync CLI.

Commands:
- sync: Connect to the sync server and flush the pending queue
"""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import click

from wealthsync.client.cli.config import get_config_dir, get_sync_config, is_initialized
from wealthsync.client.sync.engine import create_engine
from wealthsync.client.sync.events import (
    ConflictAutoResolved,
    ConflictDetected,
    RemoteChange,
    RemoteMerge,
    SyncEvent,
    SyncFailed,
)
from wealthsync.core.types import Resolution

if TYPE_CHECKING:
    from wealthsync.client.sync.engine import SyncEngine
    from wealthsync.client.sync.types import SyncConflict

POLL_INTERVAL = 0.1


def _describe(entity: str, entity_id: str) -> str:
    return f"{entity}/{entity_id}"


def _wait_until(predicate: Callable[[], bool], deadline: float) -> bool:
    """Poll until predicate() is true or the deadline passes."""
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(POLL_INTERVAL)
    return predicate()


def _prompt_conflict(engine: SyncEngine, conflict: SyncConflict) -> None:
    """Ask the user how to settle one conflict."""
    analysis = conflict.analysis
    title = f"\nConflict on {_describe(conflict.entity.value, conflict.entity_id)}"
    click.echo(click.style(title, fg="yellow"))
    click.echo(f"  local  (v{conflict.local_operation.version}): {conflict.local_operation.data}")
    click.echo(f"  remote (v{conflict.remote_operation.version}): {conflict.remote_operation.data}")

    choices = [Resolution.LOCAL.value, Resolution.REMOTE.value]
    default = None
    if analysis is not None:
        click.echo(
            f"  suggested: {analysis.suggested_resolution.value}"
            f" (confidence {analysis.confidence})"
        )
        if analysis.conflicting_fields:
            click.echo(f"  conflicting fields: {', '.join(analysis.conflicting_fields)}")
        if analysis.merged_data is not None:
            choices.append(Resolution.MERGE.value)
        suggestion = analysis.suggested_resolution.to_resolution()
        if suggestion is not None and suggestion.value in choices:
            default = suggestion.value
    choices.append("skip")

    choice = click.prompt(
        "  Keep",
        type=click.Choice(choices),
        default=default or "skip",
        show_choices=True,
    )
    if choice == "skip":
        return
    merged = None
    if analysis is not None and choice == Resolution.MERGE.value:
        merged = analysis.merged_data
    if engine.resolve_conflict(conflict.id, choice, merged):
        click.echo(f"  ✓ kept {choice}")


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep running and resolve conflicts interactively.")
@click.option(
    "--timeout",
    default=30.0,
    show_default=True,
    type=float,
    help="Seconds to wait for the connection and the flush.",
)
def sync(watch: bool, timeout: float) -> None:
    """Send pending operations to the sync server.

    Connects, flushes the queue and prints what was sent, what failed and
    what arrived from other devices. Use --watch to stay connected.
    """
    if not is_initialized():
        click.echo("Error: wealthsync not initialized. Run 'wealthsync init' first.", err=True)
        sys.exit(1)

    config = get_sync_config()
    if config.offline:
        click.echo(
            "Error: No sync server configured. Run 'wealthsync init --sync-url URL' first.",
            err=True,
        )
        sys.exit(1)

    engine = create_engine(config, get_config_dir())
    output_lock = threading.RLock()
    failed: list[str] = []
    prompted: set[str] = set()

    def on_event(event: SyncEvent) -> None:
        with output_lock:
            if isinstance(event, RemoteChange):
                click.echo(
                    f"  ↓ {event.event_type.value} {_describe(event.entity.value, event.entity_id)}"
                )
            elif isinstance(event, RemoteMerge):
                click.echo(f"  ⇄ merged {_describe(event.entity.value, event.entity_id)}")
            elif isinstance(event, ConflictAutoResolved):
                click.echo(
                    f"  ✓ auto-resolved conflict on "
                    f"{_describe(event.conflict.entity.value, event.conflict.entity_id)}"
                )
            elif isinstance(event, ConflictDetected):
                click.echo(
                    click.style(
                        f"  ! conflict on "
                        f"{_describe(event.conflict.entity.value, event.conflict.entity_id)}",
                        fg="yellow",
                    )
                )
            elif isinstance(event, SyncFailed):
                failed.append(event.operation.id)
                click.echo(
                    click.style(f"  ✗ {event.operation!r}: {event.error}", fg="red")
                )

    engine.on_any(on_event)
    pending_before = len(engine.get_pending_operations())

    try:
        click.echo(f"Syncing with {config.sync_url}...")
        engine.connect()

        deadline = time.monotonic() + timeout
        connected = _wait_until(
            lambda: engine.get_status().is_connected or engine.get_status().error is not None,
            deadline,
        )
        status = engine.get_status()
        if not connected or not status.is_connected:
            click.echo(f"Error: {status.error or 'Connection timed out'}", err=True)
            sys.exit(1)

        _wait_until(
            lambda: not engine.get_status().is_syncing
            and engine.get_status().pending_operations == 0,
            deadline,
        )

        status = engine.get_status()
        sent = max(0, pending_before - status.pending_operations - len(failed))
        click.echo(
            f"\nSync complete: {sent} sent, {len(failed)} failed, "
            f"{status.pending_operations} pending, {len(status.conflicts)} conflicts"
        )

        if watch:
            click.echo("\nWatching for changes... (Ctrl+C to stop)\n")
            try:
                while True:
                    for conflict in engine.get_conflicts():
                        if conflict.id in prompted:
                            continue
                        prompted.add(conflict.id)
                        with output_lock:
                            _prompt_conflict(engine, conflict)
                    time.sleep(1.0)
            except KeyboardInterrupt:
                click.echo("\nStopping...")
    finally:
        engine.dispose()
