"""Local queue commands for the wealthsync CLI.

Commands:
- init: Create the client id and store the server URL and token
- status: Show client id, mode and pending operations
- enqueue: Record an operation without connecting
- clear: Drop all pending operations
"""

from __future__ import annotations

import json
import sys
from datetime import datetime

import click

from wealthsync.client.cli.config import (
    get_config_dir,
    get_state_db,
    get_sync_config,
    is_initialized,
    load_config,
    save_config,
)
from wealthsync.client.state import LocalSyncState
from wealthsync.client.sync.engine import SyncEngine, create_engine
from wealthsync.core.types import EntityType, OperationType


def _require_init() -> None:
    if not is_initialized():
        click.echo("Error: wealthsync not initialized. Run 'wealthsync init' first.", err=True)
        sys.exit(1)


def _open_engine() -> SyncEngine:
    return create_engine(get_sync_config(), get_config_dir())


def format_time(value: datetime | None) -> str:
    return value.isoformat(" ", "seconds") if value else "never"


@click.command()
@click.option("--sync-url", help="WebSocket URL of the sync server.")
@click.option("--token", help="Session token presented to the sync server.")
def init(sync_url: str | None, token: str | None) -> None:
    """Initialize this installation.

    Creates the configuration directory and a stable client id. Running it
    again keeps the client id and updates the URL and token.
    """
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    config = load_config()
    if sync_url is not None:
        config["sync_url"] = sync_url
    save_config(config)

    state = LocalSyncState(get_state_db())
    try:
        client_id = state.get_or_create_client_id()
        if token is not None:
            state.set_auth_token(token)
    finally:
        state.close()

    click.echo(f"Initialized wealthsync in {config_dir}")
    click.echo(f"Client id: {client_id}")
    sync_config = get_sync_config()
    if sync_config.offline:
        click.echo("Mode: local-only (no sync server configured)")
    else:
        click.echo(f"Mode: online ({sync_config.sync_url})")


@click.command()
def status() -> None:
    """Show the local sync state."""
    _require_init()
    engine = _open_engine()
    try:
        sync_status = engine.get_status()
        pending = engine.get_pending_operations()

        click.echo(f"Client id: {engine.client_id}")
        if engine.local_only:
            click.echo("Mode: local-only")
        else:
            click.echo(f"Mode: online ({get_sync_config().sync_url})")
        click.echo(f"Last sync: {format_time(sync_status.last_sync_time)}")
        click.echo(f"Pending operations: {len(pending)}")
        for operation in pending:
            click.echo(
                f"  {operation.type.value:<6} {operation.entity.value}/{operation.entity_id}"
                f" v{operation.version}"
            )
    finally:
        engine.dispose()


@click.command()
@click.argument(
    "operation_type",
    metavar="TYPE",
    type=click.Choice([t.value for t in OperationType], case_sensitive=False),
)
@click.argument("entity", type=click.Choice([e.value for e in EntityType], case_sensitive=False))
@click.argument("entity_id")
@click.option("--data", "data_json", default="{}", help="Entity fields as a JSON object.")
def enqueue(operation_type: str, entity: str, entity_id: str, data_json: str) -> None:
    """Record an operation in the pending queue.

    The operation is only persisted; run 'wealthsync sync' to send it.
    """
    _require_init()
    try:
        data = json.loads(data_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--data") from e
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--data")

    engine = _open_engine()
    try:
        operation = engine.queue_operation(
            OperationType(operation_type.upper()), EntityType(entity.lower()), entity_id, data
        )
        click.echo(
            f"Queued {operation.type.value} {operation.entity.value}/{operation.entity_id}"
            f" (v{operation.version}, id {operation.id})"
        )
        click.echo(f"Pending operations: {len(engine.get_pending_operations())}")
    finally:
        engine.dispose()


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def clear(yes: bool) -> None:
    """Drop all pending operations."""
    _require_init()
    engine = _open_engine()
    try:
        pending = len(engine.get_pending_operations())
        if pending == 0:
            click.echo("Queue is already empty.")
            return
        if not yes:
            click.confirm(
                f"Drop {pending} pending operation(s)? They will never be synced",
                abort=True,
            )
        count = engine.clear_queue()
        click.echo(f"Cleared {count} pending operation(s).")
    finally:
        engine.dispose()
