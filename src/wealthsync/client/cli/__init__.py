"""Command-line interface for wealthsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Create the client id, store the sync server URL and token
- status: Show client id, mode and pending operations
- enqueue: Record an operation in the pending queue
- clear: Drop all pending operations
- sync: Connect and flush the pending queue
"""

from __future__ import annotations

import logging

import click

from wealthsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_sync_config,
    load_config,
    save_config,
)
from wealthsync.client.cli.queue import clear, enqueue, init, status
from wealthsync.client.cli.sync import sync


def configure_logging(verbose: bool) -> None:
    """Route wealthsync log records to stderr."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    wealthsync_logger = logging.getLogger("wealthsync")
    # Remove any existing handlers
    for existing in wealthsync_logger.handlers[:]:
        wealthsync_logger.removeHandler(existing)
    wealthsync_logger.addHandler(handler)
    wealthsync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    # Prevent propagation to root logger
    wealthsync_logger.propagate = False


@click.group()
@click.version_option(package_name="wealthsync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """wealthsync - Offline-first sync for WealthTracker records."""
    configure_logging(verbose)


# Local queue commands
cli.add_command(init)
cli.add_command(status)
cli.add_command(enqueue)
cli.add_command(clear)

# Sync commands
cli.add_command(sync)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "configure_logging",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_sync_config",
    "load_config",
    "save_config",
]
