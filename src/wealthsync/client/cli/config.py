"""Configuration utilities for the wealthsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from wealthsync.core.config import SYNC_URL_ENV, SyncConfig

HOME_ENV = "WEALTHSYNC_HOME"


def get_config_dir() -> Path:
    """Get the configuration directory for wealthsync.

    Returns:
        Path to $WEALTHSYNC_HOME, or ~/.wealthsync when unset.
    """
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".wealthsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_db() -> Path:
    """Get the path to the local state database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def is_initialized() -> bool:
    """Check whether 'wealthsync init' has been run."""
    return get_state_db().exists()


def get_sync_config() -> SyncConfig:
    """Build the engine config.

    WEALTHSYNC_SYNC_URL wins over the sync_url stored in config.json.
    """
    sync_url = os.environ.get(SYNC_URL_ENV) or load_config().get("sync_url")
    return SyncConfig(sync_url=sync_url)
