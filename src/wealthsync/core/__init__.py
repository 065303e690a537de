"""Core module - Shared configuration and enums."""

from wealthsync.core.config import (
    SYNC_URL_ENV,
    BackoffPolicy,
    ConflictPolicy,
    SyncConfig,
)
from wealthsync.core.types import (
    EntityType,
    OperationType,
    Resolution,
    SuggestedResolution,
)

__all__ = [
    # Config
    "SYNC_URL_ENV",
    "BackoffPolicy",
    "ConflictPolicy",
    "SyncConfig",
    # Types
    "EntityType",
    "OperationType",
    "Resolution",
    "SuggestedResolution",
]
