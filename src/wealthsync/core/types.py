"""Shared types for wealthsync.

This module defines the enums used by the sync engine, the transport
and the command-line interface.
"""

from __future__ import annotations

from enum import Enum


class OperationType(str, Enum):
    """Kind of mutation carried by a sync operation."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    """Domain record kinds subject to sync."""

    TRANSACTION = "transaction"
    ACCOUNT = "account"
    BUDGET = "budget"
    GOAL = "goal"
    CATEGORY = "category"


class Resolution(str, Enum):
    """How a conflict was (or will be) settled."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


class SuggestedResolution(str, Enum):
    """Resolution proposed by a conflict analyzer.

    Uses the analyzer's vocabulary (client/server) rather than the
    engine's (local/remote).
    """

    CLIENT = "client"
    SERVER = "server"
    MERGE = "merge"
    MANUAL = "manual"

    def to_resolution(self) -> Resolution | None:
        """Map to an engine resolution, or None for manual."""
        return {
            SuggestedResolution.CLIENT: Resolution.LOCAL,
            SuggestedResolution.SERVER: Resolution.REMOTE,
            SuggestedResolution.MERGE: Resolution.MERGE,
        }.get(self)
