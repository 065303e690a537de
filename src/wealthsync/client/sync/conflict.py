"""Conflict analysis for competing entity versions.

Two devices that edit the same entity from the same base version produce
operations with equal (or stale) versions. The engine hands both payloads
to a ConflictAnalyzer which proposes a resolution:

| Situation                          | Outcome                               |
|------------------------------------|---------------------------------------|
| Payloads identical                 | No conflict, merge, confidence 100    |
| Field only on one side / None      | Compatible, keep the present value    |
| Both sides are lists               | Compatible, order-preserving union    |
| Both sides are objects             | Merge recursively                     |
| Scalars differ                     | Conflicting field, newer side wins    |
| Critical field differs (amount...) | Needs the user                        |
| One side deletes, other edits      | Needs the user                        |

The engine applies its own policy on top (see SyncEngine): only analyses
that are auto-resolvable and need no intervention are applied silently.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from wealthsync.core.config import ConflictPolicy
from wealthsync.core.types import (
    EntityType,
    OperationType,
    Resolution,
    SuggestedResolution,
)

if TYPE_CHECKING:
    from wealthsync.client.sync.types import SyncOperation, SyncPayload

# Bookkeeping fields, never treated as user edits
SYSTEM_FIELDS = frozenset({"id", "userid", "createdat", "updatedat", "syncversion"})

# Fields whose divergence always needs a human (compared case/underscore-insensitively)
CRITICAL_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.TRANSACTION: frozenset({"amount", "date", "accountid", "type"}),
    EntityType.ACCOUNT: frozenset({"balance", "currency", "type"}),
    EntityType.BUDGET: frozenset({"amount", "period", "categoryid"}),
    EntityType.GOAL: frozenset({"targetamount", "currentamount", "targetdate"}),
    EntityType.CATEGORY: frozenset({"parentid", "type"}),
}

NON_CRITICAL_PENALTY = 15
CRITICAL_PENALTY = 40

_MISSING = object()


@dataclass
class ConflictAnalysis:
    """Result of analyzing two competing payloads.

    Attributes:
        has_conflict: True if at least one field really diverges
        confidence: 0-100 confidence in the suggested resolution
        can_auto_resolve: Whether merged_data is safe to apply unattended
        suggested_resolution: client, server, merge or manual
        merged_data: Field-level merge of both payloads, if one was built
        conflicting_fields: Fields whose values could not be reconciled
        critical_fields: Subset of conflicting_fields that need a human
    """

    has_conflict: bool
    confidence: int
    can_auto_resolve: bool
    suggested_resolution: SuggestedResolution
    merged_data: SyncPayload | None = None
    conflicting_fields: list[str] = field(default_factory=list)
    critical_fields: list[str] = field(default_factory=list)


class ConflictAnalyzer(Protocol):
    """Protocol for conflict analyzers.

    Must be a pure function of its arguments.
    """

    def analyze(
        self,
        entity: EntityType,
        local_data: SyncPayload,
        remote_data: SyncPayload,
        local_timestamp: int,
        remote_timestamp: int,
    ) -> ConflictAnalysis:
        """Compare two payloads and propose a resolution."""
        ...


def _normalize(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def _list_union(remote: list[Any], local: list[Any]) -> list[Any]:
    """Remote items first, then local items the remote side lacks."""
    merged = list(remote)
    for value in local:
        if value not in merged:
            merged.append(value)
    return merged


def _merge_value(local: Any, remote: Any, local_newer: bool) -> tuple[Any, bool]:
    """Merge one field.

    Returns:
        (merged value, True if the field is in conflict)
    """
    if local is _MISSING or local is None:
        return remote, False
    if remote is _MISSING or remote is None:
        return local, False
    if local == remote:
        return remote, False
    if isinstance(local, list) and isinstance(remote, list):
        return _list_union(remote, local), False
    if isinstance(local, dict) and isinstance(remote, dict):
        merged: dict[str, Any] = {}
        conflicted = False
        for key in [*remote, *(k for k in local if k not in remote)]:
            value, nested = _merge_value(
                local.get(key, _MISSING), remote.get(key, _MISSING), local_newer
            )
            merged[key] = value
            conflicted = conflicted or nested
        return merged, conflicted
    return (local if local_newer else remote), True


class FieldMergeAnalyzer:
    """Field-level analyzer used by default.

    Attributes:
        policy: Thresholds (auto_resolve_confidence is used here)
    """

    def __init__(self, policy: ConflictPolicy | None = None) -> None:
        self.policy = policy or ConflictPolicy()

    def analyze(
        self,
        entity: EntityType,
        local_data: SyncPayload,
        remote_data: SyncPayload,
        local_timestamp: int,
        remote_timestamp: int,
    ) -> ConflictAnalysis:
        local_newer = local_timestamp > remote_timestamp
        critical_names = CRITICAL_FIELDS.get(EntityType(entity), frozenset())

        merged: dict[str, Any] = {}
        conflicting: list[str] = []
        critical: list[str] = []

        keys = [*remote_data, *(k for k in local_data if k not in remote_data)]
        for key in keys:
            local = local_data.get(key, _MISSING)
            remote = remote_data.get(key, _MISSING)

            if _normalize(key) in SYSTEM_FIELDS:
                newer, older = (local, remote) if local_newer else (remote, local)
                merged[key] = copy.deepcopy(older if newer is _MISSING else newer)
                continue

            value, conflicted = _merge_value(local, remote, local_newer)
            merged[key] = copy.deepcopy(value)
            if conflicted:
                conflicting.append(key)
                if _normalize(key) in critical_names:
                    critical.append(key)

        non_critical = len(conflicting) - len(critical)
        confidence = 100 - NON_CRITICAL_PENALTY * non_critical - CRITICAL_PENALTY * len(critical)
        confidence = max(0, min(100, confidence))
        can_auto_resolve = not critical and confidence >= self.policy.auto_resolve_confidence

        if can_auto_resolve:
            suggestion = SuggestedResolution.MERGE
        elif local_timestamp > remote_timestamp:
            suggestion = SuggestedResolution.CLIENT
        elif remote_timestamp > local_timestamp:
            suggestion = SuggestedResolution.SERVER
        else:
            suggestion = SuggestedResolution.MANUAL

        return ConflictAnalysis(
            has_conflict=bool(conflicting),
            confidence=confidence,
            can_auto_resolve=can_auto_resolve,
            suggested_resolution=suggestion,
            merged_data=merged,
            conflicting_fields=conflicting,
            critical_fields=critical,
        )


def delete_conflict_analysis() -> ConflictAnalysis:
    """Analysis for an edit racing a delete; always left to the user."""
    return ConflictAnalysis(
        has_conflict=True,
        confidence=0,
        can_auto_resolve=False,
        suggested_resolution=SuggestedResolution.MANUAL,
    )


def is_delete_conflict(local: SyncOperation, remote: SyncOperation) -> bool:
    """Check if exactly one side of the conflict is a delete."""
    return (local.type == OperationType.DELETE) != (remote.type == OperationType.DELETE)


def requires_user_intervention(analysis: ConflictAnalysis) -> bool:
    """Check whether a human has to decide this conflict."""
    if not analysis.has_conflict:
        return False
    return not analysis.can_auto_resolve or bool(analysis.critical_fields)


def timestamp_resolution(local: SyncOperation, remote: SyncOperation) -> Resolution:
    """Fallback resolution: later timestamp wins, ties go to the server."""
    if local.timestamp > remote.timestamp:
        return Resolution.LOCAL
    return Resolution.REMOTE
