"""Per-entity version tracking.

Tracks, for every entity, the last version each client is known to have
confirmed:

    entity_id -> {client_id -> version}

Version rules:
- Entity never seen: version is None
- Current version: max across all clients that touched the entity
- Next local version: current version + 1 (or 1 for unseen entities)
- Update: overwrites the entry for (entity, client); it records what that
  client confirmed last, so it is not a max-merge

This is deliberately weaker than a causal vector clock. Only the max
version is compared when deciding whether a remote operation is stale.
"""

from __future__ import annotations

import threading


class VectorClockTracker:
    """Keeps one simplified vector clock per entity."""

    def __init__(self) -> None:
        self._clocks: dict[str, dict[str, int]] = {}
        self._lock = threading.Lock()

    def get_version(self, entity_id: str) -> int | None:
        """Get the highest known version for an entity, None if unseen."""
        with self._lock:
            clock = self._clocks.get(entity_id)
            if not clock:
                return None
            return max(clock.values())

    def get_next_version(self, entity_id: str) -> int:
        """Get the version to stamp on a newly minted local operation."""
        return (self.get_version(entity_id) or 0) + 1

    def update(self, entity_id: str, client_id: str, version: int) -> None:
        """Record the version a client confirmed for an entity."""
        with self._lock:
            self._clocks.setdefault(entity_id, {})[client_id] = version

    def get_clock(self, entity_id: str) -> dict[str, int]:
        """Get a copy of the clock for one entity."""
        with self._lock:
            return dict(self._clocks.get(entity_id, {}))

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Get a copy of all clocks."""
        with self._lock:
            return {entity_id: dict(clock) for entity_id, clock in self._clocks.items()}

    def __contains__(self, entity_id: object) -> bool:
        with self._lock:
            return entity_id in self._clocks
