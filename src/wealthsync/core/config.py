"""Configuration classes for wealthsync.

This module defines the engine configuration together with the two
policy objects it carries:

- BackoffPolicy: reconnection delays for the transport
- ConflictPolicy: confidence thresholds for the conflict pipeline
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

SYNC_URL_ENV = "WEALTHSYNC_SYNC_URL"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff for connection attempts.

    Attributes:
        max_attempts: Consecutive failed attempts before giving up.
        base_delay: Delay in seconds before the first retry.
        multiplier: Growth factor applied per attempt.
        max_delay: Upper bound for any single delay.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        """Get the delay to wait after the given failed attempt (0-based)."""
        return min(self.base_delay * self.multiplier**attempt, self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        """Check whether the number of failed attempts reached the limit."""
        return attempts >= self.max_attempts


@dataclass(frozen=True)
class ConflictPolicy:
    """Thresholds applied on top of a conflict analysis.

    Attributes:
        pre_apply_confidence: Minimum confidence for pre-applying the
            analyzer's suggestion while the conflict stays pending.
        auto_resolve_confidence: Minimum confidence for the field merge
            analyzer to mark a conflict as auto-resolvable.
    """

    pre_apply_confidence: int = 50
    auto_resolve_confidence: int = 70


@dataclass
class SyncConfig:
    """Configuration for the sync engine and its transport.

    Attributes:
        sync_url: WebSocket endpoint of the sync backend. None (or empty)
            means local-only mode: no transport is ever started.
        batch_size: Maximum operations sent per flush pass.
        max_retries: Failed sends tolerated before an operation is dropped.
        send_timeout: Seconds to wait for an acknowledgement.
        sync_interval: Seconds between periodic flush checks.
        open_timeout: Seconds allowed for opening the connection.
        heartbeat_interval: Seconds between heartbeat frames.
        verify_ssl: Whether to verify TLS certificates.
        backoff: Reconnection policy.
        policy: Conflict pipeline thresholds.
    """

    sync_url: str | None = None
    batch_size: int = 10
    max_retries: int = 3
    send_timeout: float = 10.0
    sync_interval: float = 5.0
    open_timeout: float = 20.0
    heartbeat_interval: float = 15.0
    verify_ssl: bool = True
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    policy: ConflictPolicy = field(default_factory=ConflictPolicy)

    def __post_init__(self) -> None:
        """Normalize the sync URL."""
        if self.sync_url:
            url = self.sync_url.strip().rstrip("/")
            if url.startswith("https://"):
                url = "wss://" + url[8:]
            elif url.startswith("http://"):
                url = "ws://" + url[7:]
            self.sync_url = url or None
        else:
            self.sync_url = None

    @property
    def offline(self) -> bool:
        """True when no backend endpoint is configured."""
        return self.sync_url is None

    @property
    def is_secure(self) -> bool:
        """Check if the endpoint uses TLS."""
        return bool(self.sync_url and self.sync_url.startswith("wss://"))

    @classmethod
    def from_env(cls, **overrides: object) -> SyncConfig:
        """Build a config from the environment.

        Reads WEALTHSYNC_SYNC_URL; an unset or empty variable selects
        local-only mode. Keyword overrides win over the environment.
        """
        values: dict[str, object] = {"sync_url": os.environ.get(SYNC_URL_ENV) or None}
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
