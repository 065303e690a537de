"""Tests for core configuration classes."""

from __future__ import annotations

import pytest

from wealthsync.core.config import SYNC_URL_ENV, BackoffPolicy, ConflictPolicy, SyncConfig


class TestSyncConfig:
    """Tests for SyncConfig class."""

    def test_defaults(self) -> None:
        """Should default to local-only mode with the documented limits."""
        config = SyncConfig()
        assert config.sync_url is None
        assert config.offline is True
        assert config.batch_size == 10
        assert config.max_retries == 3
        assert config.send_timeout == 10.0
        assert config.sync_interval == 5.0
        assert config.verify_ssl is True

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from the sync URL."""
        config = SyncConfig(sync_url="wss://example.com/")
        assert config.sync_url == "wss://example.com"
        assert config.offline is False

    def test_url_https(self) -> None:
        """Should convert HTTPS to WSS."""
        config = SyncConfig(sync_url="https://example.com/sync")
        assert config.sync_url == "wss://example.com/sync"

    def test_url_http(self) -> None:
        """Should convert HTTP to WS."""
        config = SyncConfig(sync_url="http://localhost:8000")
        assert config.sync_url == "ws://localhost:8000"

    @pytest.mark.parametrize("url", ["", "   ", "/"])
    def test_blank_url_is_offline(self, url: str) -> None:
        """Blank URLs select local-only mode."""
        assert SyncConfig(sync_url=url).offline is True

    def test_is_secure(self) -> None:
        """Should return True only for WSS endpoints."""
        assert SyncConfig(sync_url="https://example.com").is_secure is True
        assert SyncConfig(sync_url="ws://localhost:8000").is_secure is False
        assert SyncConfig().is_secure is False

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should read the sync URL from the environment."""
        monkeypatch.setenv(SYNC_URL_ENV, "https://sync.example.com")
        config = SyncConfig.from_env(batch_size=5)
        assert config.sync_url == "wss://sync.example.com"
        assert config.batch_size == 5

    def test_from_env_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should fall back to local-only mode without the variable."""
        monkeypatch.delenv(SYNC_URL_ENV, raising=False)
        assert SyncConfig.from_env().offline is True

    def test_from_env_override_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(SYNC_URL_ENV, "wss://env.example.com")
        config = SyncConfig.from_env(sync_url="wss://explicit.example.com")
        assert config.sync_url == "wss://explicit.example.com"


class TestBackoffPolicy:
    """Tests for BackoffPolicy class."""

    def test_delays_grow_and_cap(self) -> None:
        """Delays should double until max_delay."""
        policy = BackoffPolicy(base_delay=1.0, multiplier=2.0, max_delay=10.0)
        assert [policy.delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_exhausted(self) -> None:
        """Should report exhaustion once max_attempts failures happened."""
        policy = BackoffPolicy(max_attempts=5)
        assert policy.exhausted(4) is False
        assert policy.exhausted(5) is True


class TestConflictPolicy:
    """Tests for ConflictPolicy class."""

    def test_defaults(self) -> None:
        policy = ConflictPolicy()
        assert policy.pre_apply_confidence == 50
        assert policy.auto_resolve_confidence == 70
