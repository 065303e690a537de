"""Tests for local sync state."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from wealthsync.client.state import LocalSyncState


@pytest.fixture
def state(tmp_path: Path) -> Iterator[LocalSyncState]:
    state = LocalSyncState(tmp_path / "state.db")
    yield state
    state.close()


class TestLocalSyncState:
    """Tests for LocalSyncState."""

    def test_creates_database(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "state.db"
        state = LocalSyncState(db_path)
        try:
            assert db_path.exists()
            assert state.db_path == db_path
        finally:
            state.close()

    def test_state_roundtrip(self, state: LocalSyncState) -> None:
        assert state.get_state("missing") is None

        state.set_state("key", "value")
        state.set_state("key", "other")
        assert state.get_state("key") == "other"

        state.delete_state("key")
        assert state.get_state("key") is None

    def test_client_id_minted_once(self, tmp_path: Path) -> None:
        state = LocalSyncState(tmp_path / "state.db")
        first = state.get_or_create_client_id(lambda: "client-1")
        again = state.get_or_create_client_id(lambda: "client-2")
        state.close()

        reopened = LocalSyncState(tmp_path / "state.db")
        try:
            assert first == again == "client-1"
            assert reopened.get_or_create_client_id() == "client-1"
        finally:
            reopened.close()

    def test_default_client_id_is_uuid(self, state: LocalSyncState) -> None:
        client_id = state.get_or_create_client_id()
        assert len(client_id) == 36
        assert client_id.count("-") == 4

    def test_auth_token(self, state: LocalSyncState) -> None:
        assert state.get_auth_token() is None

        state.set_auth_token("tok-1")
        assert state.get_auth_token() == "tok-1"

        state.set_auth_token(None)
        assert state.get_auth_token() is None

    def test_last_sync_at(self, state: LocalSyncState) -> None:
        assert state.get_last_sync_at() is None

        state.set_last_sync_at(1_700_000_000.5)

        assert state.get_last_sync_at() == 1_700_000_000.5
