"""Tests for retry logic."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from wealthsync.client.sync.retry import backoff_delays, retry_with_backoff
from wealthsync.core.config import BackoffPolicy

POLICY = BackoffPolicy(max_attempts=3, base_delay=0.1, multiplier=2.0, max_delay=0.3)


class TestBackoffDelays:
    """Tests for backoff_delays()."""

    def test_capped_sequence(self) -> None:
        assert list(backoff_delays(POLICY)) == pytest.approx([0.1, 0.2, 0.3])

    def test_no_attempts(self) -> None:
        assert list(backoff_delays(BackoffPolicy(max_attempts=0))) == []


class TestRetryWithBackoff:
    """Tests for retry_with_backoff()."""

    def test_success_first_try(self) -> None:
        func = MagicMock(return_value="ok")
        sleep = MagicMock()

        assert retry_with_backoff(func, POLICY, sleep=sleep) == "ok"
        func.assert_called_once()
        sleep.assert_not_called()

    def test_success_after_failures(self) -> None:
        func = MagicMock(side_effect=[OSError("busy"), OSError("busy"), "ok"])
        sleep = MagicMock()

        assert retry_with_backoff(func, POLICY, sleep=sleep) == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2])

    def test_all_retries_fail(self) -> None:
        func = MagicMock(side_effect=OSError("busy"))
        sleep = MagicMock()

        with pytest.raises(OSError, match="busy"):
            retry_with_backoff(func, POLICY, sleep=sleep)

        assert func.call_count == 4
        assert sleep.call_count == 3

    def test_non_retryable_propagates(self) -> None:
        func = MagicMock(side_effect=KeyError("x"))
        sleep = MagicMock()

        with pytest.raises(KeyError):
            retry_with_backoff(func, POLICY, retryable_exceptions=(OSError,), sleep=sleep)

        func.assert_called_once()
        sleep.assert_not_called()
