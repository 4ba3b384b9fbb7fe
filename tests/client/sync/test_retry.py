"""Tests for reconnect backoff."""

from __future__ import annotations

import pytest

from chatsync.client.sync.retry import backoff_delay


class TestBackoff:
    """Tests for backoff_delay."""

    def test_default_delays(self) -> None:
        """Five attempts should wait 1, 2, 4, 8 and 16 seconds."""
        assert [backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_custom_base(self) -> None:
        """The delays should scale with the initial delay."""
        assert [backoff_delay(n, initial_backoff=0.5) for n in range(1, 4)] == [0.5, 1.0, 2.0]

    def test_custom_multiplier(self) -> None:
        """The multiplier should set the growth per attempt."""
        assert backoff_delay(3, initial_backoff=1.0, backoff_multiplier=3.0) == 9.0

    def test_invalid_attempt(self) -> None:
        """Attempts are 1-based."""
        with pytest.raises(ValueError):
            backoff_delay(0)
