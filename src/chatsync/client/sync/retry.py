"""Exponential backoff for push connection reconnects.

This module provides:
- backoff_delay: Delay before a given reconnect attempt
"""

from __future__ import annotations

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delay(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Get the delay before a reconnect attempt.

    Args:
        attempt: 1-based attempt number.
        initial_backoff: Delay before the first attempt, in seconds.
        backoff_multiplier: Growth factor per attempt.

    Returns:
        Delay in seconds (``initial_backoff * multiplier ** (attempt - 1)``).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return initial_backoff * backoff_multiplier ** (attempt - 1)
