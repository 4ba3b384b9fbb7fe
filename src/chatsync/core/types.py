"""Shared types for chatsync.

This module defines enums used across the client and the CLI.
"""

from __future__ import annotations

from enum import Enum


class ConnectionStatus(str, Enum):
    """Lifecycle status of the push connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class ChannelFilter(str, Enum):
    """Channel list filters offered to consumers."""

    ALL = "all"
    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"
