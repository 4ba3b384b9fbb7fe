"""Shared configuration classes for chatsync.

This module defines the connection settings for the chat server and the
tunable timings/thresholds used by the synchronization engine.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class ServerConfig:
    """Configuration for connecting to a chat server.

    Used by both the HTTP client (ChatClient) and the push connection
    (ConnectionManager) so both talk to the same host with the same
    TLS settings.

    Attributes:
        server_url: Base URL of the server (e.g., "https://osu.example.com").
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.server_url.startswith("https://")

    def ws_url_for(self, endpoint: str) -> str:
        """Build an absolute WebSocket URL for a push endpoint.

        The notification API may return either a full ``ws(s)://`` URL or
        a path relative to the server; relative paths are resolved against
        ``server_url`` with the matching WebSocket scheme.

        Args:
            endpoint: Endpoint as returned by the server.

        Returns:
            Absolute WebSocket URL.
        """
        if endpoint.startswith(("ws://", "wss://")):
            return endpoint

        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/{endpoint.lstrip('/')}"


@dataclass
class SyncSettings:
    """Timings and thresholds for the synchronization engine.

    The similarity thresholds and the preview length are empirically
    tuned; keep them configurable.

    Attributes:
        connect_throttle: Seconds during which a repeated connect() is a no-op.
        max_reconnect_attempts: Reconnects after an unexpected close before giving up.
        reconnect_base_delay: First reconnect delay; doubles per attempt.
        open_timeout: Seconds allowed for the push socket handshake.
        read_debounce: Window in which mark-as-read calls are coalesced.
        dwell_time: Seconds a message must stay visible before auto-read.
        preview_match_threshold: Similarity above which a notification preview
            matches a channel message.
        retry_match_threshold: Similarity above which two messages are
            treated as retries of the same content.
        retry_window: Max seconds between two messages collapsed as retries.
        preview_length: Length notification previews are truncated to.
        history_limit: Messages requested per history load.
        notification_poll_interval: Notification refresh period while the
            push connection is down.
    """

    connect_throttle: float = 2.0
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    open_timeout: float = 10.0
    read_debounce: float = 0.5
    dwell_time: float = 1.0
    preview_match_threshold: float = 0.8
    retry_match_threshold: float = 0.9
    retry_window: float = 10.0
    preview_length: int = 36
    history_limit: int = 50
    notification_poll_interval: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncSettings:
        """Create settings from a (partial) mapping, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
