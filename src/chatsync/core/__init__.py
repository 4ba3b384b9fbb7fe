"""Core module - Shared configuration and enums."""

from chatsync.core.config import ServerConfig, SyncSettings
from chatsync.core.types import ChannelFilter, ConnectionStatus

__all__ = [
    # Config
    "ServerConfig",
    "SyncSettings",
    # Types
    "ChannelFilter",
    "ConnectionStatus",
]
