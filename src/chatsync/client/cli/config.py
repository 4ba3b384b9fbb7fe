"""Configuration utilities for the chatsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from chatsync.core.config import ServerConfig, SyncSettings


def get_config_dir() -> Path:
    """Get the configuration directory for chatsync.

    Returns:
        Path to ~/.chatsync or equivalent.
    """
    return Path.home() / ".chatsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_server_config(config: dict[str, Any]) -> ServerConfig:
    """Build the server settings from a loaded config.

    Raises:
        KeyError: If no server is configured.
    """
    return ServerConfig(
        server_url=config["server_url"],
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def get_sync_settings(config: dict[str, Any]) -> SyncSettings:
    """Build sync tunables from the optional ``sync`` section."""
    return SyncSettings.from_dict(config.get("sync") or {})


def get_user_id(config: dict[str, Any]) -> int | None:
    """Get the configured user ID, if any."""
    value = config.get("user_id")
    return int(value) if value is not None else None
