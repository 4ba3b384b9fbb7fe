"""Session setup shared by the chatsync CLI commands."""

from __future__ import annotations

import sys
from dataclasses import dataclass

import click

from chatsync.client.cli.config import (
    get_server_config,
    get_sync_settings,
    get_user_id,
    load_config,
)
from chatsync.client.credentials import TokenStore
from chatsync.core.config import ServerConfig, SyncSettings


@dataclass
class Session:
    """Everything a command needs to talk to the server."""

    server_config: ServerConfig
    tokens: TokenStore
    settings: SyncSettings
    user_id: int | None


def require_session() -> Session:
    """Load the configured session or exit with an error."""
    config = load_config()
    if not config.get("server_url"):
        click.echo("Error: Not logged in. Run 'chatsync login' first.", err=True)
        sys.exit(1)

    server_config = get_server_config(config)
    tokens = TokenStore(server_config.server_url)
    if not tokens.is_authenticated():
        click.echo("Error: No access token stored. Run 'chatsync login' again.", err=True)
        sys.exit(1)

    return Session(
        server_config=server_config,
        tokens=tokens,
        settings=get_sync_settings(config),
        user_id=get_user_id(config),
    )
