"""Command-line interface for chatsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- login: Store the server URL and access token
- logout: Forget the access token
- channels: List joined channels with unread markers
- send: Send a message to a channel
- watch: Follow channels and notifications live
"""

from __future__ import annotations

import logging

import click

from chatsync.client.cli.auth import login, logout
from chatsync.client.cli.chat import channels, send
from chatsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_server_config,
    get_sync_settings,
    get_user_id,
    load_config,
    save_config,
)
from chatsync.client.cli.watch import watch

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """Route chatsync logs to stderr (DEBUG when verbose, else WARNING)."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    chatsync_logger = logging.getLogger("chatsync")
    chatsync_logger.handlers.clear()
    chatsync_logger.addHandler(handler)
    chatsync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    chatsync_logger.propagate = False


@click.group()
@click.version_option(package_name="chatsync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def cli(verbose: bool) -> None:
    """chatsync - real-time chat and notification sync."""
    configure_logging(verbose)


# Session commands
cli.add_command(login)
cli.add_command(logout)

# Chat commands
cli.add_command(channels)
cli.add_command(send)
cli.add_command(watch)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "configure_logging",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_server_config",
    "get_sync_settings",
    "get_user_id",
    "load_config",
    "save_config",
]
