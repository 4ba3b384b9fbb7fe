"""Session commands for the chatsync CLI.

Commands:
- login: Verify and store the access token for a server
- logout: Forget the stored access token
"""

from __future__ import annotations

import asyncio
import sys

import click
import httpx

from chatsync.client.api import APIError, AuthenticationError, ChatClient
from chatsync.client.cli.config import load_config, save_config
from chatsync.client.credentials import CredentialsError, TokenStore
from chatsync.core.config import ServerConfig


async def _verify_token(server_config: ServerConfig, token: str) -> int:
    """Check the token against the server; returns the number of channels."""
    async with ChatClient(server_config, lambda: token) as client:
        return len(await client.list_channels())


@click.command()
@click.option(
    "--server",
    required=True,
    help="Server URL (e.g., https://osu.example.com).",
)
@click.option(
    "--user-id",
    type=int,
    default=None,
    help="Your user ID (used to label direct messages).",
)
def login(server: str, user_id: int | None) -> None:
    """Log in to a chat server with an access token.

    The token is verified against the server, then stored in the OS
    keyring. The server URL and user ID go to the config file.
    """
    token = click.prompt("Access token", hide_input=True).strip()
    if not token:
        click.echo("Error: Token must not be empty.", err=True)
        sys.exit(1)

    server_config = ServerConfig(server_url=server)
    try:
        channel_count = asyncio.run(_verify_token(server_config, token))
    except AuthenticationError:
        click.echo("Error: The server rejected this token.", err=True)
        sys.exit(1)
    except (APIError, httpx.HTTPError) as e:
        click.echo(f"Error: Could not reach {server_config.server_url}: {e}", err=True)
        sys.exit(1)

    try:
        TokenStore(server_config.server_url).save(token)
    except CredentialsError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    config = load_config()
    config["server_url"] = server_config.server_url
    if user_id is not None:
        config["user_id"] = user_id
    save_config(config)

    click.echo(f"Logged in to {server_config.server_url} ({channel_count} channels).")


@click.command()
def logout() -> None:
    """Forget the stored access token."""
    config = load_config()
    server_url = config.get("server_url")
    if not server_url:
        click.echo("Not logged in.")
        return

    TokenStore(server_url).delete()
    click.echo(f"Logged out from {server_url}.")
