"""Chat commands for the chatsync CLI.

Commands:
- channels: List joined channels
- send: Send a message to a channel
"""

from __future__ import annotations

import asyncio
import sys

import click
import httpx

from chatsync.client.api import APIError, ChatClient
from chatsync.client.cli.session import Session, require_session
from chatsync.client.sync.channels import (
    dedupe_private_channels,
    filter_channels,
    sort_channels,
)
from chatsync.client.sync.types import Channel, ChatSyncError, Message
from chatsync.core.types import ChannelFilter


def format_channel(channel: Channel) -> str:
    """One-line channel description for terminal output."""
    marker = "*" if channel.has_unread else " "
    name = channel.name
    if channel.counterpart is not None:
        name = channel.counterpart.username
    return f"{marker} {channel.id:>8}  {channel.type.value:<11} {name}"


async def _load_channels(session: Session) -> list[Channel]:
    async with ChatClient(session.server_config, session.tokens.access_token) as client:
        return await client.list_channels()


async def _send(session: Session, channel_id: int, content: str, is_action: bool) -> Message:
    async with ChatClient(session.server_config, session.tokens.access_token) as client:
        return await client.send_message(channel_id, content, is_action=is_action)


@click.command()
@click.option(
    "--filter",
    "channel_filter",
    type=click.Choice([f.value for f in ChannelFilter]),
    default=ChannelFilter.ALL.value,
    show_default=True,
    help="Only show one kind of channel.",
)
def channels(channel_filter: str) -> None:
    """List joined channels. Channels with unread messages are marked '*'."""
    session = require_session()
    try:
        loaded = asyncio.run(_load_channels(session))
    except (APIError, httpx.HTTPError, ChatSyncError) as e:
        click.echo(f"Error: Could not load channels: {e}", err=True)
        sys.exit(1)

    shown = filter_channels(
        sort_channels(dedupe_private_channels(loaded)), ChannelFilter(channel_filter)
    )
    if not shown:
        click.echo("No channels.")
        return
    for channel in shown:
        click.echo(format_channel(channel))


@click.command()
@click.argument("channel_id", type=int)
@click.argument("message")
@click.option("--action", is_flag=True, help="Send as an action (/me) message.")
def send(channel_id: int, message: str, action: bool) -> None:
    """Send MESSAGE to the channel CHANNEL_ID."""
    if not message.strip():
        click.echo("Error: Message must not be empty.", err=True)
        sys.exit(1)

    session = require_session()
    try:
        sent = asyncio.run(_send(session, channel_id, message, action))
    except (APIError, httpx.HTTPError, ChatSyncError) as e:
        click.echo(f"Error: Could not send message: {e}", err=True)
        sys.exit(1)

    click.echo(f"Sent message {sent.id} to channel {channel_id}.")
