"""Watch command for the chatsync CLI.

Commands:
- watch: Run the sync engine and print live updates until interrupted
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

import click

from chatsync.client.api import ChatClient
from chatsync.client.cli.session import Session, require_session
from chatsync.client.sync.connection import ConnectionManager
from chatsync.client.sync.orchestrator import SyncOrchestrator, SyncSnapshot
from chatsync.client.sync.types import ConnectionState, Message, UnreadCount
from chatsync.core.types import ConnectionStatus


def describe_connection(state: ConnectionState) -> str:
    """Human-readable connection status."""
    if state.terminal:
        return f"disconnected ({state.last_error})"
    if state.is_reconnecting:
        return (
            f"reconnecting in {state.retry_delay:.0f}s "
            f"(attempt {state.attempts}, {state.last_error})"
        )
    return state.status.value


class WatchPrinter:
    """Snapshot listener that prints what changed since the last snapshot."""

    def __init__(self, echo: Callable[[str], None] = click.echo) -> None:
        self._echo = echo
        self._seen: set[int] = set()
        self._status: ConnectionStatus | None = None
        self._terminal = False
        self._unread: UnreadCount | None = None
        self._server_error: str | None = None

    def __call__(self, snapshot: SyncSnapshot) -> None:
        self._print_connection(snapshot.connection)
        self._print_messages(snapshot)
        if snapshot.unread != self._unread:
            self._unread = snapshot.unread
            self._echo(
                f"[unread] total={snapshot.unread.total} "
                f"pm={snapshot.unread.private_messages} "
                f"team={snapshot.unread.team_requests}"
            )
        if snapshot.server_error and snapshot.server_error != self._server_error:
            self._server_error = snapshot.server_error
            self._echo(f"[server] {snapshot.server_error}")

    def _print_connection(self, state: ConnectionState) -> None:
        if state.status is self._status and state.terminal == self._terminal:
            return
        self._status = state.status
        self._terminal = state.terminal
        self._echo(f"[connection] {describe_connection(state)}")

    def _print_messages(self, snapshot: SyncSnapshot) -> None:
        for channel_id, messages in snapshot.messages.items():
            channel = snapshot.channel(channel_id)
            label = channel.name if channel and channel.name else str(channel_id)
            for message in messages:
                if message.is_placeholder or message.id in self._seen:
                    continue
                self._seen.add(message.id)
                self._echo(f"#{label} {format_message(message)}")


def format_message(message: Message) -> str:
    """One-line message rendering."""
    sender = message.sender.username if message.sender else str(message.sender_id)
    stamp = message.timestamp.strftime("%H:%M:%S")
    if message.is_action:
        return f"[{stamp}] * {sender} {message.content}"
    return f"[{stamp}] <{sender}> {message.content}"


async def run_watch(session: Session, channel_id: int | None, printer: WatchPrinter) -> None:
    """Run the sync engine until cancelled."""
    async with ChatClient(session.server_config, session.tokens.access_token) as client:
        connection = ConnectionManager(
            endpoints=client,
            token_provider=session.tokens.access_token,
            server_config=session.server_config,
            settings=session.settings,
        )
        orchestrator = SyncOrchestrator(
            client, connection, session.settings, current_user_id=session.user_id
        )
        orchestrator.subscribe(printer)
        await orchestrator.start()
        try:
            if channel_id is not None:
                await orchestrator.select_channel(channel_id)
            await asyncio.Event().wait()
        finally:
            await orchestrator.stop()


@click.command()
@click.option("--channel", "channel_id", type=int, default=None, help="Channel to open.")
def watch(channel_id: int | None) -> None:
    """Follow messages, notifications and connection state live.

    Press Ctrl+C to stop.
    """
    session = require_session()
    printer = WatchPrinter()
    click.echo(f"Watching {session.server_config.server_url} (Ctrl+C to stop)")
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_watch(session, channel_id, printer))
    click.echo("Stopped.")
