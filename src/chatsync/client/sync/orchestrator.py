"""Sync orchestrator: owner of the canonical chat state.

This module provides:
- SyncOrchestrator: Wires connection, classifier, dedup, merger and read
  state together and is the single writer of channels, messages,
  notifications and unread counters
- SyncSnapshot: Immutable view handed to consumers
- ChatAPI: Protocol of the REST collaborator

Architecture:
    ChatAPI ──history──► ChannelMessageMerger ─┐
                                               ├─► SyncOrchestrator ─snapshot─► listeners
    ConnectionManager ─frame─► classify() ─────┘          │
                                                  ReadStateTracker / DwellTracker

Every component other than the orchestrator returns proposed results
(MergeResult, NotificationUpsert, ReadAck); only the orchestrator commits.
REST failures are recorded in the snapshot, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import uuid
from collections.abc import Callable, Coroutine, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from chatsync.client.errors import APIError
from chatsync.client.sync.channels import (
    dedupe_private_channels,
    filter_channels,
    find_direct_channel,
    sort_channels,
)
from chatsync.client.sync.classifier import classify
from chatsync.client.sync.dedup import DeduplicationEngine
from chatsync.client.sync.merger import ChannelMessageMerger
from chatsync.client.sync.read_state import DwellTracker, ReadStateTracker, UnreadCounter
from chatsync.client.sync.types import (
    Channel,
    ChannelType,
    ChatMessageEvent,
    ChatSyncError,
    ConnectionState,
    ErrorEvent,
    LoadOutcome,
    LocalIdGenerator,
    MergeResult,
    Message,
    Notification,
    NotificationEvent,
    NotificationKind,
    ReadAck,
    RemoteCallError,
    SendResult,
    UnreadCount,
    UserSummary,
)
from chatsync.core.config import SyncSettings
from chatsync.core.types import ChannelFilter

if TYPE_CHECKING:
    from chatsync.client.api import NotificationsPage
    from chatsync.client.sync.connection import ConnectionManager

logger = logging.getLogger(__name__)

# Failures of a REST call, as seen by the orchestrator
REMOTE_ERRORS: tuple[type[Exception], ...] = (APIError, httpx.HTTPError, ChatSyncError)

SyncListener = Callable[["SyncSnapshot"], None]


class ChatAPI(Protocol):
    """REST collaborator used by the orchestrator."""

    async def list_channels(self) -> list[Channel]: ...

    async def get_channel_messages(
        self,
        channel_id: int,
        limit: int = 50,
        since: int | None = None,
        until: int | None = None,
    ) -> list[Message]: ...

    async def send_message(
        self,
        channel_id: int,
        content: str,
        is_action: bool = False,
        uuid: str | None = None,
    ) -> Message: ...

    async def create_private_message(
        self,
        target_id: int,
        content: str,
        is_action: bool = False,
        uuid: str | None = None,
    ) -> tuple[Channel, Message]: ...

    async def mark_channel_read(self, channel_id: int, message_id: int) -> None: ...

    async def list_notifications(self) -> NotificationsPage: ...

    async def mark_notifications_read(
        self, identities: Sequence[dict[str, Any]]
    ) -> None: ...

    async def get_user(self, user_id: int) -> UserSummary: ...


@dataclass(frozen=True)
class SyncSnapshot:
    """Read-only view of the synchronized state.

    Attributes:
        channels: Channels in display order.
        messages: Committed messages per channel ID.
        notifications: Notifications, newest first.
        unread: Unread counters derived from the notifications.
        connection: Push connection state.
        selected_channel_id: Channel currently shown, if any.
        loading: True while the selected channel's history is in flight.
        last_remote_error: Most recent REST failure.
        server_error: Most recent error reported over the push connection.
    """

    channels: tuple[Channel, ...] = ()
    messages: Mapping[int, tuple[Message, ...]] = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )
    notifications: tuple[Notification, ...] = ()
    unread: UnreadCount = UnreadCount()
    connection: ConnectionState = ConnectionState()
    selected_channel_id: int | None = None
    loading: bool = False
    last_remote_error: RemoteCallError | None = None
    server_error: str | None = None

    def channel(self, channel_id: int) -> Channel | None:
        """Get a channel by ID."""
        return next((c for c in self.channels if c.id == channel_id), None)

    def messages_for(self, channel_id: int) -> tuple[Message, ...]:
        """Get the committed messages of a channel."""
        return self.messages.get(channel_id, ())


def _remote_error(operation: str, error: Exception) -> RemoteCallError:
    return RemoteCallError(operation, str(error), getattr(error, "status_code", None))


class SyncOrchestrator:
    """Single owner of channels, messages, notifications and counters.

    All methods run on the event loop; state changes are published to
    subscribers as SyncSnapshot instances.

    Usage:
        orchestrator = SyncOrchestrator(api, connection, settings, current_user_id=7)
        orchestrator.subscribe(render)
        await orchestrator.start()
        await orchestrator.select_channel(42)
        await orchestrator.send_message("hello")
        await orchestrator.stop()
    """

    def __init__(
        self,
        api: ChatAPI,
        connection: ConnectionManager,
        settings: SyncSettings | None = None,
        current_user_id: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Takes over the connection's frame and state callbacks.

        Args:
            api: REST collaborator.
            connection: Push connection manager for this session.
            settings: Sync tunables.
            current_user_id: ID of the signed-in user.
        """
        self._api = api
        self._connection = connection
        self._settings = settings or SyncSettings()
        self._current_user_id = current_user_id

        self._dedup = DeduplicationEngine(self._settings)
        self._merger = ChannelMessageMerger(self._dedup)
        self._counter = UnreadCounter()
        self._read_tracker = ReadStateTracker(
            api,
            last_read_lookup=self._last_read_of,
            on_ack=self._on_read_ack,
            settings=self._settings,
            on_error=self._on_remote_error,
        )
        self._dwell = DwellTracker(self._settings.dwell_time)
        self._ids = LocalIdGenerator()

        # Canonical state
        self._channels: dict[int, Channel] = {}
        self._messages: dict[int, tuple[Message, ...]] = {}
        self._notifications: tuple[Notification, ...] = ()
        self._unread = UnreadCount()
        self._selected: int | None = None
        self._last_remote_error: RemoteCallError | None = None
        self._server_error: str | None = None

        self._users: dict[int, UserSummary] = {}
        self._listeners: list[SyncListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._poll_task: asyncio.Task[None] | None = None
        self._channel_refresh_pending = False
        self._was_connected = False

        connection.set_frame_handler(self.handle_frame)
        connection.set_state_listener(self._on_connection_state)

    @property
    def current_user_id(self) -> int | None:
        """Get the signed-in user's ID."""
        return self._current_user_id

    # === Lifecycle ===

    async def start(self) -> None:
        """Load channels and notifications, then open the push connection."""
        await self.refresh_channels()
        await self.refresh_notifications()
        await self._connection.connect()
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_notifications())
        logger.info("Sync started")

    async def stop(self) -> None:
        """Send pending reads, close the connection and stop background work."""
        await self._cancel_polling()
        self._dwell.cancel_all()
        await self._read_tracker.flush()
        await self._connection.disconnect()
        await self._cancel_tasks()
        logger.info("Sync stopped")

    async def sign_out(self) -> None:
        """Drop the session: pending work, connection, and all state."""
        await self._cancel_polling()
        self._dwell.cancel_all()
        self._read_tracker.cancel()
        await self._connection.disconnect()
        await self._cancel_tasks()

        self._merger = ChannelMessageMerger(self._dedup)
        self._channels.clear()
        self._messages.clear()
        self._notifications = ()
        self._unread = UnreadCount()
        self._selected = None
        self._last_remote_error = None
        self._server_error = None
        self._users.clear()
        self._was_connected = False
        self._notify()
        logger.info("Signed out")

    async def on_visible(self) -> None:
        """Host became active again."""
        await self._connection.on_visible()

    # === Consumers ===

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Register a snapshot listener.

        Returns:
            Function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SyncSnapshot:
        """Build an immutable view of the current state."""
        return SyncSnapshot(
            channels=tuple(sort_channels(self._channels.values())),
            messages=MappingProxyType(dict(self._messages)),
            notifications=self._notifications,
            unread=self._unread,
            connection=self._connection.state,
            selected_channel_id=self._selected,
            loading=self._selected is not None and self._merger.is_loading(self._selected),
            last_remote_error=self._last_remote_error,
            server_error=self._server_error,
        )

    def filter_channels(self, channel_filter: ChannelFilter) -> list[Channel]:
        """Get channels in display order, restricted to a filter tab."""
        return filter_channels(sort_channels(self._channels.values()), channel_filter)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Sync listener failed: %s", e)
                logger.debug("Full traceback:", exc_info=True)

    # === Channels ===

    async def refresh_channels(self) -> None:
        """Reload the channel list from the server."""
        try:
            fetched = await self._api.list_channels()
        except REMOTE_ERRORS as e:
            self._on_remote_error(_remote_error("list_channels", e))
            return
        finally:
            self._channel_refresh_pending = False

        channels: dict[int, Channel] = {}
        for channel in dedupe_private_channels(fetched):
            channels[channel.id] = self._carry_over(channel)
        self._channels = channels
        logger.debug("Loaded %d channels", len(channels))
        self._notify()
        await self._resolve_counterparts()

    def _carry_over(self, channel: Channel) -> Channel:
        """Keep locally known read progress and counterpart on a fetched channel."""
        known = self._channels.get(channel.id)
        last_read = channel.last_read_id
        last_message = channel.last_message_id
        counterpart = None
        if known is not None:
            if known.last_read_id is not None:
                last_read = max(last_read or 0, known.last_read_id)
            if known.last_message_id is not None:
                last_message = max(last_message or 0, known.last_message_id)
            counterpart = known.counterpart
        if channel.is_direct and counterpart is None:
            other = channel.counterpart_id(self._current_user_id)
            counterpart = self._users.get(other) if other is not None else None
        return dataclasses.replace(
            channel,
            last_read_id=last_read,
            last_message_id=last_message,
            counterpart=counterpart if channel.is_direct else None,
        )

    async def _resolve_counterparts(self) -> None:
        """Attach user summaries to direct-message channels."""
        pending = [
            c for c in self._channels.values() if c.is_direct and c.counterpart is None
        ]
        changed = False
        for channel in pending:
            user_id = channel.counterpart_id(self._current_user_id)
            if user_id is None:
                continue
            user = self._users.get(user_id)
            if user is None:
                try:
                    user = await self._api.get_user(user_id)
                except REMOTE_ERRORS as e:
                    logger.warning("Could not resolve user %d: %s", user_id, e)
                    continue
                self._users[user_id] = user

            current = self._channels.get(channel.id)
            if current is None or current.counterpart is not None:
                continue
            self._channels[channel.id] = dataclasses.replace(
                current,
                counterpart=user,
                name=current.name or user.username,
            )
            changed = True

        if changed:
            self._notify()

    def _refresh_channels_soon(self) -> None:
        if self._channel_refresh_pending:
            return
        self._channel_refresh_pending = True
        self._spawn(self.refresh_channels())

    def _discover_private_channels(self, notifications: Iterable[Notification]) -> None:
        """Create direct-message channels announced by notifications."""
        discovered = False
        for notification in notifications:
            if notification.kind is not NotificationKind.CHANNEL_MESSAGE:
                continue
            if notification.detail_type != "pm" or notification.source_user_id is None:
                continue
            channel_id = notification.subject_channel_id
            if channel_id is None:
                continue
            source = notification.source_user_id
            if channel_id in self._channels:
                continue
            if find_direct_channel(self._channels.values(), source, self._current_user_id):
                continue

            users = {source}
            if self._current_user_id is not None:
                users.add(self._current_user_id)
            self._channels[channel_id] = Channel(
                id=channel_id,
                name="",
                type=ChannelType.PM,
                users=frozenset(users),
                last_read_id=0,
                last_message_id=0,
                counterpart=self._users.get(source),
            )
            logger.info("Discovered direct channel %d with user %d", channel_id, source)
            discovered = True

        if discovered:
            self._spawn(self._resolve_counterparts())

    # === Messages ===

    async def select_channel(self, channel_id: int) -> MergeResult:
        """Show a channel: load its history and merge live messages.

        Returns:
            The merge result. SUPERSEDED if another channel was selected
            before the history arrived; FAILED if the history request failed.
        """
        self._selected = channel_id
        selection = self._merger.begin(channel_id)
        if selection.released and selection.released_channel_id is not None:
            self._commit_messages(selection.released_channel_id, selection.released)
        self._notify()

        ticket = selection.ticket
        try:
            history = await self._api.get_channel_messages(
                channel_id, limit=self._settings.history_limit
            )
        except REMOTE_ERRORS as e:
            error = _remote_error("get_channel_messages", e)
            result = self._merger.fail(ticket, error, self._messages.get(channel_id, ()))
            if result.outcome is LoadOutcome.FAILED:
                self._messages[channel_id] = result.messages
                self._on_remote_error(error)
            return result

        result = self._merger.resolve(ticket, history, self._messages.get(channel_id, ()))
        if result.outcome is not LoadOutcome.SETTLED:
            return result

        self._messages[channel_id] = result.messages
        self._advance_last_message(channel_id, result.messages)
        self._notify()
        if result.latest_id is not None:
            self._read_tracker.mark_as_read(channel_id, result.latest_id)
        return result

    async def send_message(
        self,
        content: str,
        is_action: bool = False,
        channel_id: int | None = None,
    ) -> SendResult:
        """Send a message, showing it immediately as a placeholder.

        Args:
            content: Message text.
            is_action: Send as an action message.
            channel_id: Target channel (defaults to the selected one).

        Returns:
            The stored message, or the failure.
        """
        target = channel_id if channel_id is not None else self._selected
        if target is None:
            return SendResult(error=RemoteCallError("send_message", "no channel selected"))

        invalid = self._validate_content(target, content)
        if invalid is not None:
            return SendResult(error=invalid)

        placeholder = Message(
            id=self._ids.next_id(),
            channel_id=target,
            sender_id=self._current_user_id or 0,
            content=content,
            timestamp=datetime.now(UTC),
            is_action=is_action,
            uuid=str(uuid.uuid4()),
        )
        self._commit_messages(target, [placeholder])
        self._notify()

        try:
            message = await self._api.send_message(
                target, content, is_action=is_action, uuid=placeholder.uuid
            )
        except REMOTE_ERRORS as e:
            error = _remote_error("send_message", e)
            self._drop_message(target, placeholder.id)
            self._on_remote_error(error)
            return SendResult(error=error)

        self._drop_message(target, placeholder.id)
        self._commit_messages(target, [message])
        self._notify()
        self._read_tracker.mark_as_read(target, message.id)
        return SendResult(message=message, channel=self._channels.get(target))

    async def start_private_chat(self, target_id: int, content: str) -> SendResult:
        """Message a user, reusing an existing direct channel if there is one."""
        existing = find_direct_channel(
            self._channels.values(), target_id, self._current_user_id
        )
        if existing is not None:
            self._selected = existing.id
            return await self.send_message(content, channel_id=existing.id)

        try:
            channel, message = await self._api.create_private_message(
                target_id, content, uuid=str(uuid.uuid4())
            )
        except REMOTE_ERRORS as e:
            error = _remote_error("create_private_message", e)
            self._on_remote_error(error)
            return SendResult(error=error)

        self._channels[channel.id] = self._carry_over(channel)
        self._commit_messages(channel.id, [message])
        self._selected = channel.id
        self._notify()
        self._spawn(self._resolve_counterparts())
        return SendResult(message=message, channel=self._channels[channel.id])

    def _validate_content(self, channel_id: int, content: str) -> RemoteCallError | None:
        if not content.strip():
            return RemoteCallError("send_message", "message is empty")
        channel = self._channels.get(channel_id)
        if channel is not None and len(content) > channel.message_length_limit:
            return RemoteCallError(
                "send_message",
                f"message exceeds {channel.message_length_limit} characters",
            )
        return None

    def _commit_messages(self, channel_id: int, incoming: Iterable[Message]) -> None:
        merged = self._dedup.merge_messages(self._messages.get(channel_id, ()), incoming)
        self._messages[channel_id] = merged
        self._advance_last_message(channel_id, merged)

    def _drop_message(self, channel_id: int, message_id: int) -> None:
        current = self._messages.get(channel_id, ())
        self._messages[channel_id] = tuple(m for m in current if m.id != message_id)

    def _advance_last_message(self, channel_id: int, messages: Sequence[Message]) -> None:
        channel = self._channels.get(channel_id)
        acknowledged = [m.id for m in messages if not m.is_placeholder]
        if channel is None or not acknowledged:
            return
        newest = max(acknowledged)
        if channel.last_message_id is None or newest > channel.last_message_id:
            self._channels[channel_id] = dataclasses.replace(channel, last_message_id=newest)

    # === Push frames ===

    def handle_frame(self, frame: Any) -> None:
        """Apply one decoded push frame."""
        for event in classify(frame):
            if isinstance(event, ChatMessageEvent):
                self._on_live_message(event.message)
            elif isinstance(event, NotificationEvent):
                self._on_notification(event)
            elif isinstance(event, ErrorEvent):
                logger.warning("Server reported an error: %s", event.message)
                self._server_error = event.message
            else:
                logger.debug("Dropping unrecognized frame: %s", event.reason)
        self._notify()

    def _on_live_message(self, message: Message) -> None:
        if message.channel_id not in self._channels:
            logger.info("Message for unknown channel %d, refreshing channels", message.channel_id)
            self._refresh_channels_soon()
        if self._merger.buffer_live(message):
            logger.debug("Buffered message %d while channel loads", message.id)
            return
        self._commit_messages(message.channel_id, [message])

    def _on_notification(self, event: NotificationEvent) -> None:
        notification = Notification(
            id=self._ids.next_id(),
            kind=event.kind,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            created_at=event.created_at or datetime.now(UTC),
            source_user_id=event.source_user_id,
            is_read=event.is_read,
            details=event.details,
        )
        upsert = self._dedup.upsert_notification(self._notifications, notification)
        if upsert.changed:
            self._set_notifications(upsert.notifications)
        self._discover_private_channels([notification])

    # === Notifications ===

    async def refresh_notifications(self) -> None:
        """Reload notifications from the server."""
        try:
            page = await self._api.list_notifications()
        except REMOTE_ERRORS as e:
            self._on_remote_error(_remote_error("list_notifications", e))
            return

        # Fetched copies win ties; a newer local copy is kept
        self._set_notifications(
            self._dedup.collapse_notifications([*page.notifications, *self._notifications])
        )
        self._discover_private_channels(self._notifications)
        self._notify()

    def _set_notifications(self, notifications: tuple[Notification, ...]) -> None:
        self._notifications = notifications
        self._unread = self._counter.count(notifications)

    async def _poll_notifications(self) -> None:
        while True:
            await asyncio.sleep(self._settings.notification_poll_interval)
            if not self._connection.connected:
                logger.debug("Push connection down, polling notifications")
                await self.refresh_notifications()

    # === Read state ===

    def mark_as_read(self, channel_id: int, message_id: int) -> bool:
        """Request a channel be marked read up to a message (debounced).

        Returns:
            True if a remote call was scheduled, False if already read.
        """
        return self._read_tracker.mark_as_read(channel_id, message_id)

    def message_visible(self, channel_id: int, message_id: int) -> None:
        """A message became visible; mark it read after the dwell time."""
        if message_id < 0:
            return
        self._dwell.on_became_visible(
            message_id, lambda: self.mark_as_read(channel_id, message_id)
        )

    def message_hidden(self, message_id: int) -> None:
        """A message stopped being visible; cancel its pending auto-read."""
        self._dwell.on_became_hidden(message_id)

    def _last_read_of(self, channel_id: int) -> int | None:
        channel = self._channels.get(channel_id)
        return channel.last_read_id if channel is not None else None

    def _on_read_ack(self, ack: ReadAck) -> None:
        channel = self._channels.get(ack.channel_id)
        if channel is not None:
            last_read = max(channel.last_read_id or 0, ack.message_id)
            self._channels[ack.channel_id] = dataclasses.replace(
                channel,
                last_read_id=last_read,
                last_message_id=max(channel.last_message_id or 0, last_read),
            )

        retired = self._retire_notifications(ack)
        self._notify()
        if retired:
            self._spawn(self._report_retired(retired))

    def _retire_notifications(self, ack: ReadAck) -> list[Notification]:
        """Mark read the unread notifications a channel read covers."""
        read_messages = [
            m
            for m in self._messages.get(ack.channel_id, ())
            if not m.is_placeholder and m.id <= ack.message_id
        ]

        def covered(notification: Notification) -> bool:
            if notification.is_read:
                return False
            subject = notification.subject_channel_id
            if subject is not None:
                return subject == ack.channel_id
            # Only notifications without a channel subject are matched by preview
            if not notification.kind.is_channel_scoped or not notification.preview:
                return False
            return any(
                self._dedup.matches_preview(notification.preview, m.content)
                for m in read_messages
                if notification.source_user_id in (None, m.sender_id)
            )

        retired = [n for n in self._notifications if covered(n)]
        if retired:
            retired_ids = {n.id for n in retired}
            self._set_notifications(
                tuple(
                    dataclasses.replace(n, is_read=True) if n.id in retired_ids else n
                    for n in self._notifications
                )
            )
            logger.debug("Retired %d notifications for channel %d", len(retired), ack.channel_id)
        return retired

    async def _report_retired(self, notifications: Sequence[Notification]) -> None:
        identities: list[dict[str, Any]] = []
        for n in notifications:
            if n.id > 0:
                identities.append({"id": n.id})
            else:
                identities.append({"category": n.subject_type, "object_id": n.subject_id})
        try:
            await self._api.mark_notifications_read(identities)
        except REMOTE_ERRORS as e:
            logger.warning("Could not mark notifications read on server: %s", e)

    # === Connection / errors ===

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state.is_open:
            if self._was_connected:
                logger.info("Reconnected, fetching missed notifications")
                self._spawn(self.refresh_notifications())
            self._was_connected = True
        self._notify()

    def _on_remote_error(self, error: RemoteCallError) -> None:
        logger.warning("%s", error)
        self._last_remote_error = error
        self._notify()

    # === Background tasks ===

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _cancel_tasks(self) -> None:
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _cancel_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
