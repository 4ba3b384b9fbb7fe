"""Read state: unread counters, debounced mark-as-read, dwell tracking.

This module provides:
- UnreadCounter: Derives UnreadCount from the notification list
- Debouncer: Per-key coalescing timer (schedule/flush/cancel)
- ReadStateTracker: Debounced, idempotent remote mark-as-read
- DwellTracker: ObservabilityReporter that fires after a dwell time
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Protocol, TypeVar

import httpx

from chatsync.client.errors import APIError
from chatsync.client.sync.types import (
    Notification,
    NotificationKind,
    ReadAck,
    RemoteCallError,
    UnreadCount,
)
from chatsync.core.config import SyncSettings

logger = logging.getLogger(__name__)

K = TypeVar("K")


# =============================================================================
# Unread counters
# =============================================================================


class CounterBucket(str, Enum):
    """Unread counter categories."""

    TEAM_REQUESTS = "team_requests"
    PRIVATE_MESSAGES = "private_messages"
    FRIEND_REQUESTS = "friend_requests"


DEFAULT_BUCKETS: dict[NotificationKind, CounterBucket] = {
    NotificationKind.TEAM_APPLICATION_STORE: CounterBucket.TEAM_REQUESTS,
    NotificationKind.TEAM_APPLICATION_ACCEPT: CounterBucket.TEAM_REQUESTS,
    NotificationKind.TEAM_APPLICATION_REJECT: CounterBucket.TEAM_REQUESTS,
    NotificationKind.CHANNEL_MESSAGE: CounterBucket.PRIVATE_MESSAGES,
}


class UnreadCounter:
    """Maps notification kinds to counter buckets.

    Counts are always recomputed from the notification list, never
    incremented on their own.
    """

    def __init__(self, buckets: Mapping[NotificationKind, CounterBucket] | None = None) -> None:
        self._buckets = dict(DEFAULT_BUCKETS if buckets is None else buckets)

    def bucket_for(self, kind: NotificationKind) -> CounterBucket | None:
        """Get the bucket a notification kind counts towards."""
        return self._buckets.get(kind)

    def count(self, notifications: Iterable[Notification]) -> UnreadCount:
        """Count unread notifications per bucket."""
        totals = dict.fromkeys(CounterBucket, 0)
        for notification in notifications:
            if notification.is_read:
                continue
            bucket = self.bucket_for(notification.kind)
            if bucket is not None:
                totals[bucket] += 1
        return UnreadCount(
            team_requests=totals[CounterBucket.TEAM_REQUESTS],
            private_messages=totals[CounterBucket.PRIVATE_MESSAGES],
            friend_requests=totals[CounterBucket.FRIEND_REQUESTS],
        )


# =============================================================================
# Debounced mark-as-read
# =============================================================================


@dataclass
class _Pending:
    value: int
    handle: asyncio.TimerHandle


class Debouncer(Generic[K]):
    """Coalesces rapid calls per key into one call with the highest value.

    Each schedule() restarts the key's timer; when it expires the callback
    runs once with the maximum value scheduled since the last fire.
    Must be used from a running event loop.
    """

    def __init__(self, delay: float, callback: Callable[[K, int], None]) -> None:
        self._delay = delay
        self._callback = callback
        self._pending: dict[K, _Pending] = {}

    def schedule(self, key: K, value: int) -> None:
        """Schedule (or coalesce) a call for a key."""
        loop = asyncio.get_running_loop()
        current = self._pending.pop(key, None)
        if current is not None:
            current.handle.cancel()
            value = max(value, current.value)
        handle = loop.call_later(self._delay, self._fire, key)
        self._pending[key] = _Pending(value=value, handle=handle)

    def pending(self, key: K) -> int | None:
        """Get the coalesced value waiting for a key."""
        entry = self._pending.get(key)
        return entry.value if entry else None

    def flush(self, key: K | None = None) -> None:
        """Fire pending calls now (one key, or all)."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            entry = self._pending.get(k)
            if entry is not None:
                entry.handle.cancel()
                self._fire(k)

    def cancel(self, key: K | None = None) -> None:
        """Drop pending calls without firing them."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            entry = self._pending.pop(k, None)
            if entry is not None:
                entry.handle.cancel()

    def _fire(self, key: K) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        self._callback(key, entry.value)


class ReadMarker(Protocol):
    """Remote side of mark-as-read."""

    async def mark_channel_read(self, channel_id: int, message_id: int) -> None:
        """Mark a channel read up to a message."""
        ...


class ReadStateTracker:
    """Debounced, idempotent mark-as-read per channel.

    A request is skipped when the message is not newer than the channel's
    read marker or than a call already in flight. Successful calls are
    reported through ``on_ack``; failures are logged and reported through
    ``on_error`` and leave local state untouched.
    """

    def __init__(
        self,
        api: ReadMarker,
        last_read_lookup: Callable[[int], int | None],
        on_ack: Callable[[ReadAck], None],
        settings: SyncSettings | None = None,
        on_error: Callable[[RemoteCallError], None] | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            api: Performs the remote mark-as-read call.
            last_read_lookup: Returns a channel's committed last-read ID.
            on_ack: Called after the server acknowledged a mark-as-read.
            settings: Provides the debounce window.
            on_error: Called with the failure of a remote call.
        """
        settings = settings or SyncSettings()
        self._api = api
        self._last_read = last_read_lookup
        self._on_ack = on_ack
        self._on_error = on_error
        self._debouncer: Debouncer[int] = Debouncer(settings.read_debounce, self._send_later)
        self._in_flight: dict[int, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def _is_stale(self, channel_id: int, message_id: int) -> bool:
        current = self._last_read(channel_id)
        if current is not None and message_id <= current:
            return True
        in_flight = self._in_flight.get(channel_id)
        return in_flight is not None and message_id <= in_flight

    def mark_as_read(self, channel_id: int, message_id: int) -> bool:
        """Request a channel be marked read up to a message.

        Returns:
            True if the request was scheduled, False if it was redundant.
        """
        if self._is_stale(channel_id, message_id):
            logger.debug("Skipping mark-as-read %d/%d: already read", channel_id, message_id)
            return False
        self._debouncer.schedule(channel_id, message_id)
        return True

    def pending(self, channel_id: int) -> int | None:
        """Get the coalesced message ID waiting for a channel."""
        return self._debouncer.pending(channel_id)

    async def flush(self) -> None:
        """Send pending requests now and wait for all calls to finish."""
        self._debouncer.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks)

    def cancel(self) -> None:
        """Drop pending requests and abandon calls in flight."""
        self._debouncer.cancel()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        self._in_flight.clear()

    def _send_later(self, channel_id: int, message_id: int) -> None:
        if self._is_stale(channel_id, message_id):
            return
        self._in_flight[channel_id] = message_id
        task = asyncio.create_task(self._send(channel_id, message_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, channel_id: int, message_id: int) -> None:
        try:
            await self._api.mark_channel_read(channel_id, message_id)
        except (APIError, httpx.HTTPError) as e:
            status_code = getattr(e, "status_code", None)
            error = RemoteCallError("mark_channel_read", str(e), status_code)
            logger.warning("Mark-as-read failed for channel %d: %s", channel_id, e)
            if self._in_flight.get(channel_id) == message_id:
                del self._in_flight[channel_id]
            if self._on_error is not None:
                self._on_error(error)
            return

        if self._in_flight.get(channel_id) == message_id:
            del self._in_flight[channel_id]
        logger.debug("Channel %d marked read up to %d", channel_id, message_id)
        self._on_ack(ReadAck(channel_id=channel_id, message_id=message_id))


# =============================================================================
# Visibility dwell
# =============================================================================


class ObservabilityReporter(Protocol):
    """Receives visibility changes of rendered items from the host UI."""

    def on_became_visible(self, item_id: int, callback: Callable[[], None]) -> None:
        """An item became sufficiently visible."""
        ...

    def on_became_hidden(self, item_id: int) -> None:
        """An item stopped being visible."""
        ...


class DwellTracker:
    """Runs a callback once an item stayed visible for the dwell time.

    Hiding the item before the dwell time elapses cancels the callback.
    This is the ObservabilityReporter the orchestrator feeds from
    message_visible() and message_hidden().
    """

    def __init__(self, dwell_time: float) -> None:
        self._dwell_time = dwell_time
        self._timers: dict[int, asyncio.TimerHandle] = {}

    @property
    def pending(self) -> frozenset[int]:
        """IDs of items whose dwell timer is running."""
        return frozenset(self._timers)

    def on_became_visible(self, item_id: int, callback: Callable[[], None]) -> None:
        if item_id in self._timers:
            return
        loop = asyncio.get_running_loop()
        self._timers[item_id] = loop.call_later(
            self._dwell_time, self._fire, item_id, callback
        )

    def on_became_hidden(self, item_id: int) -> None:
        handle = self._timers.pop(item_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug("Dwell cancelled for %d", item_id)

    def cancel_all(self) -> None:
        """Cancel every running dwell timer."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _fire(self, item_id: int, callback: Callable[[], None]) -> None:
        self._timers.pop(item_id, None)
        try:
            callback()
        except Exception as e:
            logger.warning("Dwell callback for %d failed: %s", item_id, e)
            logger.debug("Full traceback:", exc_info=True)
