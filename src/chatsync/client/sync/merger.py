"""Race-safe merge of channel history with live messages.

This module provides:
- ChannelMessageMerger: Token-guarded history loads per channel selection
- LoadTicket, Selection: Handles returned when a load begins

Each channel selection mints a new token. Live messages for the channel
being loaded are buffered until the history arrives; the history is then
merged with the buffer. A response carrying an older token is superseded
and produces no messages at all.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from chatsync.client.sync.dedup import DeduplicationEngine
from chatsync.client.sync.types import (
    LoadOutcome,
    MergeResult,
    Message,
    RemoteCallError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadTicket:
    """Identifies one history load."""

    channel_id: int
    token: int


@dataclass(frozen=True)
class Selection:
    """Result of beginning a load.

    Attributes:
        ticket: Ticket to pass to resolve() or fail().
        released: Live messages buffered by a load this selection
            superseded. They belong to ``released_channel_id`` and must
            still be committed there.
        released_channel_id: Channel of the released messages.
    """

    ticket: LoadTicket
    released: tuple[Message, ...] = ()
    released_channel_id: int | None = None


class ChannelMessageMerger:
    """Tracks the current channel load and produces merge results.

    The merger never touches committed state; it receives the committed
    sequence and returns a proposed one in a MergeResult.
    """

    def __init__(self, dedup: DeduplicationEngine) -> None:
        self._dedup = dedup
        self._tokens = itertools.count(1)
        self._current: LoadTicket | None = None
        self._settled = True
        self._buffer: list[Message] = []

    @property
    def current(self) -> LoadTicket | None:
        """Get the ticket of the latest selection."""
        return self._current

    @property
    def loading_channel(self) -> int | None:
        """Channel whose history is in flight, if any."""
        if self._current is None or self._settled:
            return None
        return self._current.channel_id

    def is_loading(self, channel_id: int) -> bool:
        """Check if history for the channel is in flight."""
        return self.loading_channel == channel_id

    def begin(self, channel_id: int) -> Selection:
        """Start a load for a channel selection, superseding any other."""
        released: tuple[Message, ...] = ()
        released_channel: int | None = None
        carried: list[Message] = []

        previous = self.loading_channel
        if previous is not None and self._buffer:
            if previous == channel_id:
                carried = self._buffer
            else:
                released = tuple(self._buffer)
                released_channel = previous

        if previous is not None:
            logger.debug("Load of channel %d superseded by channel %d", previous, channel_id)

        ticket = LoadTicket(channel_id=channel_id, token=next(self._tokens))
        self._current = ticket
        self._settled = False
        self._buffer = carried
        return Selection(ticket=ticket, released=released, released_channel_id=released_channel)

    def buffer_live(self, message: Message) -> bool:
        """Buffer a live message if its channel is loading.

        Returns:
            True if buffered; False if the caller should commit it directly.
        """
        if not self.is_loading(message.channel_id):
            return False
        self._buffer.append(message)
        return True

    def is_current(self, ticket: LoadTicket) -> bool:
        """Check if a ticket belongs to the latest, unsettled selection."""
        return ticket == self._current and not self._settled

    def resolve(
        self,
        ticket: LoadTicket,
        history: Iterable[Message],
        existing: Sequence[Message],
    ) -> MergeResult:
        """Merge fetched history with buffered live messages.

        Args:
            ticket: Ticket returned by begin().
            history: Messages returned by the history request.
            existing: Committed messages of the channel.

        Returns:
            SETTLED with the proposed sequence, or SUPERSEDED (no messages)
            if a newer selection was made or the ticket already settled.
        """
        if not self.is_current(ticket):
            logger.debug("Discarding superseded history for channel %d", ticket.channel_id)
            return MergeResult(LoadOutcome.SUPERSEDED, ticket.channel_id, ticket.token)

        messages = self._dedup.merge_messages(existing, [*history, *self._buffer])
        self._finish()
        logger.info("Channel %d settled with %d messages", ticket.channel_id, len(messages))
        return MergeResult(LoadOutcome.SETTLED, ticket.channel_id, ticket.token, messages)

    def fail(
        self,
        ticket: LoadTicket,
        error: RemoteCallError,
        existing: Sequence[Message],
    ) -> MergeResult:
        """Settle a failed load, keeping buffered live messages."""
        if not self.is_current(ticket):
            return MergeResult(LoadOutcome.SUPERSEDED, ticket.channel_id, ticket.token)

        messages = self._dedup.merge_messages(existing, self._buffer)
        self._finish()
        return MergeResult(
            LoadOutcome.FAILED, ticket.channel_id, ticket.token, messages, error
        )

    def _finish(self) -> None:
        self._settled = True
        self._buffer = []
