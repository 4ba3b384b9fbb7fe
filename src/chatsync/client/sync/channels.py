"""Channel list helpers: ordering, filtering and direct-message cleanup."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from chatsync.client.sync.types import Channel, ChannelType
from chatsync.core.types import ChannelFilter

logger = logging.getLogger(__name__)

# Lower rank sorts first; unlisted kinds go last
CHANNEL_RANK: dict[ChannelType, int] = {
    ChannelType.PRIVATE: 0,
    ChannelType.TEAM: 1,
    ChannelType.PM: 2,
    ChannelType.PUBLIC: 3,
}
_DEFAULT_RANK = len(CHANNEL_RANK)

_FILTER_TYPES: dict[ChannelFilter, frozenset[ChannelType]] = {
    ChannelFilter.PRIVATE: frozenset({ChannelType.PM}),
    ChannelFilter.TEAM: frozenset({ChannelType.TEAM}),
    ChannelFilter.PUBLIC: frozenset({ChannelType.PUBLIC}),
}


def sort_channels(channels: Iterable[Channel]) -> list[Channel]:
    """Sort channels by kind rank, then name."""
    return sorted(
        channels,
        key=lambda c: (CHANNEL_RANK.get(c.type, _DEFAULT_RANK), c.name.lower(), c.id),
    )


def filter_channels(channels: Iterable[Channel], channel_filter: ChannelFilter) -> list[Channel]:
    """Select the channels shown under a filter tab."""
    if channel_filter is ChannelFilter.ALL:
        return list(channels)
    allowed = _FILTER_TYPES[channel_filter]
    return [c for c in channels if c.type in allowed]


def dedupe_private_channels(channels: Iterable[Channel]) -> list[Channel]:
    """Drop direct-message channels whose participant pair was already seen.

    The first occurrence wins; other channel kinds pass through unchanged.
    """
    seen: set[frozenset[int]] = set()
    result: list[Channel] = []
    for channel in channels:
        if channel.is_direct:
            if channel.users in seen:
                logger.debug("Dropping duplicate direct channel %d", channel.id)
                continue
            seen.add(channel.users)
        result.append(channel)
    return result


def find_direct_channel(
    channels: Iterable[Channel],
    user_id: int,
    current_user_id: int | None = None,
) -> Channel | None:
    """Find the direct-message channel with a user, if any."""
    for channel in channels:
        if not channel.is_direct:
            continue
        if channel.counterpart_id(current_user_id) == user_id:
            return channel
        if channel.counterpart is not None and channel.counterpart.id == user_id:
            return channel
    return None
