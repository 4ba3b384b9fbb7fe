"""Deduplication of messages and notifications.

This module provides:
- normalize / similarity / contains: Text matching for notification previews
- retry_similarity: Length-aware similarity for retried sends
- DeduplicationEngine: Identity and fuzzy dedup for messages, keyed
  upsert for notifications
- NotificationUpsert: Proposed outcome of a notification upsert

Messages are deduplicated by server-assigned identity. The only fuzzy
matching on messages is the collapse of near-identical retries by the same
sender within a short window, and the replacement of a local placeholder
by the server's copy of the same message.

Notifications are keyed by (subject_type, subject_id): a newer arrival
replaces the stored one, an older or equal one is discarded.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from chatsync.client.sync.types import Message, Notification

if TYPE_CHECKING:
    from chatsync.core.config import SyncSettings

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Normalize text for comparison.

    Trims, strips punctuation, collapses whitespace and lower-cases.
    """
    text = _PUNCTUATION.sub("", text.strip().lower())
    return _WHITESPACE.sub(" ", text).strip()


def _best_overlap(left: str, right: str) -> tuple[int, int, int]:
    """Best count of matching positions of the shorter string in any window of the longer."""
    shorter, longer = (left, right) if len(left) <= len(right) else (right, left)
    size = len(shorter)
    best = 0
    for start in range(len(longer) - size + 1):
        window = longer[start : start + size]
        matches = sum(1 for x, y in zip(shorter, window) if x == y)
        if matches > best:
            best = matches
            if best == size:
                break
    return best, size, len(longer)


def similarity(a: str, b: str) -> float:
    """Best character-overlap ratio between two strings.

    Both strings are normalized first. The shorter one is compared
    position by position against every window of equal length in the
    longer one; the best ratio of matching positions wins.

    Returns:
        Ratio in [0, 1]; 0 if either string is empty after normalizing.
    """
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return 0.0
    best, size, _ = _best_overlap(left, right)
    return best / size


def contains(a: str, b: str) -> bool:
    """Check if either normalized string contains the other."""
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return False
    return left in right or right in left


def retry_similarity(a: str, b: str) -> float:
    """Overlap ratio measured against the longer string.

    Unlike similarity(), a short text contained in a longer one scores
    low, so "hi" and "hi there" are not treated as the same message.
    """
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return 0.0
    best, _, longest = _best_overlap(left, right)
    return best / longest


class UpsertAction(Enum):
    """What a notification upsert did."""

    INSERTED = auto()
    REPLACED = auto()
    DISCARDED = auto()


@dataclass(frozen=True)
class NotificationUpsert:
    """Proposed notification list after an upsert.

    Attributes:
        action: What the upsert did.
        notifications: Proposed list, newest first.
        previous: The entry that was replaced or that caused the discard.
    """

    action: UpsertAction
    notifications: tuple[Notification, ...]
    previous: Notification | None = None

    @property
    def changed(self) -> bool:
        """Check if the list changed."""
        return self.action is not UpsertAction.DISCARDED


def _newest_first(notifications: Iterable[Notification]) -> tuple[Notification, ...]:
    return tuple(sorted(notifications, key=lambda n: (n.created_at, n.id), reverse=True))


class DeduplicationEngine:
    """Decides whether incoming records duplicate stored ones.

    Stateless apart from its thresholds; every method returns a proposed
    result and never mutates its inputs.
    """

    def __init__(self, settings: SyncSettings) -> None:
        self._preview_threshold = settings.preview_match_threshold
        self._retry_threshold = settings.retry_match_threshold
        self._retry_window = settings.retry_window
        self._preview_length = settings.preview_length

    # === Messages ===

    @staticmethod
    def is_duplicate(message: Message, existing: Iterable[Message]) -> bool:
        """Check if a message with the same identity already exists."""
        return any(m.id == message.id for m in existing)

    def is_retry_of(self, candidate: Message, other: Message) -> bool:
        """Check if two distinct messages are near-identical sends.

        Both must be in the same channel, from the same sender, within
        the retry window, with content similarity above the retry threshold.
        """
        if candidate.id == other.id:
            return False
        if candidate.channel_id != other.channel_id or candidate.sender_id != other.sender_id:
            return False
        if candidate.is_action != other.is_action:
            return False
        gap = abs((candidate.timestamp - other.timestamp).total_seconds())
        if gap > self._retry_window:
            return False
        return retry_similarity(candidate.content, other.content) > self._retry_threshold

    def _replaces_placeholder(self, message: Message, placeholder: Message) -> bool:
        if not placeholder.is_placeholder or message.is_placeholder:
            return False
        if message.uuid and placeholder.uuid:
            return message.uuid == placeholder.uuid
        return self.is_retry_of(message, placeholder)

    def merge_messages(
        self,
        existing: Sequence[Message],
        incoming: Iterable[Message],
    ) -> tuple[Message, ...]:
        """Merge incoming messages into an existing sequence.

        Args:
            existing: Currently committed messages of one channel.
            incoming: New messages (history page or live deliveries).

        Returns:
            Proposed sequence sorted by (timestamp, id) with unique identities.
        """
        by_id: dict[int, Message] = {m.id: m for m in existing}

        for message in incoming:
            if message.id in by_id:
                logger.debug("Dropping duplicate message %d", message.id)
                continue

            placeholder = next(
                (m for m in by_id.values() if self._replaces_placeholder(message, m)),
                None,
            )
            if placeholder is not None:
                logger.debug(
                    "Message %d replaces placeholder %d", message.id, placeholder.id
                )
                del by_id[placeholder.id]
                by_id[message.id] = message
                continue

            if any(self.is_retry_of(message, m) for m in by_id.values()):
                logger.debug("Collapsing retried message %d", message.id)
                continue

            by_id[message.id] = message

        return tuple(sorted(by_id.values(), key=lambda m: m.sort_key))

    # === Notifications ===

    @staticmethod
    def upsert_notification(
        existing: Sequence[Notification],
        incoming: Notification,
    ) -> NotificationUpsert:
        """Insert or replace a notification by its subject key.

        Returns:
            Proposed list; a stored entry is only replaced by a strictly
            newer one.
        """
        current = next((n for n in existing if n.key == incoming.key), None)
        if current is None:
            return NotificationUpsert(
                UpsertAction.INSERTED, _newest_first([*existing, incoming])
            )
        if incoming.created_at > current.created_at:
            rest = [n for n in existing if n.key != incoming.key]
            return NotificationUpsert(
                UpsertAction.REPLACED, _newest_first([*rest, incoming]), current
            )
        logger.debug("Discarding stale notification for %s/%s", *incoming.key)
        return NotificationUpsert(UpsertAction.DISCARDED, tuple(existing), current)

    @staticmethod
    def collapse_notifications(
        notifications: Iterable[Notification],
    ) -> tuple[Notification, ...]:
        """Keep the newest notification per subject key, newest first."""
        newest: dict[tuple[str, str], Notification] = {}
        for notification in notifications:
            current = newest.get(notification.key)
            if current is None or notification.created_at > current.created_at:
                newest[notification.key] = notification
        return _newest_first(newest.values())

    def matches_preview(self, preview: str, content: str) -> bool:
        """Check if a notification preview refers to a message's content."""
        if contains(preview, content):
            return True
        if similarity(preview, content) > self._preview_threshold:
            return True
        # Previews are cut to a fixed length by the server
        head = content[: self._preview_length]
        return similarity(preview, head) > self._preview_threshold
