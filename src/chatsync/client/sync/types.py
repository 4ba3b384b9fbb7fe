"""Shared types and dataclasses for chat synchronization.

This module provides:
- ChatSyncError and subclasses: the error taxonomy of the sync engine
- UserSummary, Channel, Message, Notification: the data model
- UnreadCount, ConnectionState: derived/owned state aggregates
- ChatMessageEvent, NotificationEvent, ErrorEvent, Unrecognized: push events
- LoadOutcome, MergeResult, SendResult, ReadAck: operation results
- LocalIdGenerator: negative IDs for placeholders and pushed notifications
"""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any

from chatsync.core.types import ConnectionStatus

# =============================================================================
# Errors
# =============================================================================


class ChatSyncError(Exception):
    """Base exception for sync engine errors."""


class TransportError(ChatSyncError):
    """Push socket failure; retried according to the backoff policy."""


class AuthError(ChatSyncError):
    """Credential rejected or missing; the socket is not retried."""


class RemoteCallError(ChatSyncError):
    """A REST call failed.

    Never raised across the orchestrator boundary; carried as a value in
    results and snapshots instead.

    Attributes:
        operation: Name of the failed operation (e.g. "get_channel_messages").
        status_code: HTTP status code if the server answered.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")


class MalformedFrameError(ChatSyncError):
    """A payload is missing required fields or has the wrong types."""


class InvariantError(ChatSyncError):
    """A data-model invariant was violated by the caller."""


# =============================================================================
# Data model
# =============================================================================


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp from the wire into an aware datetime.

    Naive timestamps are taken as UTC, which is what the server sends.

    Raises:
        MalformedFrameError: If the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise MalformedFrameError(f"Invalid timestamp: {value!r}") from e
    else:
        raise MalformedFrameError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or value is None:
        raise MalformedFrameError(f"Missing or invalid {key!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedFrameError(f"Missing or invalid {key!r}") from e


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class UserSummary:
    """Minimal user record used to label direct-message channels."""

    id: int
    username: str
    avatar_url: str = ""
    cover_url: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserSummary:
        """Create from API response dictionary."""
        cover = data.get("cover") or {}
        return cls(
            id=_require_int(data, "id"),
            username=str(data.get("username", "")),
            avatar_url=str(data.get("avatar_url") or ""),
            cover_url=str(data.get("cover_url") or cover.get("url") or ""),
        )


class ChannelType(str, Enum):
    """Display kind of a channel (wire values are upper-case)."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    TEAM = "TEAM"
    PM = "PM"
    SYSTEM = "SYSTEM"
    ANNOUNCE = "ANNOUNCE"
    MULTIPLAYER = "MULTIPLAYER"
    SPECTATOR = "SPECTATOR"
    TEMPORARY = "TEMPORARY"
    GROUP = "GROUP"

    @classmethod
    def from_wire(cls, value: Any) -> ChannelType:
        """Parse a wire value case-insensitively.

        Raises:
            MalformedFrameError: If the value is not a known channel kind.
        """
        try:
            return cls(str(value).upper())
        except ValueError as e:
            raise MalformedFrameError(f"Unknown channel type: {value!r}") from e


@dataclass(frozen=True)
class Channel:
    """A conversation container.

    Invariant: ``last_read_id <= last_message_id`` once both are known and
    neither is negative. Violations are clamped on construction.

    Attributes:
        id: Server channel ID.
        name: Display name.
        type: Channel kind.
        users: Participant user IDs.
        last_read_id: Newest message ID the user has read.
        last_message_id: Newest message ID known to exist.
        message_length_limit: Max characters per message.
        description: Channel description.
        moderated: Whether the channel is moderated.
        counterpart: Resolved other participant (direct messages only).
    """

    id: int
    name: str
    type: ChannelType
    users: frozenset[int] = frozenset()
    last_read_id: int | None = None
    last_message_id: int | None = None
    message_length_limit: int = 1000
    description: str = ""
    moderated: bool = False
    counterpart: UserSummary | None = None

    def __post_init__(self) -> None:
        if self.counterpart is not None and self.type is not ChannelType.PM:
            raise InvariantError(
                f"Channel {self.id}: counterpart is only valid for PM channels"
            )
        if self.last_read_id is not None and self.last_read_id < 0:
            object.__setattr__(self, "last_read_id", 0)
        if self.last_message_id is not None and self.last_message_id < 0:
            object.__setattr__(self, "last_message_id", 0)
        if (
            self.last_read_id is not None
            and self.last_message_id is not None
            and self.last_read_id > self.last_message_id
        ):
            object.__setattr__(self, "last_read_id", self.last_message_id)

    @property
    def is_direct(self) -> bool:
        """Check if this is a direct-message channel."""
        return self.type is ChannelType.PM

    @property
    def has_unread(self) -> bool:
        """Check if messages newer than the read marker are known."""
        if self.last_message_id is None:
            return False
        return self.last_message_id > (self.last_read_id or 0)

    def counterpart_id(self, current_user_id: int | None) -> int | None:
        """Get the other participant of a direct-message channel."""
        if not self.is_direct:
            return None
        others = sorted(u for u in self.users if u != current_user_id)
        return others[0] if others else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Channel:
        """Create from API response dictionary."""
        attributes = data.get("current_user_attributes") or {}
        last_read = data.get("last_read_id")
        if last_read is None:
            last_read = attributes.get("last_read_id")
        return cls(
            id=_require_int(data, "channel_id"),
            name=str(data.get("name", "")),
            type=ChannelType.from_wire(data.get("type")),
            users=frozenset(int(u) for u in data.get("users") or []),
            last_read_id=_optional_int(last_read),
            last_message_id=_optional_int(data.get("last_message_id")),
            message_length_limit=int(data.get("message_length_limit") or 1000),
            description=str(data.get("description") or ""),
            moderated=bool(data.get("moderated", False)),
        )


@dataclass(frozen=True)
class Message:
    """An immutable chat message.

    Ordered by ``(timestamp, id)``. Negative IDs are local placeholders
    for messages that have not been acknowledged by the server yet.
    """

    id: int
    channel_id: int
    sender_id: int
    content: str
    timestamp: datetime
    is_action: bool = False
    sender: UserSummary | None = None
    uuid: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Ordering key: timestamp, then identity."""
        return (self.timestamp, self.id)

    @property
    def is_placeholder(self) -> bool:
        """Check if this is a local optimistic entry."""
        return self.id < 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        """Create from a wire/API message object.

        Raises:
            MalformedFrameError: If a required field is missing or invalid.
        """
        content = data.get("content")
        if not isinstance(content, str):
            raise MalformedFrameError("Missing or invalid 'content'")

        sender: UserSummary | None = None
        raw_sender = data.get("sender")
        if isinstance(raw_sender, Mapping) and raw_sender.get("id") is not None:
            sender = UserSummary.from_dict(raw_sender)

        uuid = data.get("uuid")
        return cls(
            id=_require_int(data, "message_id"),
            channel_id=_require_int(data, "channel_id"),
            sender_id=_require_int(data, "sender_id"),
            content=content,
            timestamp=parse_timestamp(data.get("timestamp")),
            is_action=bool(data.get("is_action") or False),
            sender=sender,
            uuid=str(uuid) if uuid else None,
        )


class NotificationKind(str, Enum):
    """Closed set of notification categories."""

    CHANNEL_MESSAGE = "channel_message"
    CHANNEL_TEAM = "channel_team"
    CHANNEL_PUBLIC = "channel_public"
    CHANNEL_PRIVATE = "channel_private"
    CHANNEL_MULTIPLAYER = "channel_multiplayer"
    CHANNEL_SPECTATOR = "channel_spectator"
    CHANNEL_TEMPORARY = "channel_temporary"
    CHANNEL_GROUP = "channel_group"
    CHANNEL_SYSTEM = "channel_system"
    CHANNEL_ANNOUNCE = "channel_announce"
    TEAM_APPLICATION_STORE = "team_application_store"
    TEAM_APPLICATION_ACCEPT = "team_application_accept"
    TEAM_APPLICATION_REJECT = "team_application_reject"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: Any) -> NotificationKind:
        """Parse a wire name, mapping unrecognized names to UNKNOWN."""
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_channel_scoped(self) -> bool:
        """Check if this notification refers to a channel."""
        return self.value.startswith("channel_")


@dataclass(frozen=True)
class Notification:
    """A notification about a subject object (channel, team, ...).

    The de-duplication key is ``(subject_type, subject_id)``; ``id`` is
    either the server ID or a negative local ID for pushed notifications.
    """

    id: int
    kind: NotificationKind
    subject_type: str
    subject_id: str
    created_at: datetime
    source_user_id: int | None = None
    is_read: bool = False
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        """De-duplication key."""
        return (self.subject_type, self.subject_id)

    @property
    def preview(self) -> str:
        """Preview text carried in the details payload (may be truncated)."""
        title = self.details.get("title")
        return title if isinstance(title, str) else ""

    @property
    def detail_type(self) -> str:
        """Lower-cased channel kind from the details payload, if any."""
        value = self.details.get("type")
        return str(value).lower() if value else ""

    @property
    def subject_channel_id(self) -> int | None:
        """Channel ID of the subject, or None if the subject is not a channel."""
        if self.subject_type != "channel" or not self.subject_id.isdigit():
            return None
        return int(self.subject_id)

    def refers_to_channel(self, channel_id: int) -> bool:
        """Check if the subject of this notification is the given channel."""
        return self.subject_channel_id == channel_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Notification:
        """Create from API response dictionary."""
        subject_id = data.get("object_id")
        if subject_id is None:
            raise MalformedFrameError("Missing 'object_id'")
        details = data.get("details")
        return cls(
            id=_require_int(data, "id"),
            kind=NotificationKind.from_wire(data.get("name")),
            subject_type=str(data.get("object_type") or "unknown"),
            subject_id=str(subject_id),
            created_at=parse_timestamp(data.get("created_at")),
            source_user_id=_optional_int(data.get("source_user_id")),
            is_read=bool(data.get("is_read", False)),
            details=dict(details) if isinstance(details, Mapping) else {},
        )


@dataclass(frozen=True)
class UnreadCount:
    """Unread counters per category.

    ``total`` is computed from the categories, so it can never drift.
    """

    team_requests: int = 0
    private_messages: int = 0
    friend_requests: int = 0

    @property
    def total(self) -> int:
        """Sum of all category counters."""
        return self.team_requests + self.private_messages + self.friend_requests


@dataclass(frozen=True)
class ConnectionState:
    """State of the push connection (owned by ConnectionManager).

    Attributes:
        status: Current lifecycle status.
        attempts: Reconnect attempts since the last successful open.
        last_error: Most recent connection error, if any.
        terminal: True once retries are exhausted or auth failed; only an
            external connect() resumes.
        retry_delay: Delay of the currently scheduled reconnect, if any.
    """

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempts: int = 0
    last_error: ChatSyncError | None = None
    terminal: bool = False
    retry_delay: float | None = None

    @property
    def is_open(self) -> bool:
        """Check if the connection is open."""
        return self.status is ConnectionStatus.OPEN

    @property
    def is_reconnecting(self) -> bool:
        """Check if a reconnect is scheduled."""
        return self.retry_delay is not None and not self.terminal


# =============================================================================
# Push events
# =============================================================================


@dataclass(frozen=True)
class ChatMessageEvent:
    """A chat message delivered over the push connection."""

    channel_id: int
    message: Message


@dataclass(frozen=True)
class NotificationEvent:
    """A notification delivered over the push connection.

    ``created_at`` is None when the frame did not carry one; the receiver
    stamps it on arrival.
    """

    kind: NotificationKind
    subject_type: str
    subject_id: str
    source_user_id: int | None = None
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)
    created_at: datetime | None = None
    is_read: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    """An explicit error reported by the server."""

    message: str


@dataclass(frozen=True)
class Unrecognized:
    """A frame that matched no known shape; dropped without effect."""

    reason: str


PushEvent = ChatMessageEvent | NotificationEvent | ErrorEvent | Unrecognized


# =============================================================================
# Operation results
# =============================================================================


class LoadOutcome(Enum):
    """How a channel history load ended."""

    SETTLED = auto()  # Merged and committed
    SUPERSEDED = auto()  # A newer selection won; result discarded
    FAILED = auto()  # History failed; buffered live messages kept


@dataclass(frozen=True)
class MergeResult:
    """Proposed outcome of a channel history load.

    Attributes:
        outcome: How the load ended.
        channel_id: Channel the load was for.
        token: Selection token the load was issued with.
        messages: Proposed committed sequence (empty when superseded).
        error: REST failure, for FAILED outcomes.
    """

    outcome: LoadOutcome
    channel_id: int
    token: int
    messages: tuple[Message, ...] = ()
    error: RemoteCallError | None = None

    @property
    def latest_id(self) -> int | None:
        """Identity of the newest server-acknowledged message."""
        for message in reversed(self.messages):
            if not message.is_placeholder:
                return message.id
        return None


@dataclass(frozen=True)
class SendResult:
    """Result of sending a message."""

    message: Message | None = None
    channel: Channel | None = None
    error: RemoteCallError | None = None

    @property
    def ok(self) -> bool:
        """Check if the send succeeded."""
        return self.error is None and self.message is not None


@dataclass(frozen=True)
class ReadAck:
    """A mark-as-read the server acknowledged."""

    channel_id: int
    message_id: int


# =============================================================================
# Local identities
# =============================================================================


class LocalIdGenerator:
    """Process-scoped generator of local IDs.

    IDs are negative and strictly decreasing, so they never collide with
    server-assigned (positive) IDs or with each other.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def next_id(self) -> int:
        """Get a fresh local ID."""
        return -next(self._counter)
