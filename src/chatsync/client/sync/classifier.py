"""Classification of raw push frames into typed events.

This module provides:
- classify: Map a decoded push frame to push events

Recognized frame shapes:
    {"error": "..."}                                          -> ErrorEvent
    {"event": "chat.message.new", "data": {"messages": [...]}} -> ChatMessageEvent per message
    {"event": "new_message", "data": {"message": {...}}}       -> ChatMessageEvent
    {"event": "message", "data": {...message fields...}}       -> ChatMessageEvent
    {...message fields...}                                     -> ChatMessageEvent
    {"event": "new_private_notification", "data": {...}}       -> NotificationEvent
    {"event": "new", "data": {"category": ..., "name": ...}}   -> NotificationEvent

Everything else becomes Unrecognized. Classification only looks at the
frame itself, so the same frame always yields the same events.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from chatsync.client.sync.types import (
    ChatMessageEvent,
    ErrorEvent,
    MalformedFrameError,
    Message,
    NotificationEvent,
    NotificationKind,
    PushEvent,
    Unrecognized,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = frozenset({"chat.message.new", "new_message", "message"})
PRIVATE_NOTIFICATION_EVENT = "new_private_notification"
NOTIFICATION_EVENT = "new"

REQUIRED_MESSAGE_FIELDS = ("message_id", "channel_id", "content", "sender_id", "timestamp")

# details.type of a channel notification -> notification kind
CHANNEL_KIND_BY_TYPE: dict[str, NotificationKind] = {
    "pm": NotificationKind.CHANNEL_MESSAGE,
    "team": NotificationKind.CHANNEL_TEAM,
    "public": NotificationKind.CHANNEL_PUBLIC,
    "private": NotificationKind.CHANNEL_PRIVATE,
    "multiplayer": NotificationKind.CHANNEL_MULTIPLAYER,
    "spectator": NotificationKind.CHANNEL_SPECTATOR,
    "temporary": NotificationKind.CHANNEL_TEMPORARY,
    "group": NotificationKind.CHANNEL_GROUP,
    "system": NotificationKind.CHANNEL_SYSTEM,
    "announce": NotificationKind.CHANNEL_ANNOUNCE,
}


def classify(frame: Any) -> list[PushEvent]:
    """Classify a decoded push frame.

    Args:
        frame: The JSON-decoded frame.

    Returns:
        One ChatMessageEvent per message carried by the frame, or exactly
        one NotificationEvent, ErrorEvent or Unrecognized. Never empty.
    """
    if not isinstance(frame, Mapping):
        return [Unrecognized(f"frame is not an object: {type(frame).__name__}")]

    # An explicit error wins over any other content of the frame
    error = frame.get("error")
    if error:
        return [ErrorEvent(str(error))]

    event = frame.get("event")
    data = frame.get("data")

    if event in MESSAGE_EVENTS:
        return _classify_messages(data if isinstance(data, Mapping) else frame)
    if event == PRIVATE_NOTIFICATION_EVENT:
        return [_classify_private_notification(data)]
    if event == NOTIFICATION_EVENT:
        return [_classify_notification(data)]
    if event is None and all(key in frame for key in REQUIRED_MESSAGE_FIELDS):
        return _classify_messages(frame)

    return [Unrecognized(f"unknown event: {event!r}")]


def _classify_messages(payload: Mapping[str, Any]) -> list[PushEvent]:
    messages = payload.get("messages")
    if isinstance(messages, list):
        raw_messages = messages
    elif isinstance(payload.get("message"), Mapping):
        raw_messages = [payload["message"]]
    else:
        raw_messages = [payload]

    events: list[PushEvent] = []
    for raw in raw_messages:
        if not isinstance(raw, Mapping):
            logger.debug("Skipping non-object message entry: %r", raw)
            continue
        # Nested messages may rely on the wrapper for their channel
        if "channel_id" not in raw and "channel_id" in payload:
            raw = {**raw, "channel_id": payload["channel_id"]}
        try:
            message = Message.from_dict(raw)
        except MalformedFrameError as e:
            logger.debug("Skipping malformed message: %s", e)
            continue
        events.append(ChatMessageEvent(channel_id=message.channel_id, message=message))

    if not events:
        return [Unrecognized("message frame without valid messages")]
    return events


def _optional_user_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _created_at(data: Mapping[str, Any]) -> datetime | None:
    value = data.get("created_at")
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except MalformedFrameError:
        logger.debug("Ignoring invalid created_at: %r", value)
        return None


def _details(data: Mapping[str, Any]) -> dict[str, Any]:
    details = data.get("details")
    return dict(details) if isinstance(details, Mapping) else {}


def _classify_private_notification(data: Any) -> PushEvent:
    if not isinstance(data, Mapping):
        return Unrecognized("private notification without data")

    subject_id = data.get("object_id")
    if subject_id is None:
        return Unrecognized("private notification without object_id")

    return NotificationEvent(
        kind=NotificationKind.from_wire(data.get("name")),
        subject_type=str(data.get("object_type") or "channel"),
        subject_id=str(subject_id),
        source_user_id=_optional_user_id(data.get("source_user_id")),
        details=_details(data),
        created_at=_created_at(data),
        is_read=bool(data.get("is_read", False)),
    )


def _classify_notification(data: Any) -> PushEvent:
    if not isinstance(data, Mapping):
        return Unrecognized("notification without data")

    details = _details(data)
    name = data.get("name")
    if data.get("category") == "channel" and name == "channel_message":
        channel_type = str(details.get("type") or "").lower()
        kind = CHANNEL_KIND_BY_TYPE.get(channel_type, NotificationKind.CHANNEL_MESSAGE)
        subject_type = str(data.get("object_type") or "channel")
    else:
        kind = NotificationKind.from_wire(name)
        subject_type = str(data.get("object_type") or "unknown")

    subject_id = data.get("object_id")
    if subject_id is None:
        subject_id = data.get("id")
    if subject_id is None:
        return Unrecognized("notification without object_id")

    return NotificationEvent(
        kind=kind,
        subject_type=subject_type,
        subject_id=str(subject_id),
        source_user_id=_optional_user_id(data.get("source_user_id")),
        details=details,
        created_at=_created_at(data),
        is_read=bool(data.get("is_read", False)),
    )
