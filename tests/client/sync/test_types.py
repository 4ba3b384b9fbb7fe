"""Tests for the sync data model."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from chatsync.client.sync.types import (
    Channel,
    ChannelType,
    InvariantError,
    LoadOutcome,
    LocalIdGenerator,
    MalformedFrameError,
    MergeResult,
    Message,
    Notification,
    NotificationKind,
    UnreadCount,
    UserSummary,
    parse_timestamp,
)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_zulu_suffix(self) -> None:
        """Should parse a 'Z' suffixed timestamp as UTC."""
        assert parse_timestamp("2025-01-01T10:00:00Z") == datetime(2025, 1, 1, 10, tzinfo=UTC)

    def test_naive_is_utc(self) -> None:
        """Naive timestamps should be taken as UTC."""
        assert parse_timestamp("2025-01-01T10:00:00").tzinfo is UTC

    def test_invalid(self) -> None:
        """Should raise MalformedFrameError on garbage."""
        with pytest.raises(MalformedFrameError):
            parse_timestamp("yesterday")
        with pytest.raises(MalformedFrameError):
            parse_timestamp(None)


class TestChannel:
    """Tests for Channel."""

    def test_last_read_clamped_to_last_message(self) -> None:
        """last_read_id should never exceed last_message_id."""
        channel = Channel(id=1, name="a", type=ChannelType.PUBLIC, last_read_id=50, last_message_id=40)
        assert channel.last_read_id == 40

    def test_negative_ids_clamped(self) -> None:
        """Negative markers should be clamped to zero."""
        channel = Channel(id=1, name="a", type=ChannelType.PUBLIC, last_read_id=-3, last_message_id=-1)
        assert channel.last_read_id == 0
        assert channel.last_message_id == 0

    def test_unknown_markers_left_alone(self) -> None:
        """Unknown markers should stay None."""
        channel = Channel(id=1, name="a", type=ChannelType.PUBLIC, last_read_id=10)
        assert channel.last_read_id == 10
        assert channel.last_message_id is None

    def test_counterpart_only_for_pm(self) -> None:
        """A counterpart on a non-PM channel is a programming error."""
        with pytest.raises(InvariantError):
            Channel(
                id=1,
                name="a",
                type=ChannelType.PUBLIC,
                counterpart=UserSummary(id=2, username="b"),
            )

    def test_counterpart_id(self) -> None:
        """Should return the other participant of a PM channel."""
        channel = Channel(id=1, name="", type=ChannelType.PM, users=frozenset({3, 8}))
        assert channel.counterpart_id(3) == 8
        assert channel.counterpart_id(None) == 3

    def test_has_unread(self) -> None:
        """Should compare the read marker with the newest message."""
        assert Channel(1, "a", ChannelType.PUBLIC, last_read_id=5, last_message_id=9).has_unread
        assert not Channel(1, "a", ChannelType.PUBLIC, last_read_id=9, last_message_id=9).has_unread
        assert not Channel(1, "a", ChannelType.PUBLIC).has_unread

    def test_from_dict_unknown_type(self) -> None:
        """Should reject unknown channel kinds."""
        with pytest.raises(MalformedFrameError):
            Channel.from_dict({"channel_id": 1, "name": "x", "type": "BOGUS"})

    def test_from_dict_lowercase_type(self) -> None:
        """Channel kinds should parse case-insensitively."""
        channel = Channel.from_dict({"channel_id": 1, "name": "x", "type": "team", "users": [1, 2]})
        assert channel.type is ChannelType.TEAM
        assert channel.users == frozenset({1, 2})


class TestMessage:
    """Tests for Message."""

    def test_from_dict(self) -> None:
        """Should parse a wire message with its sender."""
        message = Message.from_dict(
            {
                "message_id": 10,
                "channel_id": 2,
                "content": "hi",
                "timestamp": "2025-01-01T10:00:00Z",
                "sender_id": 7,
                "sender": {"id": 7, "username": "peppy"},
                "uuid": "u-1",
            }
        )
        assert message.id == 10
        assert message.is_action is False
        assert message.sender is not None
        assert message.sender.username == "peppy"
        assert message.uuid == "u-1"

    def test_from_dict_missing_field(self) -> None:
        """Should raise MalformedFrameError when a required field is missing."""
        with pytest.raises(MalformedFrameError):
            Message.from_dict({"message_id": 10, "channel_id": 2, "content": "hi", "sender_id": 7})

    def test_sort_key_ties_broken_by_id(self) -> None:
        """Messages with equal timestamps should order by ID."""
        stamp = datetime(2025, 1, 1, tzinfo=UTC)
        a = Message(id=2, channel_id=1, sender_id=1, content="a", timestamp=stamp)
        b = Message(id=1, channel_id=1, sender_id=1, content="b", timestamp=stamp)
        assert sorted([a, b], key=lambda m: m.sort_key) == [b, a]

    def test_placeholder(self) -> None:
        """Negative IDs mark local placeholders."""
        stamp = datetime(2025, 1, 1, tzinfo=UTC)
        assert Message(id=-1, channel_id=1, sender_id=1, content="a", timestamp=stamp).is_placeholder


class TestNotification:
    """Tests for Notification."""

    def test_from_dict_unknown_name(self) -> None:
        """Unknown names should map to UNKNOWN."""
        notification = Notification.from_dict(
            {
                "id": 1,
                "name": "beatmapset_discussion_post_new",
                "created_at": "2025-01-01T10:00:00Z",
                "object_type": "beatmapset",
                "object_id": 99,
            }
        )
        assert notification.kind is NotificationKind.UNKNOWN
        assert notification.key == ("beatmapset", "99")

    def test_refers_to_channel(self) -> None:
        """Should match channel subjects by ID."""
        notification = Notification(
            id=1,
            kind=NotificationKind.CHANNEL_MESSAGE,
            subject_type="channel",
            subject_id="5",
            created_at=datetime(2025, 1, 1, tzinfo=UTC),
        )
        assert notification.refers_to_channel(5)
        assert not notification.refers_to_channel(6)

    def test_subject_channel_id(self) -> None:
        """Only numeric channel subjects should resolve to a channel."""
        stamp = datetime(2025, 1, 1, tzinfo=UTC)
        channel = Notification(1, NotificationKind.CHANNEL_MESSAGE, "channel", "77", stamp)
        team = Notification(2, NotificationKind.TEAM_APPLICATION_STORE, "team", "77", stamp)
        odd = Notification(3, NotificationKind.CHANNEL_MESSAGE, "channel", "pm-7", stamp)
        assert channel.subject_channel_id == 77
        assert team.subject_channel_id is None
        assert odd.subject_channel_id is None


class TestUnreadCount:
    """Tests for UnreadCount."""

    def test_total_is_sum(self) -> None:
        """total should always be the sum of the categories."""
        count = UnreadCount(team_requests=2, private_messages=3, friend_requests=1)
        assert count.total == 6
        assert UnreadCount().total == 0


class TestMergeResult:
    """Tests for MergeResult."""

    def test_latest_id_skips_placeholders(self) -> None:
        """latest_id should be the newest server-acknowledged message."""
        stamp = datetime(2025, 1, 1, tzinfo=UTC)
        messages = (
            Message(id=5, channel_id=1, sender_id=1, content="a", timestamp=stamp),
            Message(id=-1, channel_id=1, sender_id=1, content="b", timestamp=stamp.replace(hour=1)),
        )
        result = MergeResult(LoadOutcome.SETTLED, 1, 1, messages)
        assert result.latest_id == 5


class TestLocalIdGenerator:
    """Tests for LocalIdGenerator."""

    def test_ids_unique_negative_decreasing(self) -> None:
        """IDs should be negative, unique and strictly decreasing."""
        ids = LocalIdGenerator()
        generated = [ids.next_id() for _ in range(100)]
        assert all(i < 0 for i in generated)
        assert len(set(generated)) == 100
        assert generated == sorted(generated, reverse=True)
