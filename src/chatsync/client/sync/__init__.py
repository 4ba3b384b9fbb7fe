"""Real-time chat synchronization engine.

Architecture:
    ConnectionManager → classify() → SyncOrchestrator ← ChannelMessageMerger
                                           ↑
                              ReadStateTracker / DwellTracker

Components:
- **ConnectionManager**: Push socket lifecycle with backoff reconnect
- **classify**: Turns raw push frames into typed events
- **DeduplicationEngine**: Identity/fuzzy dedup of messages, keyed upsert
  of notifications
- **ChannelMessageMerger**: Token-guarded merge of history and live messages
- **ReadStateTracker / UnreadCounter / DwellTracker**: Read state
- **SyncOrchestrator**: Owns the canonical state and publishes snapshots
"""

from chatsync.client.sync.channels import (
    dedupe_private_channels,
    filter_channels,
    find_direct_channel,
    sort_channels,
)
from chatsync.client.sync.classifier import classify
from chatsync.client.sync.connection import ConnectionManager, EndpointProvider
from chatsync.client.sync.dedup import (
    DeduplicationEngine,
    NotificationUpsert,
    UpsertAction,
    contains,
    normalize,
    retry_similarity,
    similarity,
)
from chatsync.client.sync.merger import ChannelMessageMerger, LoadTicket, Selection
from chatsync.client.sync.orchestrator import ChatAPI, SyncOrchestrator, SyncSnapshot
from chatsync.client.sync.read_state import (
    CounterBucket,
    Debouncer,
    DwellTracker,
    ObservabilityReporter,
    ReadStateTracker,
    UnreadCounter,
)
from chatsync.client.sync.retry import backoff_delay
from chatsync.client.sync.types import (
    AuthError,
    Channel,
    ChannelType,
    ChatMessageEvent,
    ChatSyncError,
    ConnectionState,
    ErrorEvent,
    InvariantError,
    LoadOutcome,
    LocalIdGenerator,
    MalformedFrameError,
    MergeResult,
    Message,
    Notification,
    NotificationEvent,
    NotificationKind,
    PushEvent,
    ReadAck,
    RemoteCallError,
    SendResult,
    TransportError,
    UnreadCount,
    Unrecognized,
    UserSummary,
)

__all__ = [
    # Errors
    "AuthError",
    "ChatSyncError",
    "InvariantError",
    "MalformedFrameError",
    "RemoteCallError",
    "TransportError",
    # Data model
    "Channel",
    "ChannelType",
    "ConnectionState",
    "LocalIdGenerator",
    "Message",
    "Notification",
    "NotificationKind",
    "UnreadCount",
    "UserSummary",
    # Events
    "ChatMessageEvent",
    "ErrorEvent",
    "NotificationEvent",
    "PushEvent",
    "Unrecognized",
    "classify",
    # Results
    "LoadOutcome",
    "MergeResult",
    "ReadAck",
    "SendResult",
    # Connection
    "ConnectionManager",
    "EndpointProvider",
    "backoff_delay",
    # Dedup & merge
    "ChannelMessageMerger",
    "DeduplicationEngine",
    "LoadTicket",
    "NotificationUpsert",
    "Selection",
    "UpsertAction",
    "contains",
    "normalize",
    "retry_similarity",
    "similarity",
    # Read state
    "CounterBucket",
    "Debouncer",
    "DwellTracker",
    "ObservabilityReporter",
    "ReadStateTracker",
    "UnreadCounter",
    # Channels
    "dedupe_private_channels",
    "filter_channels",
    "find_direct_channel",
    "sort_channels",
    # Orchestrator
    "ChatAPI",
    "SyncOrchestrator",
    "SyncSnapshot",
]
