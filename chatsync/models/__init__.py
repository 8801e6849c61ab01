"""Data models for the delivery and cache engine."""

from chatsync.models.message import (
    DELIVERABLE_STATUSES,
    CacheMetadata,
    CacheStats,
    ChatCacheStats,
    MessageStatus,
    OverallStats,
    QueuedMessage,
    QueueStats,
    SyncStatus,
    generate_temp_id,
    message_key,
)

__all__ = [
    "DELIVERABLE_STATUSES",
    "CacheMetadata",
    "CacheStats",
    "ChatCacheStats",
    "MessageStatus",
    "OverallStats",
    "QueuedMessage",
    "QueueStats",
    "SyncStatus",
    "generate_temp_id",
    "message_key",
]
