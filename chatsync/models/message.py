"""Data models for queued delivery, cache bookkeeping, and statistics.

Defines the outbound QueuedMessage record with its status lifecycle, the
cache metadata blob, and the snapshot dataclasses handed to observers.
"""

import random
import string
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from chatsync.utils.timestamps import utc_now_iso

_TEMP_ID_ALPHABET = string.ascii_lowercase + string.digits

# Keys owned by QueuedMessage; anything else in message data rides in payload.
_CORE_FIELDS = {"id", "chat_id", "content", "type"}


def generate_temp_id() -> str:
    """Generate a client-side id for a queued message (temp_<ms>_<rand>)."""
    suffix = "".join(random.choices(_TEMP_ID_ALPHABET, k=9))
    return f"temp_{int(time.time() * 1000)}_{suffix}"


def message_key(message: dict[str, Any]) -> Any:
    """Identity used to reconcile message dicts.

    Messages without an ``id`` fall back to their timestamp, sender and
    content, so the same server record maps to the same key every time.
    """
    if message.get("id") is not None:
        return message["id"]
    return (
        "~anon",
        str(message.get("timestamp")),
        str(message.get("sender_id", message.get("sender", message.get("sender_name")))),
        str(message.get("content")),
    )


class MessageStatus(str, Enum):
    """Status values for outbound queued messages.

    Lifecycle: queued -> sending -> sent (removed from queue)
               sending -> retry_pending -> sending ...
               sending -> failed (kept until retried or cleared)
    """

    queued = "queued"
    sending = "sending"
    retry_pending = "retry_pending"
    failed = "failed"
    sent = "sent"


# Statuses a processing pass will attempt.
DELIVERABLE_STATUSES = frozenset({MessageStatus.queued, MessageStatus.retry_pending})


@dataclass
class QueuedMessage:
    """Outbound message awaiting delivery."""

    id: str
    """Client-generated stable identity."""

    chat_id: str
    """Chat the message belongs to."""

    content: str = ""
    """Message body."""

    type: str = "text"
    """Message kind (text, media, ...)."""

    status: MessageStatus = MessageStatus.queued
    """Current lifecycle state."""

    retry_count: int = 0
    """Number of automatic retries consumed so far."""

    queued_at: str = field(default_factory=utc_now_iso)
    """ISO8601 time the message entered the queue."""

    last_error: str | None = None
    """Text of the most recent send failure."""

    failed_at: str | None = None
    """ISO8601 time the message became failed."""

    next_retry_at: str | None = None
    """ISO8601 time of the scheduled automatic retry."""

    payload: dict[str, Any] = field(default_factory=dict)
    """Extra caller fields forwarded to the send function (attachments, reply_to)."""

    @classmethod
    def from_message_data(cls, chat_id: str, message_data: dict[str, Any]) -> "QueuedMessage":
        """Build a fresh queued entry from caller-supplied message data."""
        extra = {k: v for k, v in message_data.items() if k not in _CORE_FIELDS}
        return cls(
            id=generate_temp_id(),
            chat_id=chat_id,
            content=str(message_data.get("content") or ""),
            type=str(message_data.get("type") or "text"),
            payload=extra,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedMessage":
        """Restore an entry from its persisted dict form.

        Raises:
            KeyError: If id or chat_id is missing.
            ValueError: If status is not a known MessageStatus.
        """
        return cls(
            id=str(data["id"]),
            chat_id=str(data["chat_id"]),
            content=str(data.get("content") or ""),
            type=str(data.get("type") or "text"),
            status=MessageStatus(data.get("status", MessageStatus.queued.value)),
            retry_count=int(data.get("retry_count") or 0),
            queued_at=str(data.get("queued_at") or utc_now_iso()),
            last_error=data.get("last_error"),
            failed_at=data.get("failed_at"),
            next_retry_at=data.get("next_retry_at"),
            payload=dict(data.get("payload") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise for persistence."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_payload(self) -> dict[str, Any]:
        """Build the message data handed to the send function."""
        return {
            **self.payload,
            "chat_id": self.chat_id,
            "content": self.content,
            "type": self.type,
            "temp_id": self.id,
        }

    def to_placeholder(self) -> dict[str, Any]:
        """Render-ready copy used by the cache and the merged message view."""
        return {
            **self.payload,
            "id": self.id,
            "chat_id": self.chat_id,
            "content": self.content,
            "type": self.type,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "queued_at": self.queued_at,
            "timestamp": self.queued_at,
            "is_queued": True,
        }


@dataclass
class CacheMetadata:
    """Per-store bookkeeping used to detect stale or incompatible caches."""

    version: int
    last_updated: str
    expires_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueueStats:
    """Counts of a chat's queued messages by status."""

    total: int = 0
    queued: int = 0
    sending: int = 0
    retry_pending: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ChatCacheStats:
    """Cache summary for a single chat."""

    message_count: int = 0
    oldest_message: Any = None
    newest_message: Any = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CacheStats:
    """Aggregate view over every cached chat."""

    total_caches: int = 0
    total_messages: int = 0
    total_size: int = 0
    """Approximate size of the stored blobs in bytes."""
    current_chat_messages: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class OverallStats:
    """Engine-wide counters across all chats."""

    is_online: bool
    total_queued: int = 0
    total_cached: int = 0
    total_failed: int = 0
    active_chats: int = 0
    cached_chats: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncStatus:
    """Snapshot delivered to a chat's status subscriber."""

    chat_id: str
    is_online: bool
    queue_stats: QueueStats
    cache_stats: ChatCacheStats

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
