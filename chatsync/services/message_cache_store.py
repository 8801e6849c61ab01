"""Bounded per-chat message cache persisted to a KeyValueStore.

Keeps an in-memory view of each chat's recent history, sorted ascending by
timestamp with unique ids, and persists it after every mutation under
``<key_prefix><chat_id>``. Server snapshots are reconciled with ``merge``
(server copy wins). A single metadata blob records the schema version and,
when expiry is configured, when the whole cache goes stale; a mismatch wipes
every chat's blob.

Persistence problems never propagate: corrupt blobs load as empty lists and
quota failures trigger eviction of other chats followed by one reduced
retry.
"""

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from chatsync.db.kv_store import KeyValueStore
from chatsync.errors import StorageQuotaExceededError, format_error_message
from chatsync.models import CacheMetadata, CacheStats, ChatCacheStats, message_key
from chatsync.utils.timestamps import parse_timestamp, timestamp_sort_key, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "chatsync:cache:"


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class MessageCacheStore:
    """Per-chat bounded message history with server reconciliation."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        max_storage_size: int = 1000,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        schema_version: int = 1,
        expiry_hours: float | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            storage: Durable key-value backend shared with the queue.
            max_storage_size: Messages retained per chat (oldest evicted).
            key_prefix: Namespace for per-chat blobs.
            schema_version: Version stamped into every blob and the metadata.
            expiry_hours: Age after which the whole cache is discarded.
                None keeps caches indefinitely.
        """
        self._storage = storage
        self._max_storage_size = max_storage_size
        self._key_prefix = key_prefix
        self._meta_key = f"{key_prefix.rstrip(':')}-meta"
        self._schema_version = schema_version
        self._expiry_hours = expiry_hours
        self._views: dict[str, list[dict[str, Any]]] = {}
        self._validated = False

    @property
    def max_storage_size(self) -> int:
        return self._max_storage_size

    def _key(self, chat_id: str) -> str:
        return f"{self._key_prefix}{chat_id}"

    def _trim(self, messages: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        return messages[-limit:]

    def _sorted(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return sorted(messages, key=timestamp_sort_key)

    # Metadata

    def metadata(self) -> CacheMetadata | None:
        """Return the persisted metadata, or None if absent or unreadable."""
        try:
            raw = self._storage.get(self._meta_key)
        except Exception as e:
            logger.warning("cache_meta_read_failed error=%s", e)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheMetadata(
                version=int(data["version"]),
                last_updated=str(data["last_updated"]),
                expires_at=data.get("expires_at"),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("cache_meta_corrupt error=%s", e)
            return None

    def is_valid(self) -> bool:
        """Check the stored metadata against the schema version and expiry.

        A store with no metadata yet is valid (nothing to invalidate).
        """
        meta = self.metadata()
        if meta is None:
            return True
        if meta.version != self._schema_version:
            return False
        if self._expiry_hours is not None and meta.expires_at:
            expires = parse_timestamp(meta.expires_at)
            if expires is not None and expires <= datetime.now(UTC):
                return False
        return True

    def _write_metadata(self) -> None:
        now = datetime.now(UTC)
        expires_at = None
        if self._expiry_hours is not None:
            expires_at = (now + timedelta(hours=self._expiry_hours)).isoformat()
        meta = CacheMetadata(
            version=self._schema_version,
            last_updated=now.isoformat(),
            expires_at=expires_at,
        )
        try:
            self._storage.set(self._meta_key, json.dumps(meta.to_dict()))
        except Exception as e:
            logger.warning("cache_meta_write_failed error=%s", e)

    def _ensure_valid(self) -> None:
        """Wipe every cached chat once if the metadata is stale."""
        if self._validated:
            return
        self._validated = True
        meta = self.metadata()
        if meta is None or self.is_valid():
            return
        if meta.version != self._schema_version:
            logger.warning(
                "cache_invalidated code=E-3002 detail=%s",
                format_error_message(
                    "E-3002", found=meta.version, expected=self._schema_version
                ),
            )
        else:
            logger.warning("cache_invalidated reason=expired expires_at=%s", meta.expires_at)
        for key in self._safe_keys():
            self._safe_remove(key)
        self._views.clear()
        self._safe_remove(self._meta_key)

    def _safe_keys(self) -> list[str]:
        try:
            return self._storage.enumerate_keys(self._key_prefix)
        except Exception as e:
            logger.warning("cache_enumerate_failed error=%s", e)
            return []

    def _safe_remove(self, key: str) -> None:
        try:
            self._storage.remove(key)
        except Exception as e:
            logger.warning("cache_remove_failed key=%s error=%s", key, e)

    # Loading and persistence

    def _read_blob(self, chat_id: str) -> list[dict[str, Any]]:
        key = self._key(chat_id)
        try:
            raw = self._storage.get(key)
        except Exception as e:
            logger.warning("cache_read_failed chat_id=%s error=%s", chat_id, e)
            return []
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            version = data.get("version")
            messages = data["messages"]
            if not isinstance(messages, list) or not all(
                isinstance(m, dict) for m in messages
            ):
                raise TypeError("messages must be a list of objects")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "cache_blob_corrupt code=E-3001 chat_id=%s detail=%s",
                chat_id,
                format_error_message("E-3001", key=key, details=e),
            )
            return []
        if version != self._schema_version:
            logger.info(
                "cache_blob_version_mismatch code=E-3002 chat_id=%s detail=%s",
                chat_id,
                format_error_message(
                    "E-3002", found=version, expected=self._schema_version
                ),
            )
            return []
        return messages

    def load(self, chat_id: str) -> list[dict[str, Any]]:
        """Load a chat's cached messages from storage into the view.

        Returns:
            Copy of the loaded list; empty when absent, corrupt, or stale.
        """
        self._ensure_valid()
        messages = self._trim(
            self._sorted(self._read_blob(chat_id)), self._max_storage_size
        )
        self._views[chat_id] = messages
        logger.debug("cache_loaded chat_id=%s count=%d", chat_id, len(messages))
        return [dict(m) for m in messages]

    def _view(self, chat_id: str) -> list[dict[str, Any]]:
        if chat_id not in self._views:
            self.load(chat_id)
        return self._views[chat_id]

    def get_messages(self, chat_id: str) -> list[dict[str, Any]]:
        """Return a copy of the chat's cached messages."""
        return [dict(m) for m in self._view(chat_id)]

    def _serialise(self, messages: list[dict[str, Any]]) -> str:
        return json.dumps(
            {
                "version": self._schema_version,
                "last_updated": utc_now_iso(),
                "messages": messages,
            },
            default=_json_default,
        )

    def _persist(self, chat_id: str) -> bool:
        """Write the chat's view, absorbing quota and storage failures."""
        key = self._key(chat_id)
        messages = self._views.get(chat_id, [])
        try:
            self._storage.set(key, self._serialise(messages))
        except StorageQuotaExceededError:
            evicted = self.evict_old_caches(exclude=chat_id)
            reduced = self._trim(messages, self._max_storage_size // 2)
            logger.warning(
                "cache_quota_exceeded chat_id=%s evicted=%d retry_count=%d",
                chat_id,
                evicted,
                len(reduced),
            )
            self._views[chat_id] = reduced
            try:
                self._storage.set(key, self._serialise(reduced))
            except Exception as e:
                logger.error(
                    "cache_save_failed chat_id=%s after_eviction=true error=%s",
                    chat_id,
                    e,
                )
                return False
        except Exception as e:
            logger.error("cache_save_failed chat_id=%s error=%s", chat_id, e)
            return False
        self._write_metadata()
        return True

    def save(self, chat_id: str, messages: list[dict[str, Any]]) -> bool:
        """Replace a chat's cache with the trailing max_storage_size messages.

        Returns:
            True if the blob was persisted.
        """
        self._ensure_valid()
        self._views[chat_id] = self._trim(
            self._sorted([dict(m) for m in messages]), self._max_storage_size
        )
        return self._persist(chat_id)

    # Mutations

    def add(self, chat_id: str, message: dict[str, Any]) -> None:
        """Insert a message in timestamp order, replacing one with the same id."""
        key = message_key(message)
        view = [m for m in self._view(chat_id) if message_key(m) != key]
        view.append(dict(message))
        self._views[chat_id] = self._trim(self._sorted(view), self._max_storage_size)
        self._persist(chat_id)

    def update(self, chat_id: str, message_id: str, patch: dict[str, Any]) -> bool:
        """Shallow-merge patch into the message with message_id."""
        view = self._view(chat_id)
        for index, message in enumerate(view):
            if message.get("id") == message_id:
                view[index] = {**message, **patch}
                if "timestamp" in patch:
                    self._views[chat_id] = self._sorted(view)
                self._persist(chat_id)
                return True
        return False

    def remove(self, chat_id: str, message_id: str) -> bool:
        view = self._view(chat_id)
        remaining = [m for m in view if m.get("id") != message_id]
        if len(remaining) == len(view):
            return False
        self._views[chat_id] = remaining
        self._persist(chat_id)
        return True

    def merge(
        self, chat_id: str, server_messages: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Reconcile a server snapshot into the cache; server copy wins.

        Idempotent: merging the same snapshot twice yields the same list.

        Returns:
            Copy of the merged, persisted list.
        """
        by_id: dict[Any, dict[str, Any]] = {}
        for message in self._view(chat_id):
            by_id[message_key(message)] = message
        for message in server_messages:
            by_id[message_key(message)] = dict(message)
        self._views[chat_id] = self._trim(
            self._sorted(list(by_id.values())), self._max_storage_size
        )
        self._persist(chat_id)
        logger.debug(
            "cache_merged chat_id=%s server_count=%d total=%d",
            chat_id,
            len(server_messages),
            len(self._views[chat_id]),
        )
        return self.get_messages(chat_id)

    def clear(self, chat_id: str) -> None:
        self._views.pop(chat_id, None)
        self._safe_remove(self._key(chat_id))

    def evict_old_caches(self, exclude: str | None = None) -> int:
        """Remove roughly half of the cached chats, oldest-written first.

        Args:
            exclude: Chat whose cache must survive.

        Returns:
            Number of chat caches removed.
        """
        keep_key = self._key(exclude) if exclude is not None else None
        keys = [k for k in self._safe_keys() if k != keep_key]
        to_remove = keys[: (len(keys) + 1) // 2]
        for key in to_remove:
            self._safe_remove(key)
            self._views.pop(key[len(self._key_prefix):], None)
        if to_remove:
            logger.info(
                "cache_evicted count=%d remaining=%d",
                len(to_remove),
                len(keys) - len(to_remove),
            )
        return len(to_remove)

    # Queries

    def search(self, chat_id: str, query: str) -> list[dict[str, Any]]:
        """Case-insensitive substring match over content and sender_name."""
        messages = self.get_messages(chat_id)
        needle = (query or "").strip().lower()
        if not needle:
            return messages
        return [
            m
            for m in messages
            if needle in str(m.get("content") or "").lower()
            or needle in str(m.get("sender_name") or "").lower()
        ]

    def get_by_date_range(self, chat_id: str, start: Any, end: Any) -> list[dict[str, Any]]:
        """Messages whose timestamp falls within [start, end]."""
        lower = parse_timestamp(start)
        upper = parse_timestamp(end)
        if lower is None or upper is None:
            raise ValueError("start and end must be valid timestamps")
        result = []
        for message in self.get_messages(chat_id):
            ts = parse_timestamp(message.get("timestamp"))
            if ts is not None and lower <= ts <= upper:
                result.append(message)
        return result

    def cached_chat_ids(self) -> list[str]:
        """Chats that have a persisted cache blob."""
        return [k[len(self._key_prefix):] for k in self._safe_keys()]

    def chat_stats(self, chat_id: str) -> ChatCacheStats:
        view = self._view(chat_id)
        if not view:
            return ChatCacheStats()
        return ChatCacheStats(
            message_count=len(view),
            oldest_message=view[0].get("timestamp"),
            newest_message=view[-1].get("timestamp"),
        )

    def stats(self, chat_id: str | None = None) -> CacheStats:
        """Aggregate statistics over every persisted chat cache."""
        total_messages = 0
        total_size = 0
        keys = self._safe_keys()
        for key in keys:
            try:
                raw = self._storage.get(key)
            except Exception as e:
                logger.warning("cache_read_failed key=%s error=%s", key, e)
                continue
            if raw is None:
                continue
            total_size += len(raw.encode("utf-8"))
            try:
                total_messages += len(json.loads(raw).get("messages") or [])
            except (ValueError, TypeError, AttributeError):
                continue
        return CacheStats(
            total_caches=len(keys),
            total_messages=total_messages,
            total_size=total_size,
            current_chat_messages=len(self._view(chat_id)) if chat_id else 0,
        )
