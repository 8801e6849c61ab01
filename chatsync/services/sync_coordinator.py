"""Façade tying the outbound queue, the message cache and status delivery.

SyncCoordinator is what a chat client talks to: it sends (or queues)
messages, keeps the cache coherent with deliveries and server snapshots,
builds the merged render view, and pushes SyncStatus snapshots to the one
subscriber each chat may have.

Example:
    monitor = ConnectivityMonitor(online=False)
    async with SyncCoordinator(InMemoryKeyValueStore(), monitor) as sync:
        sync.register_sync_callback(chat_id, on_status, send_fn=api.send)
        await sync.send_message(chat_id, {"content": "hi"}, api.send)
        await monitor.set_online(True)
"""

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from chatsync.db.kv_store import KeyValueStore
from chatsync.models import (
    CacheStats,
    ChatCacheStats,
    MessageStatus,
    OverallStats,
    QueuedMessage,
    QueueStats,
    SyncStatus,
    message_key,
)
from chatsync.services.connectivity import ConnectivityMonitor
from chatsync.services.events import StatusCallback, Subscription, SyncStatusChannel
from chatsync.services.message_cache_store import MessageCacheStore
from chatsync.services.offline_queue_manager import OfflineQueueManager, SendFn
from chatsync.utils.timestamps import timestamp_sort_key

if TYPE_CHECKING:
    from chatsync.cli.config import ChatSyncConfig

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Offline-resilient send, cache and status façade for a chat client.

    Implements the QueueEventObserver protocol to keep the cache in step
    with deliveries and failures.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        connectivity: ConnectivityMonitor,
        *,
        queue_manager: OfflineQueueManager | None = None,
        cache_store: MessageCacheStore | None = None,
    ) -> None:
        self._storage = storage
        self._connectivity = connectivity
        self._cache = cache_store or MessageCacheStore(storage)
        self._queue = queue_manager or OfflineQueueManager(
            storage,
            connectivity,
            reclaim_space=self._cache.evict_old_caches,
        )
        self._status = SyncStatusChannel()
        self._queue.add_observer(self)
        self._remove_listener = connectivity.add_listener(self._on_connectivity_change)
        self._started = False
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: "ChatSyncConfig",
        storage: KeyValueStore,
        connectivity: ConnectivityMonitor,
    ) -> "SyncCoordinator":
        """Build a coordinator whose components follow the given config."""
        cache = MessageCacheStore(
            storage,
            max_storage_size=config.cache.max_storage_size,
            key_prefix=config.cache.key_prefix,
            schema_version=config.cache.schema_version,
            expiry_hours=config.cache.expiry_hours,
        )
        queue = OfflineQueueManager(
            storage,
            connectivity,
            max_retries=config.retry.max_retries,
            retry_delay=config.retry.initial_delay,
            max_retry_delay=config.retry.max_delay,
            backoff_factor=config.retry.backoff_factor,
            max_jitter=config.retry.max_jitter,
            max_queue_size=config.queue.max_queue_size,
            inter_message_delay=config.queue.inter_message_delay,
            key_prefix=config.queue.key_prefix,
            reclaim_space=cache.evict_old_caches,
        )
        return cls(storage, connectivity, queue_manager=queue, cache_store=cache)

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def queue_manager(self) -> OfflineQueueManager:
        return self._queue

    @property
    def cache_store(self) -> MessageCacheStore:
        return self._cache

    # Lifecycle

    async def start(self) -> None:
        """Restore persisted queues."""
        if self._started:
            return
        self._started = True
        restored = await self._queue.load()
        logger.info("Sync coordinator started (restored_queues=%d)", len(restored))

    async def close(self) -> None:
        """Drop subscriptions and stop queue timers. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._status.clear()
        self._remove_listener()
        self._queue.remove_observer(self)
        await self._queue.close()
        self._started = False
        logger.info("Sync coordinator closed")

    async def __aenter__(self) -> "SyncCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def wait_idle(self) -> None:
        await self._queue.wait_idle()

    # Status delivery

    def get_sync_status(self, chat_id: str) -> SyncStatus:
        return SyncStatus(
            chat_id=chat_id,
            is_online=self._connectivity.is_online,
            queue_stats=self._queue.get_queue_stats(chat_id),
            cache_stats=self._cache.chat_stats(chat_id),
        )

    async def _publish(self, chat_id: str) -> None:
        if self._status.has_subscriber(chat_id):
            await self._status.publish(self.get_sync_status(chat_id))

    async def _on_connectivity_change(self, online: bool) -> None:
        for chat_id in self._status.chat_ids():
            await self._publish(chat_id)

    def register_sync_callback(
        self,
        chat_id: str,
        callback: StatusCallback,
        send_fn: SendFn | None = None,
    ) -> Subscription:
        """Subscribe a chat's status callback, replacing any previous one.

        Args:
            chat_id: Chat to follow.
            callback: Receives SyncStatus; sync or async.
            send_fn: Transport used when the chat's queue is drained
                automatically.

        Returns:
            Subscription handle; ``unsubscribe()`` stops delivery.
        """
        subscription = self._status.subscribe(chat_id, callback)
        if send_fn is not None:
            self._queue.set_send_fn(chat_id, send_fn)
            stats = self._queue.get_queue_stats(chat_id)
            if self._connectivity.is_online and (stats.queued or stats.retry_pending):
                self._queue.schedule_processing(chat_id)
        return subscription

    def unregister_sync_callback(self, chat_id: str) -> bool:
        return self._status.unsubscribe(chat_id)

    # QueueEventObserver

    async def on_queue_changed(self, chat_id: str) -> None:
        await self._publish(chat_id)

    async def on_message_sent(
        self, chat_id: str, message: QueuedMessage, result: dict[str, Any]
    ) -> None:
        self._cache.remove(chat_id, message.id)
        if isinstance(result, dict):
            record = dict(result)
            record.setdefault("id", message.id)
            record.setdefault("timestamp", message.queued_at)
            self._cache.add(chat_id, record)

    async def on_message_failed(self, chat_id: str, message: QueuedMessage) -> None:
        self._cache.update(
            chat_id,
            message.id,
            {
                "status": MessageStatus.failed.value,
                "last_error": message.last_error,
                "retry_count": message.retry_count,
            },
        )

    # Sending

    async def send_message(
        self, chat_id: str, message_data: dict[str, Any], send_fn: SendFn | None
    ) -> dict[str, Any]:
        """Send now, or queue and cache a placeholder.

        Raises:
            MissingArgumentError: If chat_id or send_fn is missing.
            QueueFullError: If the chat's queue is full.
        """
        result = await self._queue.enqueue(chat_id, message_data, send_fn)
        if isinstance(result, dict):
            if result.get("is_queued"):
                placeholder = {k: v for k, v in result.items() if k != "send_error"}
                self._cache.add(chat_id, placeholder)
            elif result.get("id") is not None:
                self._cache.add(chat_id, result)
        await self._publish(chat_id)
        return result

    async def process_queue(self, chat_id: str, send_fn: SendFn | None = None) -> None:
        await self._queue.process_queue(chat_id, send_fn)

    async def retry_message(
        self, chat_id: str, message_id: str, send_fn: SendFn | None = None
    ) -> bool:
        reset = await self._queue.retry_message(chat_id, message_id, send_fn)
        if reset and self._find_queued(chat_id, message_id) is not None:
            self._cache.update(
                chat_id,
                message_id,
                {"status": MessageStatus.queued.value, "last_error": None},
            )
        return reset

    async def remove_from_queue(self, chat_id: str, message_id: str) -> bool:
        removed = await self._queue.remove_from_queue(chat_id, message_id)
        if removed:
            self._cache.remove(chat_id, message_id)
            await self._publish(chat_id)
        return removed

    async def clear_failed_messages(self, chat_id: str) -> int:
        failed_ids = [
            m.id
            for m in self._queue.get_queue(chat_id)
            if m.status == MessageStatus.failed
        ]
        removed = await self._queue.clear_failed_messages(chat_id)
        for message_id in failed_ids:
            self._cache.remove(chat_id, message_id)
        if removed:
            await self._publish(chat_id)
        return removed

    def _find_queued(self, chat_id: str, message_id: str) -> QueuedMessage | None:
        for message in self._queue.get_queue(chat_id):
            if message.id == message_id:
                return message
        return None

    # Server reconciliation

    async def sync_with_server_messages(
        self, chat_id: str, server_messages: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Merge a server snapshot into the cache and prune confirmed sends.

        A queued entry counts as confirmed when its id appears as a server
        message's ``id`` or echoed ``temp_id`` with a non-failed status.

        Returns:
            The merged cache contents.
        """
        self._cache.merge(chat_id, server_messages)

        confirmed: set[str] = set()
        for message in server_messages:
            if message.get("status") == MessageStatus.failed.value:
                continue
            for key in ("id", "temp_id"):
                if message.get(key) is not None:
                    confirmed.add(str(message[key]))

            temp_id = message.get("temp_id")
            if temp_id is not None and temp_id != message.get("id"):
                self._cache.remove(chat_id, temp_id)

        queued_ids = {m.id for m in self._queue.get_queue(chat_id)}
        pruned = await self._queue.prune_delivered(chat_id, queued_ids & confirmed)
        logger.info(
            "server_sync chat_id=%s server_count=%d pruned=%d",
            chat_id,
            len(server_messages),
            pruned,
        )
        await self._publish(chat_id)
        return self._cache.get_messages(chat_id)

    def get_merged_messages(
        self, chat_id: str, server_messages: Iterable[dict[str, Any]] = ()
    ) -> list[dict[str, Any]]:
        """Render view: cache, then server (wins), then queued placeholders.

        Queued entries already present (their cached placeholder) are
        overlaid with the live queue status; entries the server echoed by
        ``temp_id`` are left out.
        """
        by_id: dict[Any, dict[str, Any]] = {}
        for message in self._cache.get_messages(chat_id):
            by_id[message_key(message)] = message

        echoed: set[Any] = set()
        for message in server_messages:
            by_id[message_key(message)] = dict(message)
            temp_id = message.get("temp_id")
            if temp_id is not None and temp_id != message.get("id"):
                echoed.add(temp_id)
        for temp_id in echoed:
            by_id.pop(temp_id, None)

        for entry in self._queue.get_queue(chat_id):
            if entry.id in echoed:
                continue
            existing = by_id.get(entry.id)
            if existing is None:
                by_id[entry.id] = entry.to_placeholder()
            else:
                existing.update(
                    status=entry.status.value,
                    last_error=entry.last_error,
                    retry_count=entry.retry_count,
                    is_queued=True,
                )

        return sorted(by_id.values(), key=timestamp_sort_key)

    # Statistics

    def get_queue_stats(self, chat_id: str) -> QueueStats:
        return self._queue.get_queue_stats(chat_id)

    def get_cache_stats(self, chat_id: str) -> ChatCacheStats:
        return self._cache.chat_stats(chat_id)

    def get_storage_stats(self, chat_id: str | None = None) -> CacheStats:
        return self._cache.stats(chat_id)

    def get_overall_stats(self) -> OverallStats:
        stats = OverallStats(is_online=self._connectivity.is_online)
        for chat_id in self._queue.queued_chat_ids():
            queue_stats = self._queue.get_queue_stats(chat_id)
            stats.total_queued += queue_stats.total
            stats.total_failed += queue_stats.failed
            stats.active_chats += 1
        cache_stats = self._cache.stats()
        stats.total_cached = cache_stats.total_messages
        stats.cached_chats = cache_stats.total_caches
        return stats

    # Cache pass-throughs

    def get_queue(self, chat_id: str) -> list[QueuedMessage]:
        return self._queue.get_queue(chat_id)

    def get_cached_messages(self, chat_id: str) -> list[dict[str, Any]]:
        return self._cache.get_messages(chat_id)

    async def cache_messages(self, chat_id: str, messages: list[dict[str, Any]]) -> bool:
        saved = self._cache.save(chat_id, messages)
        await self._publish(chat_id)
        return saved

    async def add_to_cache(self, chat_id: str, message: dict[str, Any]) -> None:
        self._cache.add(chat_id, message)
        await self._publish(chat_id)

    async def update_in_cache(
        self, chat_id: str, message_id: str, patch: dict[str, Any]
    ) -> bool:
        updated = self._cache.update(chat_id, message_id, patch)
        if updated:
            await self._publish(chat_id)
        return updated

    async def remove_from_cache(self, chat_id: str, message_id: str) -> bool:
        removed = self._cache.remove(chat_id, message_id)
        if removed:
            await self._publish(chat_id)
        return removed

    async def clear_cache(self, chat_id: str) -> None:
        self._cache.clear(chat_id)
        await self._publish(chat_id)

    def search_cached_messages(self, chat_id: str, query: str) -> list[dict[str, Any]]:
        return self._cache.search(chat_id, query)

    def get_messages_by_date_range(
        self, chat_id: str, start: Any, end: Any
    ) -> list[dict[str, Any]]:
        return self._cache.get_by_date_range(chat_id, start, end)
