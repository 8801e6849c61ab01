"""Durable per-chat outbound message queue with backoff retries.

Messages that cannot be delivered immediately (offline, or the send failed)
are held in a per-chat FIFO queue persisted under ``<key_prefix><chat_id>``.
Queues are drained when connectivity returns, on explicit process_queue
calls, and by per-message retry timers following the shared BackoffPolicy.

Delivery lifecycle of a queue entry:
    queued -> sending -> sent (removed)
    sending -> retry_pending -> sending ...
    sending -> failed (kept until retried or cleared)

Sends for one chat are serialised by a per-chat lock, so a retry timer and
a processing pass never deliver the same message twice. Persistence
failures are logged and never raised.
"""

import asyncio
import dataclasses
import json
import logging
import random
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from chatsync.db.kv_store import KeyValueStore
from chatsync.errors import (
    MissingArgumentError,
    QueueFullError,
    StorageQuotaExceededError,
    format_error_message,
)
from chatsync.models import (
    DELIVERABLE_STATUSES,
    MessageStatus,
    QueuedMessage,
    QueueStats,
)
from chatsync.services.connectivity import ConnectivityMonitor
from chatsync.services.events import QueueEventEmitter, QueueEventObserver
from chatsync.services.retry_executor import BackoffPolicy
from chatsync.utils.timestamps import EPOCH_MIN, parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

DEFAULT_KEY_PREFIX = "chatsync:queue:"
_QUEUE_BLOB_VERSION = 1


class OfflineQueueManager:
    """Queues, persists and delivers outbound messages per chat.

    Attributes:
        _queues: chat_id -> entries in enqueue order (lazily loaded).
        _send_fns: Last send function seen per chat, used by automatic sweeps.
        _processing: Chats with a processing pass running.
        _rerun: Chats whose running pass must sweep once more.
        _retry_tasks: message id -> pending backoff timer task.
        _background: Sweeps started by connectivity transitions.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        connectivity: ConnectivityMonitor,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        backoff_factor: float = 2.0,
        max_jitter: float | None = None,
        max_queue_size: int = 100,
        inter_message_delay: float = 0.1,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        reclaim_space: Callable[[], int] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._storage = storage
        self._connectivity = connectivity
        self._max_retries = max_retries
        self._max_queue_size = max_queue_size
        self._inter_message_delay = inter_message_delay
        self._key_prefix = key_prefix
        self._reclaim_space = reclaim_space
        self._policy = BackoffPolicy(
            initial_delay=retry_delay,
            max_delay=max_retry_delay,
            backoff_factor=backoff_factor,
            max_jitter=max_jitter,
            rng=rng,
        )

        self._queues: dict[str, list[QueuedMessage]] = {}
        self._send_fns: dict[str, SendFn] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._processing: set[str] = set()
        self._rerun: set[str] = set()
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

        self._events = QueueEventEmitter()
        self._remove_listener = connectivity.add_listener(self._on_connectivity_change)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def max_queue_size(self) -> int:
        return self._max_queue_size

    def add_observer(self, observer: QueueEventObserver) -> None:
        self._events.add_observer(observer)

    def remove_observer(self, observer: QueueEventObserver) -> None:
        self._events.remove_observer(observer)

    def set_send_fn(self, chat_id: str, send_fn: SendFn) -> None:
        """Remember the send function used by automatic sweeps for a chat."""
        self._send_fns[chat_id] = send_fn

    # Persistence

    def _key(self, chat_id: str) -> str:
        return f"{self._key_prefix}{chat_id}"

    def _read_queue(self, chat_id: str) -> list[QueuedMessage]:
        key = self._key(chat_id)
        try:
            raw = self._storage.get(key)
        except Exception as e:
            logger.warning("queue_read_failed chat_id=%s error=%s", chat_id, e)
            return []
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            entries = [QueuedMessage.from_dict(item) for item in data["messages"]]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "queue_blob_corrupt code=E-3001 chat_id=%s detail=%s",
                chat_id,
                format_error_message("E-3001", key=key, details=e),
            )
            return []

        for entry in entries:
            # No send owns these after a restart.
            if entry.status in (MessageStatus.sending, MessageStatus.retry_pending):
                entry.status = MessageStatus.queued
                entry.next_retry_at = None
        return entries

    def _queue(self, chat_id: str) -> list[QueuedMessage]:
        if chat_id not in self._queues:
            self._queues[chat_id] = self._read_queue(chat_id)
        return self._queues[chat_id]

    def _persist(self, chat_id: str) -> None:
        key = self._key(chat_id)
        queue = self._queues.get(chat_id, [])
        if not queue:
            try:
                self._storage.remove(key)
            except Exception as e:
                logger.error("queue_persist_failed chat_id=%s error=%s", chat_id, e)
            return

        blob = json.dumps(
            {
                "version": _QUEUE_BLOB_VERSION,
                "chat_id": chat_id,
                "messages": [m.to_dict() for m in queue],
            },
            default=str,
        )
        try:
            self._storage.set(key, blob)
        except StorageQuotaExceededError as e:
            if self._reclaim_space is None:
                logger.error("queue_persist_failed chat_id=%s error=%s", chat_id, e)
                return
            freed = self._reclaim_space()
            logger.warning(
                "queue_quota_exceeded chat_id=%s reclaimed=%d", chat_id, freed
            )
            try:
                self._storage.set(key, blob)
            except Exception as retry_error:
                logger.error(
                    "queue_persist_failed chat_id=%s after_reclaim=true error=%s",
                    chat_id,
                    retry_error,
                )
        except Exception as e:
            logger.error("queue_persist_failed chat_id=%s error=%s", chat_id, e)

    async def load(self) -> list[str]:
        """Restore every persisted per-chat queue.

        Returns:
            Chat ids with a non-empty restored queue.
        """
        try:
            keys = self._storage.enumerate_keys(self._key_prefix)
        except Exception as e:
            logger.warning("queue_enumerate_failed error=%s", e)
            return []
        restored = []
        for key in keys:
            chat_id = key[len(self._key_prefix):]
            self._queues[chat_id] = self._read_queue(chat_id)
            if self._queues[chat_id]:
                restored.append(chat_id)
        logger.info("Restored %d persisted queue(s)", len(restored))
        return restored

    # Lookup helpers

    def _find(self, chat_id: str, message_id: str) -> QueuedMessage | None:
        for message in self._queue(chat_id):
            if message.id == message_id:
                return message
        return None

    def _contains(self, chat_id: str, message: QueuedMessage) -> bool:
        return any(m is message for m in self._queues.get(chat_id, []))

    def _lock(self, chat_id: str) -> asyncio.Lock:
        if chat_id not in self._locks:
            self._locks[chat_id] = asyncio.Lock()
        return self._locks[chat_id]

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background queue sweep failed: %s", task.exception())

    # Enqueue

    async def enqueue(
        self,
        chat_id: str,
        message_data: dict[str, Any],
        send_fn: SendFn | None,
    ) -> dict[str, Any]:
        """Send a message now, or queue it for later delivery.

        Args:
            chat_id: Target chat.
            message_data: Message fields (content, type, attachments, ...).
            send_fn: Async transport; raises on failure.

        Returns:
            The server result on immediate success, otherwise the queued
            placeholder (``is_queued=True``, plus ``send_error`` when an
            online send failed).

        Raises:
            MissingArgumentError: If chat_id or send_fn is missing.
            QueueFullError: If the chat's queue is at max_queue_size.
        """
        if not chat_id:
            raise MissingArgumentError("chat_id")
        if send_fn is None:
            raise MissingArgumentError("send_fn")
        self._send_fns[chat_id] = send_fn

        message = QueuedMessage.from_message_data(chat_id, message_data or {})
        send_error = None
        if self._connectivity.is_online:
            try:
                return await send_fn(message.to_payload())
            except Exception as e:
                send_error = str(e)
                logger.warning(
                    "Immediate send failed for chat %s, queueing: %s", chat_id, e
                )

        queue = self._queue(chat_id)
        if len(queue) >= self._max_queue_size:
            raise QueueFullError(chat_id, self._max_queue_size)

        queue.append(message)
        logger.info(
            "queue_enqueued chat_id=%s message_id=%s size=%d",
            chat_id,
            message.id,
            len(queue),
        )
        if send_error is not None:
            # The failed immediate send counts as the first attempt.
            await self._record_failure(chat_id, message, send_error)
        else:
            self._persist(chat_id)
            await self._events.emit_queue_changed(chat_id)

        placeholder = message.to_placeholder()
        if send_error is not None:
            placeholder["send_error"] = send_error
        return placeholder

    # Delivery

    async def _attempt(self, chat_id: str, message: QueuedMessage, send_fn: SendFn) -> bool:
        """Deliver one entry. Caller holds the chat lock."""
        self._cancel_retry(message.id)
        message.status = MessageStatus.sending
        message.next_retry_at = None
        self._persist(chat_id)
        await self._events.emit_queue_changed(chat_id)

        try:
            result = await send_fn(message.to_payload())
        except Exception as e:
            if not self._contains(chat_id, message):
                logger.debug("Message %s removed during send", message.id)
                return False
            await self._record_failure(chat_id, message, str(e))
            return False

        queue = self._queues.get(chat_id, [])
        self._queues[chat_id] = [m for m in queue if m is not message]
        message.status = MessageStatus.sent
        self._persist(chat_id)
        logger.info(
            "queue_delivered chat_id=%s message_id=%s retry_count=%d",
            chat_id,
            message.id,
            message.retry_count,
        )
        await self._events.emit_message_sent(chat_id, message, result)
        await self._events.emit_queue_changed(chat_id)
        return True

    async def _record_failure(
        self, chat_id: str, message: QueuedMessage, error: str
    ) -> None:
        message.last_error = error
        if message.retry_count < self._max_retries:
            message.retry_count += 1
            message.status = MessageStatus.retry_pending
            delay = self._policy.calculate_delay(message.retry_count - 1)
            message.next_retry_at = (
                datetime.now(UTC) + timedelta(seconds=delay)
            ).isoformat()
            self._persist(chat_id)
            logger.warning(
                "queue_retry_scheduled code=E-1003 chat_id=%s message_id=%s "
                "retry_count=%d delay=%.2f detail=%s",
                chat_id,
                message.id,
                message.retry_count,
                delay,
                format_error_message("E-1003", error=error),
            )
            self._schedule_retry(chat_id, message, delay)
            await self._events.emit_queue_changed(chat_id)
            return

        message.status = MessageStatus.failed
        message.failed_at = utc_now_iso()
        message.next_retry_at = None
        self._persist(chat_id)
        logger.error(
            "queue_message_failed code=E-1001 chat_id=%s message_id=%s detail=%s",
            chat_id,
            message.id,
            format_error_message(
                "E-1001", attempts=message.retry_count + 1, error=error
            ),
        )
        await self._events.emit_message_failed(chat_id, message)
        await self._events.emit_queue_changed(chat_id)

    def _schedule_retry(self, chat_id: str, message: QueuedMessage, delay: float) -> None:
        if self._closed:
            return
        self._cancel_retry(message.id)
        self._retry_tasks[message.id] = asyncio.create_task(
            self._run_retry(chat_id, message, delay)
        )

    def _cancel_retry(self, message_id: str) -> None:
        task = self._retry_tasks.pop(message_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_retry(self, chat_id: str, message: QueuedMessage, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._connectivity.is_online:
            # Left retry_pending for the next online sweep.
            if self._retry_tasks.get(message.id) is asyncio.current_task():
                del self._retry_tasks[message.id]
            logger.debug("Retry for %s deferred: offline", message.id)
            return

        async def fire() -> None:
            # Deregistered only under the lock; a sweep that reached the
            # message first has cancelled this timer.
            if self._retry_tasks.get(message.id) is not asyncio.current_task():
                return
            del self._retry_tasks[message.id]
            if (
                not self._contains(chat_id, message)
                or message.status != MessageStatus.retry_pending
                or not self._connectivity.is_online
            ):
                return
            send_fn = self._send_fns.get(chat_id)
            if send_fn is None:
                return
            await self._attempt(chat_id, message, send_fn)

        await self._run_locked(chat_id, fire)

    async def _run_locked(
        self, chat_id: str, work: Callable[[], Awaitable[None]]
    ) -> None:
        """Run work under the chat lock as a processing pass.

        Observers notified while work runs may call process_queue or
        retry_message; those calls coalesce into a follow-up sweep here
        instead of waiting on the lock.
        """
        async with self._lock(chat_id):
            owner = chat_id not in self._processing
            if owner:
                self._processing.add(chat_id)
            try:
                await work()
                while (
                    owner
                    and chat_id in self._rerun
                    and self._connectivity.is_online
                ):
                    self._rerun.discard(chat_id)
                    await self._sweep(chat_id)
            finally:
                if owner:
                    self._processing.discard(chat_id)
                    self._rerun.discard(chat_id)

    async def process_queue(self, chat_id: str, send_fn: SendFn | None = None) -> None:
        """Attempt every queued and retry_pending entry of a chat in order.

        A call arriving while a pass for the chat is running returns at once
        and makes the running pass sweep one more time.
        """
        if send_fn is not None:
            self._send_fns[chat_id] = send_fn
        if chat_id in self._processing:
            self._rerun.add(chat_id)
            logger.debug("Processing already running for chat %s", chat_id)
            return
        if not self._connectivity.is_online:
            return
        if chat_id not in self._send_fns:
            logger.debug("No send function known for chat %s", chat_id)
            return

        self._processing.add(chat_id)
        try:
            async with self._lock(chat_id):
                while True:
                    self._rerun.discard(chat_id)
                    await self._sweep(chat_id)
                    if chat_id not in self._rerun or not self._connectivity.is_online:
                        break
        finally:
            self._processing.discard(chat_id)
            self._rerun.discard(chat_id)

    async def _sweep(self, chat_id: str) -> None:
        pending = sorted(
            (m for m in self._queue(chat_id) if m.status in DELIVERABLE_STATUSES),
            key=lambda m: parse_timestamp(m.queued_at) or EPOCH_MIN,
        )
        if not pending:
            return
        logger.info("queue_processing chat_id=%s pending=%d", chat_id, len(pending))
        attempted = 0
        for message in pending:
            if not self._connectivity.is_online:
                logger.info("Went offline while processing chat %s", chat_id)
                return
            if (
                not self._contains(chat_id, message)
                or message.status not in DELIVERABLE_STATUSES
            ):
                continue
            if attempted and self._inter_message_delay > 0:
                await asyncio.sleep(self._inter_message_delay)
            send_fn = self._send_fns.get(chat_id)
            if send_fn is None:
                return
            attempted += 1
            await self._attempt(chat_id, message, send_fn)

    async def process_all_queues(self) -> None:
        """Process every chat that has a queue and a known send function."""
        if not self._connectivity.is_online:
            return
        for chat_id in self.queued_chat_ids():
            if chat_id not in self._send_fns:
                logger.debug("Skipping chat %s: no send function", chat_id)
                continue
            await self.process_queue(chat_id)

    def _on_connectivity_change(self, online: bool) -> None:
        if online and not self._closed:
            self._spawn(self.process_all_queues())

    def schedule_processing(self, chat_id: str) -> None:
        """Start process_queue for a chat in the background."""
        if not self._closed:
            self._spawn(self.process_queue(chat_id))

    async def wait_idle(self) -> None:
        """Wait for background sweeps started by connectivity changes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Manual operations

    async def retry_message(
        self, chat_id: str, message_id: str, send_fn: SendFn | None = None
    ) -> bool:
        """Reset a failed entry and re-attempt it when online.

        Returns:
            True if the entry was failed and has been reset.
        """
        message = self._find(chat_id, message_id)
        if message is None or message.status != MessageStatus.failed:
            return False
        if send_fn is not None:
            self._send_fns[chat_id] = send_fn

        message.status = MessageStatus.queued
        message.retry_count = 0
        message.last_error = None
        message.failed_at = None
        message.next_retry_at = None
        self._persist(chat_id)
        logger.info("queue_retry_requested chat_id=%s message_id=%s", chat_id, message_id)
        await self._events.emit_queue_changed(chat_id)

        send = self._send_fns.get(chat_id)
        if not self._connectivity.is_online or send is None:
            return True
        if chat_id in self._processing:
            # The running pass picks the entry up on its follow-up sweep.
            self._rerun.add(chat_id)
            return True

        async def attempt() -> None:
            if (
                self._contains(chat_id, message)
                and message.status == MessageStatus.queued
            ):
                await self._attempt(chat_id, message, send)

        await self._run_locked(chat_id, attempt)
        return True

    async def remove_from_queue(self, chat_id: str, message_id: str) -> bool:
        """Drop an entry and cancel its pending retry."""
        queue = self._queue(chat_id)
        remaining = [m for m in queue if m.id != message_id]
        if len(remaining) == len(queue):
            return False
        self._cancel_retry(message_id)
        self._queues[chat_id] = remaining
        self._persist(chat_id)
        await self._events.emit_queue_changed(chat_id)
        return True

    async def clear_failed_messages(self, chat_id: str) -> int:
        """Drop every failed entry of a chat.

        Returns:
            Number of entries removed.
        """
        queue = self._queue(chat_id)
        remaining = [m for m in queue if m.status != MessageStatus.failed]
        removed = len(queue) - len(remaining)
        if removed:
            self._queues[chat_id] = remaining
            self._persist(chat_id)
            logger.info("queue_failed_cleared chat_id=%s count=%d", chat_id, removed)
            await self._events.emit_queue_changed(chat_id)
        return removed

    async def prune_delivered(self, chat_id: str, message_ids: Iterable[str]) -> int:
        """Drop entries the server has confirmed by id.

        Returns:
            Number of entries removed.
        """
        ids = set(message_ids)
        queue = self._queue(chat_id)
        remaining = [m for m in queue if m.id not in ids]
        removed = len(queue) - len(remaining)
        if removed:
            for message in queue:
                if message.id in ids:
                    self._cancel_retry(message.id)
            self._queues[chat_id] = remaining
            self._persist(chat_id)
            logger.info("queue_pruned chat_id=%s count=%d", chat_id, removed)
            await self._events.emit_queue_changed(chat_id)
        return removed

    # Queries

    def get_queue(self, chat_id: str) -> list[QueuedMessage]:
        """Copies of a chat's entries in enqueue order."""
        return [
            dataclasses.replace(m, payload=dict(m.payload)) for m in self._queue(chat_id)
        ]

    def get_queue_stats(self, chat_id: str) -> QueueStats:
        queue = self._queue(chat_id)
        stats = QueueStats(total=len(queue))
        for message in queue:
            if message.status == MessageStatus.queued:
                stats.queued += 1
            elif message.status == MessageStatus.sending:
                stats.sending += 1
            elif message.status == MessageStatus.retry_pending:
                stats.retry_pending += 1
            elif message.status == MessageStatus.failed:
                stats.failed += 1
        return stats

    def queued_chat_ids(self) -> list[str]:
        """Chats with at least one queue entry, in memory or persisted."""
        chat_ids = [chat_id for chat_id, queue in self._queues.items() if queue]
        try:
            keys = self._storage.enumerate_keys(self._key_prefix)
        except Exception as e:
            logger.warning("queue_enumerate_failed error=%s", e)
            keys = []
        for key in keys:
            chat_id = key[len(self._key_prefix):]
            if chat_id not in self._queues and self._queue(chat_id):
                chat_ids.append(chat_id)
        return chat_ids

    def is_processing(self, chat_id: str) -> bool:
        return chat_id in self._processing

    async def close(self) -> None:
        """Stop timers and sweeps; hand in-flight entries back to the queue."""
        self._closed = True
        self._remove_listener()
        tasks = [*self._retry_tasks.values(), *self._background]
        self._retry_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for chat_id, queue in self._queues.items():
            changed = False
            for message in queue:
                if message.status == MessageStatus.sending:
                    message.status = MessageStatus.queued
                    changed = True
            if changed:
                self._persist(chat_id)
        logger.info("Queue manager closed")
