"""Observer plumbing for queue lifecycle events and per-chat sync status.

Provides the QueueEventObserver protocol with its QueueEventEmitter, and the
SyncStatusChannel that delivers SyncStatus snapshots to one subscriber per
chat through revocable Subscription handles.
"""

import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol

from chatsync.models import QueuedMessage, SyncStatus

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SyncStatus], Any]


class QueueEventObserver(Protocol):
    """Observer protocol for outbound queue events."""

    async def on_queue_changed(self, chat_id: str) -> None:
        """Called after a chat's queue was mutated and persisted.

        Args:
            chat_id: Chat whose queue changed.
        """
        ...

    async def on_message_sent(
        self, chat_id: str, message: QueuedMessage, result: dict[str, Any]
    ) -> None:
        """Called when a queued message was delivered.

        Args:
            chat_id: Chat the message belongs to.
            message: The queue entry, already removed from the queue.
            result: The server's canonical message.
        """
        ...

    async def on_message_failed(self, chat_id: str, message: QueuedMessage) -> None:
        """Called when a queued message exhausted its retries.

        Args:
            chat_id: Chat the message belongs to.
            message: The entry, now in failed state.
        """
        ...


class QueueEventEmitter:
    """Emits queue events to registered observers.

    Exceptions from individual observers are caught and logged to prevent
    one broken observer from stopping event delivery to others.
    """

    def __init__(self) -> None:
        self._observers: list[QueueEventObserver] = []

    def add_observer(self, observer: QueueEventObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: QueueEventObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def emit_queue_changed(self, chat_id: str) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_queue_changed(chat_id)
            except Exception as e:
                logger.error(
                    "Observer %s failed on_queue_changed: %s",
                    type(observer).__name__,
                    e,
                )

    async def emit_message_sent(
        self, chat_id: str, message: QueuedMessage, result: dict[str, Any]
    ) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_message_sent(chat_id, message, result)
            except Exception as e:
                logger.error(
                    "Observer %s failed on_message_sent: %s",
                    type(observer).__name__,
                    e,
                )

    async def emit_message_failed(self, chat_id: str, message: QueuedMessage) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_message_failed(chat_id, message)
            except Exception as e:
                logger.error(
                    "Observer %s failed on_message_failed: %s",
                    type(observer).__name__,
                    e,
                )


class Subscription:
    """Handle returned by SyncStatusChannel.subscribe."""

    def __init__(self, channel: "SyncStatusChannel", chat_id: str) -> None:
        self._channel = channel
        self.chat_id = chat_id

    @property
    def active(self) -> bool:
        return self._channel.current(self.chat_id) is self

    def unsubscribe(self) -> None:
        """Stop delivery. No-op if already replaced or removed."""
        self._channel.unsubscribe(self.chat_id, self)


class SyncStatusChannel:
    """Delivers SyncStatus snapshots to at most one subscriber per chat.

    Subscribing again for a chat replaces the previous callback. Membership
    is checked at delivery time, so nothing reaches a callback after its
    subscription was removed.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, tuple[Subscription, StatusCallback]] = {}

    def subscribe(self, chat_id: str, callback: StatusCallback) -> Subscription:
        """Register the status callback for a chat.

        Args:
            chat_id: Chat to follow.
            callback: Sync or async callable receiving SyncStatus.

        Returns:
            Subscription handle for later removal.
        """
        subscription = Subscription(self, chat_id)
        if chat_id in self._subscribers:
            logger.debug("Replacing status subscriber for chat %s", chat_id)
        self._subscribers[chat_id] = (subscription, callback)
        return subscription

    def unsubscribe(self, chat_id: str, subscription: Subscription | None = None) -> bool:
        """Remove a chat's subscriber.

        When a subscription is given it is only removed if it is still the
        current one for the chat.

        Returns:
            True if a subscriber was removed.
        """
        entry = self._subscribers.get(chat_id)
        if entry is None:
            return False
        if subscription is not None and entry[0] is not subscription:
            return False
        del self._subscribers[chat_id]
        logger.debug("Removed status subscriber for chat %s", chat_id)
        return True

    def current(self, chat_id: str) -> Subscription | None:
        entry = self._subscribers.get(chat_id)
        return entry[0] if entry else None

    def has_subscriber(self, chat_id: str) -> bool:
        return chat_id in self._subscribers

    def chat_ids(self) -> list[str]:
        return list(self._subscribers)

    def clear(self) -> None:
        self._subscribers.clear()

    async def publish(self, status: SyncStatus) -> None:
        """Deliver a snapshot to the chat's current subscriber, if any."""
        entry = self._subscribers.get(status.chat_id)
        if entry is None:
            return
        _, callback = entry
        try:
            result = callback(status)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Status subscriber for chat %s failed: %s", status.chat_id, e
            )
