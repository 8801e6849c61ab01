"""Unit tests for queue event emission and the sync status channel.

Tests cover:
- Observer registration
- Event emission to multiple observers
- Exception handling in observers
- Per-chat status subscriptions
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatsync.models import ChatCacheStats, QueuedMessage, QueueStats, SyncStatus
from chatsync.services.events import QueueEventEmitter, SyncStatusChannel


class MockObserver:
    """Mock observer for testing event emission."""

    def __init__(self) -> None:
        self.changed_calls: list[str] = []
        self.sent_calls: list[tuple[str, str, dict]] = []
        self.failed_calls: list[tuple[str, str]] = []

    async def on_queue_changed(self, chat_id: str) -> None:
        self.changed_calls.append(chat_id)

    async def on_message_sent(self, chat_id, message, result) -> None:
        self.sent_calls.append((chat_id, message.id, result))

    async def on_message_failed(self, chat_id, message) -> None:
        self.failed_calls.append((chat_id, message.id))


def _status(chat_id: str = "chat-1") -> SyncStatus:
    return SyncStatus(
        chat_id=chat_id,
        is_online=True,
        queue_stats=QueueStats(),
        cache_stats=ChatCacheStats(),
    )


class TestQueueEventEmitter:
    """Tests for QueueEventEmitter."""

    @pytest.mark.asyncio
    async def test_emits_to_all_observers(self):
        emitter = QueueEventEmitter()
        first, second = MockObserver(), MockObserver()
        emitter.add_observer(first)
        emitter.add_observer(second)
        message = QueuedMessage(id="temp_1", chat_id="chat-1")

        await emitter.emit_queue_changed("chat-1")
        await emitter.emit_message_sent("chat-1", message, {"id": "srv_1"})
        await emitter.emit_message_failed("chat-1", message)

        for observer in (first, second):
            assert observer.changed_calls == ["chat-1"]
            assert observer.sent_calls == [("chat-1", "temp_1", {"id": "srv_1"})]
            assert observer.failed_calls == [("chat-1", "temp_1")]

    @pytest.mark.asyncio
    async def test_removed_observer_receives_nothing(self):
        emitter = QueueEventEmitter()
        observer = MockObserver()
        emitter.add_observer(observer)
        emitter.remove_observer(observer)

        await emitter.emit_queue_changed("chat-1")

        assert observer.changed_calls == []

    def test_removing_unknown_observer_is_noop(self):
        emitter = QueueEventEmitter()
        observer = MockObserver()
        emitter.add_observer(observer)

        emitter.remove_observer(observer)
        emitter.remove_observer(observer)
        emitter.remove_observer(MockObserver())

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_block_others(self):
        emitter = QueueEventEmitter()
        broken = MagicMock()
        broken.on_queue_changed = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = MockObserver()
        emitter.add_observer(broken)
        emitter.add_observer(healthy)

        await emitter.emit_queue_changed("chat-1")

        broken.on_queue_changed.assert_awaited_once_with("chat-1")
        assert healthy.changed_calls == ["chat-1"]


class TestSyncStatusChannel:
    """Tests for per-chat status subscriptions."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        channel = SyncStatusChannel()
        callback = MagicMock()
        channel.subscribe("chat-1", callback)

        status = _status()
        await channel.publish(status)

        callback.assert_called_once_with(status)

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        channel = SyncStatusChannel()
        callback = AsyncMock()
        channel.subscribe("chat-1", callback)

        await channel.publish(_status())

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_only_matching_chat_is_notified(self):
        channel = SyncStatusChannel()
        callback = MagicMock()
        channel.subscribe("chat-2", callback)

        await channel.publish(_status("chat-1"))

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_previous_callback(self):
        channel = SyncStatusChannel()
        old, new = MagicMock(), MagicMock()
        old_sub = channel.subscribe("chat-1", old)
        channel.subscribe("chat-1", new)

        await channel.publish(_status())

        old.assert_not_called()
        new.assert_called_once()
        assert old_sub.active is False

    @pytest.mark.asyncio
    async def test_no_delivery_after_unsubscribe(self):
        channel = SyncStatusChannel()
        callback = MagicMock()
        subscription = channel.subscribe("chat-1", callback)

        subscription.unsubscribe()
        await channel.publish(_status())

        callback.assert_not_called()
        assert channel.has_subscriber("chat-1") is False

    def test_stale_subscription_cannot_remove_replacement(self):
        channel = SyncStatusChannel()
        stale = channel.subscribe("chat-1", MagicMock())
        current = channel.subscribe("chat-1", MagicMock())

        stale.unsubscribe()

        assert current.active is True
        assert channel.unsubscribe("chat-1") is True
        assert channel.unsubscribe("chat-1") is False

    @pytest.mark.asyncio
    async def test_callback_exception_is_logged_not_raised(self):
        channel = SyncStatusChannel()
        channel.subscribe("chat-1", MagicMock(side_effect=RuntimeError("ui gone")))

        await channel.publish(_status())
