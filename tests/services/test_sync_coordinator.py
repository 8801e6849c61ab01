"""Tests for SyncCoordinator: send flow, reconciliation, status delivery."""

from unittest.mock import AsyncMock

import pytest

from chatsync.cli.config import ChatSyncConfig
from chatsync.models import MessageStatus, SyncStatus
from chatsync.services.connectivity import ConnectivityMonitor
from chatsync.services.sync_coordinator import SyncCoordinator
from tests.helpers import FakeTransport, wait_for

CHAT = "chat-1"


def _fast_config(**sections) -> ChatSyncConfig:
    data = {
        "retry": {"max_retries": 3, "initial_delay": 0.01, "max_delay": 0.05, "max_jitter": 0},
        "queue": {"inter_message_delay": 0},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return ChatSyncConfig(**data)


def _coordinator(storage, monitor, **sections) -> SyncCoordinator:
    return SyncCoordinator.from_config(_fast_config(**sections), storage, monitor)


def _server_msg(msg_id: str, content: str, second: int, **extra) -> dict:
    return {
        "id": msg_id,
        "content": content,
        "timestamp": f"2024-01-01T00:00:{second:02d}Z",
        **extra,
    }


class TestSendFlow:
    """Sending online, offline, and through reconnects."""

    @pytest.mark.asyncio
    async def test_offline_message_delivered_and_cached_after_reconnect(
        self, storage, offline, transport
    ):
        async with _coordinator(storage, offline) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "m1"}, transport.send)
            cached = sync.get_cached_messages(CHAT)
            assert [m["id"] for m in cached] == [placeholder["id"]]
            assert cached[0]["is_queued"] is True

            await offline.set_online(True)
            await sync.wait_idle()

            assert transport.contents == ["m1"]
            assert sync.get_queue(CHAT) == []
            [delivered] = sync.get_cached_messages(CHAT)
            assert delivered["id"] == "srv_1"
            assert delivered["content"] == "m1"
            assert delivered["timestamp"] == placeholder["queued_at"]

    @pytest.mark.asyncio
    async def test_reconnect_scenario_with_mock_transport(self, storage, offline):
        send_fn = AsyncMock(return_value={"id": "m1", "status": "sent"})
        async with _coordinator(storage, offline) as sync:
            await sync.send_message("c1", {"content": "hi"}, send_fn)
            [entry] = sync.get_queue("c1")
            assert entry.status == MessageStatus.queued

            await offline.set_online(True)
            await sync.wait_idle()

            send_fn.assert_awaited_once()
            assert send_fn.await_args.args[0]["content"] == "hi"
            assert sync.get_queue("c1") == []
            assert "m1" in [m["id"] for m in sync.get_cached_messages("c1")]

    @pytest.mark.asyncio
    async def test_online_send_caches_result(self, storage, online, transport):
        async with _coordinator(storage, online) as sync:
            result = await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            assert result["id"] == "srv_1"
            assert [m["id"] for m in sync.get_cached_messages(CHAT)] == ["srv_1"]
            assert sync.get_queue(CHAT) == []

    @pytest.mark.asyncio
    async def test_failed_message_marked_in_cache(self, storage, online):
        transport = FakeTransport(fail=True)
        async with _coordinator(storage, online, retry={"max_retries": 0}) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            [cached] = sync.get_cached_messages(CHAT)
            assert cached["id"] == placeholder["id"]
            assert cached["status"] == MessageStatus.failed.value
            assert cached["last_error"] == "network unreachable"
            assert "send_error" not in cached

    @pytest.mark.asyncio
    async def test_restart_resumes_delivery_on_registration(self, storage, offline, transport):
        async with _coordinator(storage, offline) as first:
            await first.send_message(CHAT, {"content": "later"}, transport.send)

        monitor = ConnectivityMonitor(online=True)
        async with _coordinator(storage, monitor) as second:
            assert len(second.get_queue(CHAT)) == 1

            second.register_sync_callback(CHAT, lambda status: None, send_fn=transport.send)
            await second.wait_idle()

            assert transport.contents == ["later"]
            assert second.get_queue(CHAT) == []


class TestQueueOperations:
    """Queue edits keep the cache consistent."""

    @pytest.mark.asyncio
    async def test_remove_from_queue_drops_placeholder(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            assert await sync.remove_from_queue(CHAT, placeholder["id"]) is True
            assert sync.get_cached_messages(CHAT) == []
            assert await sync.remove_from_queue(CHAT, placeholder["id"]) is False

    @pytest.mark.asyncio
    async def test_clear_failed_drops_placeholders(self, storage, online):
        transport = FakeTransport(fail=True)
        async with _coordinator(storage, online, retry={"max_retries": 0}) as sync:
            await sync.send_message(CHAT, {"content": "a"}, transport.send)
            await sync.send_message(CHAT, {"content": "b"}, transport.send)

            assert await sync.clear_failed_messages(CHAT) == 2
            assert sync.get_queue(CHAT) == []
            assert sync.get_cached_messages(CHAT) == []

    @pytest.mark.asyncio
    async def test_retry_message_offline_marks_queued(self, storage, online):
        transport = FakeTransport(fail=True)
        async with _coordinator(storage, online, retry={"max_retries": 0}) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "a"}, transport.send)
            await online.set_online(False)

            assert await sync.retry_message(CHAT, placeholder["id"]) is True

            [cached] = sync.get_cached_messages(CHAT)
            assert cached["status"] == MessageStatus.queued.value
            assert cached["last_error"] is None


class TestServerReconciliation:
    """sync_with_server_messages and the merged view."""

    @pytest.mark.asyncio
    async def test_server_copy_wins(self, storage, offline):
        async with _coordinator(storage, offline) as sync:
            await sync.cache_messages(CHAT, [_server_msg("a", "local", 1)])

            merged = await sync.sync_with_server_messages(
                CHAT, [_server_msg("a", "server", 1), _server_msg("b", "new", 2)]
            )

            assert [(m["id"], m["content"]) for m in merged] == [
                ("a", "server"),
                ("b", "new"),
            ]

    @pytest.mark.asyncio
    async def test_repeated_sync_keeps_id_less_messages_unique(self, storage, offline):
        notice = {
            "content": "Alice joined",
            "sender_id": "system",
            "timestamp": "2024-01-01T00:00:01Z",
        }
        async with _coordinator(storage, offline) as sync:
            first = await sync.sync_with_server_messages(CHAT, [notice])
            second = await sync.sync_with_server_messages(CHAT, [notice])

            assert first == second
            assert len(second) == 1
            assert len(sync.get_merged_messages(CHAT, [notice])) == 1

    @pytest.mark.asyncio
    async def test_echoed_temp_id_prunes_queue_and_placeholder(
        self, storage, offline, transport
    ):
        async with _coordinator(storage, offline) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            merged = await sync.sync_with_server_messages(
                CHAT, [_server_msg("srv_9", "hi", 5, temp_id=placeholder["id"])]
            )

            assert [m["id"] for m in merged] == ["srv_9"]
            assert sync.get_queue(CHAT) == []

    @pytest.mark.asyncio
    async def test_failed_echo_does_not_prune(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            await sync.sync_with_server_messages(
                CHAT,
                [_server_msg("srv_9", "hi", 5, temp_id=placeholder["id"], status="failed")],
            )

            assert [m.id for m in sync.get_queue(CHAT)] == [placeholder["id"]]

    @pytest.mark.asyncio
    async def test_merged_view_overlays_queue(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            await sync.cache_messages(CHAT, [_server_msg("a", "cached", 1)])
            placeholder = await sync.send_message(CHAT, {"content": "pending"}, transport.send)

            merged = sync.get_merged_messages(CHAT, [_server_msg("b", "server", 2)])

            assert [m["id"] for m in merged] == ["a", "b", placeholder["id"]]
            assert merged[-1]["is_queued"] is True
            assert merged[-1]["status"] == "queued"

    @pytest.mark.asyncio
    async def test_merged_view_hides_echoed_entries(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            placeholder = await sync.send_message(CHAT, {"content": "pending"}, transport.send)

            merged = sync.get_merged_messages(
                CHAT, [_server_msg("srv_1", "pending", 3, temp_id=placeholder["id"])]
            )

            assert [m["id"] for m in merged] == ["srv_1"]


class TestStatusDelivery:
    """Per-chat status subscriptions."""

    @pytest.mark.asyncio
    async def test_callback_receives_status_on_changes(self, storage, offline, transport):
        received: list[SyncStatus] = []
        async with _coordinator(storage, offline) as sync:
            sync.register_sync_callback(CHAT, received.append)

            await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            assert received
            latest = received[-1]
            assert latest.chat_id == CHAT
            assert latest.is_online is False
            assert latest.queue_stats.queued == 1
            assert latest.cache_stats.message_count == 1

    @pytest.mark.asyncio
    async def test_callback_reprocessing_mid_send_does_not_stall(self, storage, online):
        transport = FakeTransport(fail_times=1)
        async with _coordinator(storage, online) as sync:

            async def on_status(status: SyncStatus) -> None:
                if status.queue_stats.sending:
                    await sync.process_queue(CHAT)

            sync.register_sync_callback(CHAT, on_status, send_fn=transport.send)
            await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            await wait_for(lambda: sync.get_queue(CHAT) == [])
            await wait_for(lambda: not sync.queue_manager.is_processing(CHAT))
            assert len(transport.calls) == 2
            assert [m["id"] for m in sync.get_cached_messages(CHAT)] == ["srv_1"]

    @pytest.mark.asyncio
    async def test_connectivity_change_publishes(self, storage, offline):
        received: list[SyncStatus] = []
        async with _coordinator(storage, offline) as sync:
            sync.register_sync_callback(CHAT, received.append)

            await offline.set_online(True)
            await sync.wait_idle()

            assert received[-1].is_online is True

    @pytest.mark.asyncio
    async def test_new_registration_replaces_previous(self, storage, offline, transport):
        first: list[SyncStatus] = []
        second: list[SyncStatus] = []
        async with _coordinator(storage, offline) as sync:
            sync.register_sync_callback(CHAT, first.append)
            sync.register_sync_callback(CHAT, second.append)

            await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            assert first == []
            assert second

    @pytest.mark.asyncio
    async def test_unregister_stops_delivery(self, storage, offline, transport):
        received: list[SyncStatus] = []
        async with _coordinator(storage, offline) as sync:
            subscription = sync.register_sync_callback(CHAT, received.append)
            subscription.unsubscribe()
            assert sync.unregister_sync_callback(CHAT) is False

            await sync.send_message(CHAT, {"content": "hi"}, transport.send)

            assert received == []

    @pytest.mark.asyncio
    async def test_unregister_sync_callback(self, storage, offline):
        async with _coordinator(storage, offline) as sync:
            sync.register_sync_callback(CHAT, lambda status: None)
            assert sync.unregister_sync_callback(CHAT) is True
            assert sync.unregister_sync_callback(CHAT) is False


class TestConfigAndStats:
    """Construction from config and aggregate statistics."""

    def test_from_config_applies_sections(self, storage, offline):
        config = ChatSyncConfig(
            queue={"max_queue_size": 7}, cache={"max_storage_size": 20}
        )
        sync = SyncCoordinator.from_config(config, storage, offline)

        assert sync.queue_manager.max_queue_size == 7
        assert sync.cache_store.max_storage_size == 20
        assert sync.queue_manager.policy.initial_delay == 1.0

    @pytest.mark.asyncio
    async def test_overall_stats(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            await sync.send_message("chat-a", {"content": "a"}, transport.send)
            await sync.send_message("chat-b", {"content": "b"}, transport.send)
            await sync.cache_messages(
                "chat-c", [_server_msg("x", "x", 1), _server_msg("y", "y", 2)]
            )

            stats = sync.get_overall_stats()

            assert stats.is_online is False
            assert stats.total_queued == 2
            assert stats.active_chats == 2
            assert stats.total_failed == 0
            assert stats.total_cached == 4
            assert stats.cached_chats == 3

    @pytest.mark.asyncio
    async def test_cache_pass_throughs(self, storage, offline):
        async with _coordinator(storage, offline) as sync:
            await sync.add_to_cache(CHAT, _server_msg("a", "hello world", 1))
            await sync.add_to_cache(CHAT, _server_msg("b", "bye", 2))

            assert await sync.update_in_cache(CHAT, "b", {"content": "see you"}) is True
            assert [m["id"] for m in sync.search_cached_messages(CHAT, "HELLO")] == ["a"]
            assert [
                m["id"]
                for m in sync.get_messages_by_date_range(
                    CHAT, "2024-01-01T00:00:02Z", "2024-01-01T00:00:09Z"
                )
            ] == ["b"]
            assert sync.get_cache_stats(CHAT).message_count == 2
            assert sync.get_storage_stats(CHAT).current_chat_messages == 2

            assert await sync.remove_from_cache(CHAT, "a") is True
            await sync.clear_cache(CHAT)
            assert sync.get_cached_messages(CHAT) == []


class TestLifecycle:
    """Start and close."""

    @pytest.mark.asyncio
    async def test_explicit_close_inside_context_is_safe(self, storage, offline, transport):
        async with _coordinator(storage, offline) as sync:
            await sync.send_message(CHAT, {"content": "hi"}, transport.send)
            await sync.close()

        await sync.close()
        assert len(sync.get_queue(CHAT)) == 1
