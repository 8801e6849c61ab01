"""Tests for CLI output formatting."""

import json

from chatsync.cli.output import format_message_table, format_overall_stats, format_queue_table
from chatsync.models import MessageStatus, OverallStats, QueuedMessage, QueueStats


class TestFormatOverallStats:
    """Tests for the stats panel."""

    def test_renders_counts(self):
        stats = OverallStats(is_online=False, total_queued=3, total_failed=1, active_chats=2)
        output = format_overall_stats(stats)
        assert "Queued" in output
        assert "3" in output

    def test_json(self):
        parsed = json.loads(format_overall_stats(OverallStats(is_online=True), as_json=True))
        assert parsed["is_online"] is True
        assert parsed["total_queued"] == 0


class TestFormatQueueTable:
    """Tests for queue rendering."""

    def test_empty_queue(self):
        assert format_queue_table("chat-1", [], QueueStats()) == "Queue for chat-1 is empty."

    def test_renders_entries(self):
        messages = [
            QueuedMessage(
                id="temp_1",
                chat_id="chat-1",
                content="hello",
                status=MessageStatus.failed,
                retry_count=3,
                last_error="timeout",
            )
        ]
        output = format_queue_table("chat-1", messages, QueueStats(total=1, failed=1))
        assert "temp_1" in output
        assert "failed" in output
        assert "timeout" in output

    def test_json_includes_stats(self):
        messages = [QueuedMessage(id="temp_1", chat_id="chat-1")]
        parsed = json.loads(
            format_queue_table("chat-1", messages, QueueStats(total=1, queued=1), as_json=True)
        )
        assert parsed["stats"]["queued"] == 1
        assert parsed["messages"][0]["status"] == "queued"


class TestFormatMessageTable:
    """Tests for cached message rendering."""

    def test_empty(self):
        assert format_message_table("Cache", []) == "No cached messages found."

    def test_renders_messages(self):
        output = format_message_table(
            "Cache",
            [{"id": "m1", "content": "hi", "sender_name": "Ana", "status": "sent"}],
        )
        assert "m1" in output
        assert "Ana" in output

    def test_json(self):
        parsed = json.loads(format_message_table("Cache", [{"id": "m1"}], as_json=True))
        assert parsed == [{"id": "m1"}]
