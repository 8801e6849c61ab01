"""Tests for timestamp normalisation."""

from datetime import UTC, datetime

from chatsync.utils.timestamps import EPOCH_MIN, parse_timestamp, timestamp_sort_key


def test_parses_iso_with_z_suffix():
    assert parse_timestamp("2024-01-01T12:00:00Z") == datetime(2024, 1, 1, 12, tzinfo=UTC)


def test_naive_values_taken_as_utc():
    assert parse_timestamp("2024-01-01T12:00:00") == datetime(2024, 1, 1, 12, tzinfo=UTC)
    assert parse_timestamp(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=UTC)


def test_epoch_seconds():
    assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=UTC)


def test_unparseable_values():
    for value in (None, "", "yesterday", True, object()):
        assert parse_timestamp(value) is None


def test_sort_key_puts_missing_first():
    messages = [
        {"id": "b", "timestamp": "2024-01-02T00:00:00Z"},
        {"id": "none"},
        {"id": "a", "timestamp": "2024-01-01T00:00:00+00:00"},
    ]
    ordered = sorted(messages, key=timestamp_sort_key)
    assert [m["id"] for m in ordered] == ["none", "a", "b"]
    assert timestamp_sort_key({}) == EPOCH_MIN
