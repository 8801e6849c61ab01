"""Timestamp normalisation for message ordering and range queries."""

from datetime import UTC, datetime
from typing import Any

# Sort key for records whose timestamp is missing or unparseable.
EPOCH_MIN = datetime.min.replace(tzinfo=UTC)


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Normalise a message timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings
    (including a trailing ``Z``), and epoch seconds.

    Args:
        value: Raw timestamp from a message record.

    Returns:
        Aware datetime, or None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def timestamp_sort_key(message: dict[str, Any]) -> datetime:
    """Sort key ordering messages by timestamp ascending."""
    return parse_timestamp(message.get("timestamp")) or EPOCH_MIN
