"""Durable string-keyed blob storage shared by the queue and the cache.

Two backends implement the KeyValueStore protocol:

- InMemoryKeyValueStore: process-local dict, used by tests and the
  ``memory`` storage backend.
- SqlKeyValueStore: SQLAlchemy table ``kv_entries``, used by the CLI and
  any long-lived client.

Both optionally enforce a byte quota and raise StorageQuotaExceededError
when a write would exceed it. Keys enumerate oldest-written first so
callers can evict the stalest entries.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Protocol, runtime_checkable

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from chatsync.db.models import KeyValueEntry
from chatsync.errors import StorageQuotaExceededError
from chatsync.utils.timestamps import utc_now_iso

logger = logging.getLogger(__name__)


def _blob_size(value: str) -> int:
    return len(value.encode("utf-8"))


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable string-keyed storage."""

    def get(self, key: str) -> str | None:
        """Return the stored value, or None when the key is absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value. May raise StorageQuotaExceededError."""
        ...

    def remove(self, key: str) -> None:
        """Delete a key. Absent keys are ignored."""
        ...

    def enumerate_keys(self, prefix: str) -> list[str]:
        """List keys starting with prefix, oldest-written first."""
        ...


class InMemoryKeyValueStore:
    """Dict-backed store with optional byte quota."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._quota_bytes = quota_bytes
        # Insertion order doubles as write order; set() re-inserts.
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota_bytes is not None:
            used = sum(
                _blob_size(v) for k, v in self._data.items() if k != key
            )
            if used + _blob_size(value) > self._quota_bytes:
                raise StorageQuotaExceededError(key)
        self._data.pop(key, None)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def enumerate_keys(self, prefix: str) -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def size_bytes(self) -> int:
        """Total size of all stored values."""
        return sum(_blob_size(v) for v in self._data.values())


class SqlKeyValueStore:
    """SQLAlchemy-backed store persisting blobs in the kv_entries table.

    Each call runs in its own short session and commits before returning,
    so a crash never leaves a half-written blob.
    """

    def __init__(self, engine: Engine, quota_bytes: int | None = None) -> None:
        self._engine = engine
        self._quota_bytes = quota_bytes
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine,
        )

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, key: str) -> str | None:
        with self._session() as db:
            entry = db.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: str) -> None:
        size = _blob_size(value)
        with self._session() as db:
            if self._quota_bytes is not None:
                used = db.scalar(
                    select(func.coalesce(func.sum(KeyValueEntry.size), 0)).where(
                        KeyValueEntry.key != key
                    )
                )
                if (used or 0) + size > self._quota_bytes:
                    raise StorageQuotaExceededError(key)

            next_seq = (
                db.scalar(select(func.coalesce(func.max(KeyValueEntry.write_seq), 0)))
                or 0
            ) + 1
            entry = db.get(KeyValueEntry, key)
            if entry is None:
                entry = KeyValueEntry(key=key)
                db.add(entry)
            entry.value = value
            entry.size = size
            entry.updated_at = utc_now_iso()
            entry.write_seq = next_seq
        logger.debug("kv_set key=%s size=%d", key, size)

    def remove(self, key: str) -> None:
        with self._session() as db:
            db.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))

    def enumerate_keys(self, prefix: str) -> list[str]:
        with self._session() as db:
            rows = db.scalars(
                select(KeyValueEntry.key)
                .where(KeyValueEntry.key.startswith(prefix, autoescape=True))
                .order_by(KeyValueEntry.write_seq)
            )
            return list(rows)

    def size_bytes(self) -> int:
        """Total size of all stored values."""
        with self._session() as db:
            return int(
                db.scalar(select(func.coalesce(func.sum(KeyValueEntry.size), 0))) or 0
            )
