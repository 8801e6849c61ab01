"""SQLAlchemy ORM models for the chatsync state database.

The engine persists everything through a single string-keyed blob table;
queue and cache use disjoint key prefixes. Uses SQLAlchemy 2.0 style with
Mapped and mapped_column.
"""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chatsync.utils.timestamps import utc_now_iso


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class KeyValueEntry(Base):
    """One durable blob in the shared key-value store.

    Attributes:
        key: Namespaced key (e.g. ``chatsync:queue:<chat_id>``).
        value: Serialised blob (JSON text).
        size: Length of value in characters, kept for quota accounting.
        updated_at: ISO8601 timestamp of the last write.
        write_seq: Monotonic write counter; orders keys oldest-written first.
    """

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(nullable=False, default=0)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    write_seq: Mapped[int] = mapped_column(nullable=False, default=0)

    __table_args__ = (Index("idx_kv_entries_write_seq", "write_seq"),)

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key!r}, size={self.size})>"
