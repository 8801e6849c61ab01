"""Durable key-value storage for chatsync."""

from chatsync.db.connection import create_db_engine, get_database_url, init_db
from chatsync.db.kv_store import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from chatsync.db.models import Base, KeyValueEntry

__all__ = [
    "Base",
    "KeyValueEntry",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "create_db_engine",
    "get_database_url",
    "init_db",
]
