"""Database connection management for chatsync.

Builds the SQLAlchemy engine backing SqlKeyValueStore. SQLite is the only
target; the file lives in the platform data directory by default.

Usage:
    from chatsync.db.connection import create_db_engine, init_db

    engine = create_db_engine()
    init_db(engine)
"""

import os
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.pool import StaticPool

from chatsync.db.models import Base


def get_database_url(db_path: str | None = None) -> str:
    """Get database URL from an explicit path, the environment, or the default.

    Precedence:
    1. db_path argument
    2. CHATSYNC_DATABASE_URL (canonical)
    3. sqlite:///<platform data dir>/chatsync.db
    """
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{os.path.expanduser(db_path)}"

    database_url = os.environ.get("CHATSYNC_DATABASE_URL", "").strip()
    if database_url:
        return database_url

    from chatsync.utils.paths import ensure_dirs_exist, get_default_db_path

    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def create_db_engine(db_path: str | None = None) -> Engine:
    """Create an engine with SQLite pragmas configured on every connection."""
    url = get_database_url(db_path)
    in_memory = url in ("sqlite://", "sqlite:///:memory:")
    engine_kwargs: dict[str, Any] = {}
    if in_memory:
        # One shared connection keeps the in-memory database alive.
        engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False}
        if url.startswith("sqlite")
        else {},
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
        **engine_kwargs,
    )

    if url.startswith("sqlite") and not in_memory:

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Enable WAL so reads do not block the single writer."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)
