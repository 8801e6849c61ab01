"""Root-level pytest fixtures for all tests.

Provides shared fixtures for:
- Key-value storage (in-memory and SQLite-backed)
- Connectivity monitors
- Scriptable send transports
"""

import logging
from pathlib import Path

import pytest

from chatsync.db.connection import create_db_engine, init_db
from chatsync.db.kv_store import InMemoryKeyValueStore, SqlKeyValueStore
from chatsync.services.connectivity import ConnectivityMonitor
from tests.helpers import FakeTransport


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


@pytest.fixture(autouse=True)
def _restore_chatsync_log_level():
    """Undo logger levels set by CLI commands so tests stay order-independent."""
    chatsync_logger = logging.getLogger("chatsync")
    saved = chatsync_logger.level
    yield
    chatsync_logger.setLevel(saved)


@pytest.fixture
def storage() -> InMemoryKeyValueStore:
    """Fresh in-memory key-value store without quota."""
    return InMemoryKeyValueStore()


@pytest.fixture
def sql_engine():
    """In-memory SQLite engine with the kv_entries table created."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_storage(sql_engine) -> SqlKeyValueStore:
    return SqlKeyValueStore(sql_engine)


@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    """Path for a file-backed SQLite database in the test's tmp dir."""
    return tmp_path / "chatsync.db"


@pytest.fixture
def online() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def offline() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=False)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
