"""Factory for the storage backend and coordinator used by CLI commands.

CLI commands never construct stores or services directly; the resolved
config selects the backend.
"""

from chatsync.cli.config import ChatSyncConfig
from chatsync.db.connection import create_db_engine, init_db
from chatsync.db.kv_store import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from chatsync.services.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from chatsync.services.sync_coordinator import SyncCoordinator


def build_storage(config: ChatSyncConfig) -> KeyValueStore:
    """Create the key-value store named by config.storage.

    Args:
        config: Resolved configuration.

    Returns:
        InMemoryKeyValueStore for ``memory``, otherwise a SqlKeyValueStore on
        the configured (or default) SQLite file.
    """
    if config.storage.backend == "memory":
        return InMemoryKeyValueStore(quota_bytes=config.storage.quota_bytes)
    engine = create_db_engine(config.storage.path)
    init_db(engine)
    return SqlKeyValueStore(engine, quota_bytes=config.storage.quota_bytes)


def build_coordinator(
    config: ChatSyncConfig,
    storage: KeyValueStore | None = None,
    connectivity: ConnectivityMonitor | None = None,
) -> SyncCoordinator:
    """Create a coordinator over persisted state.

    The CLI inspects state without sending, so the default monitor starts
    offline and no automatic sweep ever runs.
    """
    return SyncCoordinator.from_config(
        config,
        storage if storage is not None else build_storage(config),
        connectivity if connectivity is not None else ConnectivityMonitor(online=False),
    )


def build_probe(
    config: ChatSyncConfig,
    monitor: ConnectivityMonitor,
    url: str | None = None,
) -> HttpConnectivityProbe | None:
    """Create an HTTP probe for url, or config.connectivity.probe_url.

    Returns:
        None when neither names a URL.
    """
    target = url or config.connectivity.probe_url
    if not target:
        return None
    return HttpConnectivityProbe(
        monitor, target, timeout=config.connectivity.probe_timeout
    )
