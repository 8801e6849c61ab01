"""Delivery, caching and synchronization services."""

from chatsync.services.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from chatsync.services.events import (
    QueueEventEmitter,
    QueueEventObserver,
    Subscription,
    SyncStatusChannel,
)
from chatsync.services.message_cache_store import MessageCacheStore
from chatsync.services.offline_queue_manager import OfflineQueueManager
from chatsync.services.retry_executor import (
    BackoffPolicy,
    CancellationToken,
    RetryExecutor,
    RetryState,
)
from chatsync.services.sync_coordinator import SyncCoordinator

__all__ = [
    "BackoffPolicy",
    "CancellationToken",
    "ConnectivityMonitor",
    "HttpConnectivityProbe",
    "MessageCacheStore",
    "OfflineQueueManager",
    "QueueEventEmitter",
    "QueueEventObserver",
    "RetryExecutor",
    "RetryState",
    "Subscription",
    "SyncCoordinator",
    "SyncStatusChannel",
]
