"""chatsync: offline-resilient message delivery and cache synchronization."""
