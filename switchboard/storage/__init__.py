"""Conversation history: key/value persistence plus the eviction policy."""
from switchboard.storage.history import HistoryStore
from switchboard.storage.kv_store import KeyValueStore, SQLiteKeyValueStore
from switchboard.storage.policy import EvictionResult, StoragePolicy, apply_storage_policy

__all__ = [
    "HistoryStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
    "EvictionResult",
    "StoragePolicy",
    "apply_storage_policy",
]
