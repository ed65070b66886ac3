"""Local storage: key-value backends, decoding and the history record store."""

from taskwatch.storage.kv import FileKeyValueStorage, MemoryKeyValueStorage
from taskwatch.storage.local_store import HISTORY_STORAGE_KEY, LocalRecordStore
from taskwatch.storage.sanitize import (
    decode_history_entry,
    decode_subtask,
    sanitize_history_entries,
    sanitize_subtasks,
)

__all__ = [
    "FileKeyValueStorage",
    "HISTORY_STORAGE_KEY",
    "LocalRecordStore",
    "MemoryKeyValueStorage",
    "decode_history_entry",
    "decode_subtask",
    "sanitize_history_entries",
    "sanitize_subtasks",
]
