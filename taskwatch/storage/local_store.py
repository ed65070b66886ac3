"""Local record store for session history.

The only component that touches the raw key-value backend for history.
Reads fail soft (absent, corrupt or foreign data reads as an empty set) and
writes are best effort (faults are logged and reported, never raised).
"""

import json
import logging
from typing import Callable, List, Optional

from taskwatch.protocols import KeyValueStorage, StorageError
from taskwatch.storage.sanitize import sanitize_history_entries
from taskwatch.types import HistoryEntry

logger = logging.getLogger(__name__)

HISTORY_STORAGE_KEY = "taskwatch-history"
HISTORY_OWNER_KEY = "taskwatch-history-owner"
LAST_SYNC_KEY = "taskwatch-history-last-sync"


class LocalRecordStore:
    """Durable local copy of all history entries, sync metadata included.

    Args:
        storage: Key-value backend.
        key: Storage key holding the serialized list.
        default_factory: Produces the set returned when nothing usable is stored.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str = HISTORY_STORAGE_KEY,
        default_factory: Callable[[], List[HistoryEntry]] = list,
    ):
        self._storage = storage
        self.key = key
        self._default_factory = default_factory

    def read_all(self) -> List[HistoryEntry]:
        """Read every stored entry, including pending deletes."""
        try:
            raw = self._storage.get_item(self.key)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to read local history: {e}")
            return self._default_factory()
        if not raw:
            return self._default_factory()
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning(f"Local history is not valid JSON, starting empty: {e}")
            return self._default_factory()
        if not isinstance(parsed, list):
            logger.warning("Local history has an unexpected shape, starting empty")
            return self._default_factory()
        return sanitize_history_entries(parsed)

    def write_all(self, records: List[HistoryEntry]) -> bool:
        """Write the full entry list.

        Returns:
            True when the write landed, False when it was skipped.
        """
        try:
            payload = json.dumps([r.to_dict() for r in records])
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize local history: {e}")
            return False
        try:
            self._storage.set_item(self.key, payload)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to persist session history locally: {e}")
            return False
        return True

    def clear(self) -> bool:
        try:
            self._storage.remove_item(self.key)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to clear local history: {e}")
            return False
        return True

    # === Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        try:
            return self._storage.get_item(key)
        except (OSError, StorageError) as e:
            logger.debug(f"Failed to read {key}: {e}")
            return None

    def set_meta(self, key: str, value: Optional[str]) -> None:
        try:
            if value is None:
                self._storage.remove_item(key)
            else:
                self._storage.set_item(key, value)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to persist {key}: {e}")

    def get_owner(self) -> Optional[str]:
        """Owner the stored history belongs to; None for guest data."""
        value = self.get_meta(HISTORY_OWNER_KEY)
        return value.strip() or None if value else None

    def set_owner(self, owner_id: Optional[str]) -> None:
        self.set_meta(HISTORY_OWNER_KEY, owner_id)
