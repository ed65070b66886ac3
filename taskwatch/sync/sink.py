"""Persist-then-broadcast sink for the history record set."""

import logging
from typing import List, Optional

from taskwatch.events import HISTORY_EVENT, Broadcaster
from taskwatch.storage.local_store import LocalRecordStore
from taskwatch.types import HISTORY_LIMIT, HistoryEntry, active_entries

logger = logging.getLogger(__name__)


def sort_history(records: List[HistoryEntry]) -> List[HistoryEntry]:
    """Newest first: ``ended_at`` desc, then ``started_at`` desc, then id."""
    by_id = sorted(records, key=lambda r: r.id)
    return sorted(by_id, key=lambda r: (r.ended_at, r.started_at), reverse=True)


def truncate_history(records: List[HistoryEntry], limit: int = HISTORY_LIMIT) -> List[HistoryEntry]:
    """Keep the newest ``limit`` records of a sorted list.

    Records with a pending action are always kept, even past the limit, and
    settled records fill whatever room is left.
    """
    if len(records) <= limit:
        return list(records)
    room = max(0, limit - sum(1 for r in records if r.pending_action is not None))
    kept = []
    for record in records:
        if record.pending_action is not None:
            kept.append(record)
        elif room > 0:
            kept.append(record)
            room -= 1
    return kept


class PersistSink:
    """Writes the full record set locally, then publishes the active set.

    Args:
        store: Local record store.
        broadcaster: Channel for ``event``.
        event: Event name published after each successful write.
        limit: Number of records retained locally.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        broadcaster: Optional[Broadcaster] = None,
        event: str = HISTORY_EVENT,
        limit: int = HISTORY_LIMIT,
    ):
        self.store = store
        self.broadcaster = broadcaster or Broadcaster()
        self.event = event
        self.limit = limit

    def persist(self, records: List[HistoryEntry]) -> List[HistoryEntry]:
        """Sort, truncate, write and broadcast.

        Returns:
            The stored set, including pending deletes. A failed write still
            returns the set; nothing is broadcast in that case.
        """
        ordered = truncate_history(sort_history(records), self.limit)
        if not self.store.write_all(ordered):
            logger.warning("History write skipped; subscribers not notified")
            return ordered
        self.broadcaster.publish(self.event, active_entries(ordered))
        return ordered
