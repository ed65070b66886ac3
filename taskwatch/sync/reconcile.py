"""Reconciliation of the local history with a remote delta.

Last-writer-wins on ``updated_at`` (integer epoch ms, exact comparison),
with local pending work protected:

- A remote row unknown locally is adopted.
- A strictly newer remote row replaces the local record.
- On a tie the remote row wins only when the local record has nothing
  pending.
- A local record missing from the delta is dropped as remotely deleted only
  when it has nothing pending and falls inside the fetch window. Anything
  older than the window is kept, since the delta cannot speak for it.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List

from taskwatch.sync.pending import reclassify_future
from taskwatch.types import DAY_MS, SYNC_WINDOW_DAYS, HistoryEntry

logger = logging.getLogger(__name__)


def sync_window_start(now: int, days: int = SYNC_WINDOW_DAYS) -> int:
    """Lower ``updated_at`` bound of the remote delta fetch.

    Remote deletions of rows last updated before this instant are never
    observed locally.
    """
    return now - days * DAY_MS


@dataclass
class MergeResult:
    records: List[HistoryEntry] = field(default_factory=list)
    adopted: int = 0  # remote rows that were unknown locally
    replaced: int = 0  # local records overwritten by a newer remote row
    kept_local: int = 0  # remote rows that lost to the local record
    dropped: int = 0  # local records removed as remotely deleted
    reclassified: int = 0  # planned sessions whose start has passed

    @property
    def pulled(self) -> int:
        return self.adopted + self.replaced


def _carry(remote: HistoryEntry, local: HistoryEntry, carry_fields: Iterable[str]) -> HistoryEntry:
    """Keep local values for columns the remote does not store."""
    carried = {name: getattr(local, name) for name in carry_fields}
    return replace(remote, **carried) if carried else remote


def merge_remote_delta(
    local: List[HistoryEntry],
    remote: List[HistoryEntry],
    *,
    window_start: int,
    now: int,
    carry_fields: Iterable[str] = (),
) -> MergeResult:
    """Merge a remote delta into the local records.

    Args:
        local: Every locally stored record, pending deletes included.
        remote: Rows updated remotely since ``window_start``, already decoded.
        window_start: Lower bound the delta was fetched with.
        now: Current time in epoch ms, used for future reclassification.
        carry_fields: Fields the remote schema lacks; a winning remote row
            takes these from the local record instead of blanking them.

    Returns:
        The merged record set and counters. Pushing and persisting are left
        to the caller.
    """
    carry_fields = tuple(carry_fields)
    result = MergeResult()
    local_by_id: Dict[str, HistoryEntry] = {r.id: r for r in local}
    merged: Dict[str, HistoryEntry] = dict(local_by_id)
    remote_ids = set()

    for row in remote:
        remote_ids.add(row.id)
        # Remote rows are confirmed state
        row = replace(row, pending_action=None)
        existing = local_by_id.get(row.id)
        if existing is None:
            merged[row.id] = row
            result.adopted += 1
            continue
        if row.updated_at > existing.updated_at or (
            row.updated_at == existing.updated_at and existing.pending_action is None
        ):
            merged[row.id] = _carry(row, existing, carry_fields)
            result.replaced += 1
        else:
            result.kept_local += 1

    for record_id, record in local_by_id.items():
        if record_id in remote_ids:
            continue
        if record.pending_action is not None:
            continue
        if record.updated_at < window_start:
            continue
        del merged[record_id]
        result.dropped += 1

    records, result.reclassified = reclassify_future(list(merged.values()), now)
    result.records = records

    logger.debug(
        f"Merged remote delta: adopted={result.adopted}, replaced={result.replaced}, "
        f"kept_local={result.kept_local}, dropped={result.dropped}"
    )
    return result
