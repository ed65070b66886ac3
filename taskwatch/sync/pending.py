"""Pending-change tracking for history entries.

Each record carries its outstanding obligation toward the remote in
``pending_action``. Transitions:

    None -> UPSERT -> None            (edit, then confirmed upsert)
    None | UPSERT -> DELETE -> gone   (removed, then confirmed delete)

A DELETE never goes back to UPSERT; re-creating the same id is a new
logical write with a fresh ``created_at``.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple

from taskwatch.types import HistoryEntry, PendingAction

logger = logging.getLogger(__name__)


@dataclass
class PendingChanges:
    """Records with an outstanding remote obligation, split by action."""

    upserts: List[HistoryEntry] = field(default_factory=list)
    deletes: List[HistoryEntry] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.upserts and not self.deletes

    def __len__(self) -> int:
        return len(self.upserts) + len(self.deletes)


def partition_pending(records: List[HistoryEntry]) -> PendingChanges:
    changes = PendingChanges()
    for record in records:
        if record.pending_action == PendingAction.UPSERT:
            changes.upserts.append(record)
        elif record.pending_action == PendingAction.DELETE:
            changes.deletes.append(record)
    return changes


def _bump(updated_at: int, now: int) -> int:
    # updated_at must move forward even if the clock did not
    return now if now > updated_at else updated_at + 1


def mark_active_set(
    records: List[HistoryEntry], next_records: List[HistoryEntry], now: int
) -> List[HistoryEntry]:
    """Diff the stored set against the next snapshot and tag the changes.

    Args:
        records: Current stored records, pending deletes included.
        next_records: The active set the caller wants to keep.
        now: Current time in epoch ms.

    Returns:
        The new stored set: every snapshot record (new, changed or
        untouched) followed by the stored records missing from the snapshot,
        now pending DELETE.
    """
    current: Dict[str, HistoryEntry] = {r.id: r for r in records}
    result: List[HistoryEntry] = []
    seen = set()

    for incoming in next_records:
        if incoming.id in seen:
            continue
        seen.add(incoming.id)
        stored = current.get(incoming.id)

        if stored is None:
            result.append(
                replace(
                    incoming,
                    created_at=incoming.created_at or now,
                    updated_at=now,
                    pending_action=PendingAction.UPSERT,
                )
            )
            continue
        if stored.is_deleted:
            result.append(
                replace(
                    incoming,
                    created_at=now,
                    updated_at=_bump(stored.updated_at, now),
                    pending_action=PendingAction.UPSERT,
                )
            )
            continue

        if stored.same_content(incoming):
            result.append(stored)
            continue

        updated = stored.with_content_of(incoming)
        result.append(
            replace(
                updated,
                updated_at=_bump(stored.updated_at, now),
                pending_action=PendingAction.UPSERT,
            )
        )

    for stored in records:
        if stored.id in seen:
            continue
        if stored.is_deleted:
            result.append(stored)
            continue
        result.append(
            replace(
                stored,
                updated_at=_bump(stored.updated_at, now),
                pending_action=PendingAction.DELETE,
            )
        )

    return result


def reclassify_future(records: List[HistoryEntry], now: int) -> Tuple[List[HistoryEntry], int]:
    """Flip ``future_session`` on records whose start crossed ``now``.

    A record is planned while ``started_at > now``. Only records whose flag
    disagrees are touched, so a record is reclassified once per crossing.

    Returns:
        (records, number of records reclassified)
    """
    changed = 0
    result: List[HistoryEntry] = []
    for record in records:
        if record.is_deleted:
            result.append(record)
            continue
        is_future = record.started_at > now
        if record.future_session == is_future:
            result.append(record)
            continue
        changed += 1
        result.append(
            replace(
                record,
                future_session=is_future,
                updated_at=_bump(record.updated_at, now),
                pending_action=PendingAction.UPSERT,
            )
        )
    if changed:
        logger.debug(f"Reclassified {changed} planned session(s)")
    return result, changed
