"""Decoding of stored and remote history data.

Everything read back from local storage or the remote store passes through
here before the sync engine sees it. Decoders are total: malformed input
yields a DecodeError value for that record, never an exception, so one bad
entry cannot take down a whole read.

Both the current snake_case shape and the legacy camelCase shape are
accepted.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from taskwatch.protocols import DecodeError
from taskwatch.routines import (
    LIFE_ROUTINE_SURFACE_LOOKUP,
    LIFE_ROUTINES_NAME,
    LIFE_ROUTINES_SURFACE,
)
from taskwatch.surfaces import ensure_surface_style, sanitize_surface_style
from taskwatch.types import (
    DEFAULT_SURFACE_STYLE,
    VALID_DIFFICULTIES,
    HistoryEntry,
    PendingAction,
    Subtask,
    finite_number,
    snap_to_minute,
    timestamp_ms,
)

logger = logging.getLogger(__name__)

# snake_case name -> legacy camelCase name
_LEGACY_KEYS = {
    "task_name": "taskName",
    "started_at": "startedAt",
    "ended_at": "endedAt",
    "goal_name": "goalName",
    "bucket_name": "bucketName",
    "goal_id": "goalId",
    "bucket_id": "bucketId",
    "task_id": "taskId",
    "goal_surface": "goalSurface",
    "bucket_surface": "bucketSurface",
    "repeating_session_id": "repeatingSessionId",
    "original_time": "originalTime",
    "occurrence_date": "occurrenceDate",
    "future_session": "futureSession",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "pending_action": "pendingAction",
    "sort_index": "sortIndex",
}


def _get(raw: Dict[str, Any], key: str) -> Any:
    if key in raw:
        return raw[key]
    return raw.get(_LEGACY_KEYS.get(key, key))


def _has(raw: Dict[str, Any], key: str) -> bool:
    return key in raw or _LEGACY_KEYS.get(key, key) in raw


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _trimmed_or_none(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _resolve_surfaces(
    goal_name: str,
    bucket_name: str,
    goal_surface: Optional[str],
    bucket_surface: Optional[str],
) -> Tuple[str, Optional[str]]:
    """Fill in life-routine surfaces for entries logged under Life Routines."""
    is_life_routine = goal_name.lower() == LIFE_ROUTINES_NAME.lower()
    if not goal_surface and is_life_routine:
        goal_surface = LIFE_ROUTINES_SURFACE
    if not bucket_surface and bucket_name:
        routine_surface = LIFE_ROUTINE_SURFACE_LOOKUP.get(bucket_name.lower())
        if routine_surface:
            bucket_surface = routine_surface
    return (
        ensure_surface_style(goal_surface or DEFAULT_SURFACE_STYLE),
        ensure_surface_style(bucket_surface) if bucket_surface else None,
    )


def decode_subtask(raw: Any, index: int) -> Subtask | DecodeError:
    """Decode one subtask; ``index`` is the fallback sort key."""
    if not isinstance(raw, dict):
        return DecodeError("subtask is not an object")
    sub_id = raw.get("id")
    if not isinstance(sub_id, str) or not sub_id.strip():
        return DecodeError("subtask missing id", field="id")
    sort_index = finite_number(_get(raw, "sort_index"))
    return Subtask(
        id=sub_id,
        text=raw.get("text") if isinstance(raw.get("text"), str) else "",
        completed=raw.get("completed") is True,
        sort_index=index if sort_index is None else sort_index,
    )


def sanitize_subtasks(value: Any) -> List[Subtask]:
    """Decode a subtask list ordered by sort key, dropping duplicates."""
    if not isinstance(value, list):
        return []
    seen = set()
    subtasks: List[Subtask] = []
    for index, raw in enumerate(value):
        subtask = decode_subtask(raw, index)
        if isinstance(subtask, DecodeError):
            continue
        if subtask.id in seen:
            continue
        seen.add(subtask.id)
        subtasks.append(subtask)
    # sorted() is stable, so equal keys keep array order
    return sorted(subtasks, key=lambda s: s.sort_index)


def decode_history_entry(raw: Any) -> HistoryEntry | DecodeError:
    """Decode one history entry from stored or remote JSON.

    Required: a non-empty string id, a string task name and finite numeric
    start/end times within the datetime range. Optional fields with
    unexpected types or out-of-range timestamps fall back to safe defaults.
    Start and end are snapped to the minute and elapsed is recomputed from
    them.

    Returns:
        The decoded entry, or a DecodeError describing the first problem.
    """
    if not isinstance(raw, dict):
        return DecodeError("entry is not an object")

    entry_id = raw.get("id")
    if not isinstance(entry_id, str) or not entry_id:
        return DecodeError("missing id", field="id")
    task_name = _get(raw, "task_name")
    if not isinstance(task_name, str):
        return DecodeError("missing task name", field="task_name", record_id=entry_id)
    started = timestamp_ms(_get(raw, "started_at"))
    if started is None:
        return DecodeError("missing or out-of-range start time", field="started_at", record_id=entry_id)
    ended = timestamp_ms(_get(raw, "ended_at"))
    if ended is None:
        return DecodeError("missing or out-of-range end time", field="ended_at", record_id=entry_id)

    started_at = snap_to_minute(started)
    ended_at = snap_to_minute(ended)

    goal_name = _get(raw, "goal_name")
    goal_name = goal_name.strip() if isinstance(goal_name, str) else ""
    bucket_name = _get(raw, "bucket_name")
    bucket_name = bucket_name.strip() if isinstance(bucket_name, str) else ""
    goal_surface, bucket_surface = _resolve_surfaces(
        goal_name,
        bucket_name,
        sanitize_surface_style(_get(raw, "goal_surface")),
        sanitize_surface_style(_get(raw, "bucket_surface")),
    )

    difficulty = raw.get("difficulty")
    if difficulty not in VALID_DIFFICULTIES:
        difficulty = "none"

    original_time = timestamp_ms(_get(raw, "original_time"))

    # Sync metadata. Entries written before sync metadata existed have never
    # been pushed, so they are adopted as pending upserts.
    if _has(raw, "updated_at"):
        updated_at = timestamp_ms(_get(raw, "updated_at"))
        updated_at = int(updated_at) if updated_at is not None else 0
        pending_raw = _get(raw, "pending_action")
        try:
            pending_action = PendingAction(pending_raw) if pending_raw else None
        except ValueError:
            pending_action = None
    else:
        updated_at = ended_at
        pending_action = PendingAction.UPSERT
    created_at = timestamp_ms(_get(raw, "created_at"))

    return HistoryEntry(
        id=entry_id,
        task_name=task_name,
        elapsed=max(0, ended_at - started_at),
        started_at=started_at,
        ended_at=ended_at,
        goal_name=goal_name or None,
        bucket_name=bucket_name or None,
        goal_id=_optional_str(_get(raw, "goal_id")),
        bucket_id=_optional_str(_get(raw, "bucket_id")),
        task_id=_optional_str(_get(raw, "task_id")),
        goal_surface=goal_surface,
        bucket_surface=bucket_surface,
        notes=raw.get("notes") if isinstance(raw.get("notes"), str) else "",
        subtasks=sanitize_subtasks(raw.get("subtasks")),
        difficulty=difficulty,
        repeating_session_id=_trimmed_or_none(_get(raw, "repeating_session_id")),
        original_time=int(original_time) if original_time is not None else None,
        occurrence_date=_trimmed_or_none(_get(raw, "occurrence_date")),
        future_session=_get(raw, "future_session") is True,
        created_at=int(created_at) if created_at is not None else updated_at,
        updated_at=updated_at,
        pending_action=pending_action,
    )


def sanitize_history_entries(value: Any) -> List[HistoryEntry]:
    """Decode a list of history entries, omitting malformed ones.

    A non-list value yields an empty list. Duplicate ids keep the first
    occurrence.
    """
    if not isinstance(value, list):
        return []
    seen = set()
    entries: List[HistoryEntry] = []
    for raw in value:
        entry = decode_history_entry(raw)
        if isinstance(entry, DecodeError):
            logger.debug(f"Dropping history entry {entry.record_id or '?'}: {entry}")
            continue
        if entry.id in seen:
            continue
        seen.add(entry.id)
        entries.append(entry)
    return entries
