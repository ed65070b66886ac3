"""Remote table gateways over the Supabase (PostgREST) async client.

Gateways only read and write rows; they never own local state. Every
failure leaving a gateway is a RemoteStoreError carrying an ErrorKind, and
``classify_remote_error`` is the one place that looks at driver error codes
and message text.

Schema degradation: each table has a set of optional columns that older
deployments lack. Whether to send them is a persisted per-table flag. A
missing-column failure turns the flag off and retries the batch once
without the optional columns. A foreign-key failure pointing at the
repeating rules table retries once without the recurrence linkage only.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
from postgrest.exceptions import APIError

from taskwatch.protocols import (
    DecodeError,
    ErrorKind,
    IdentityMismatchError,
    KeyValueStorage,
    RemoteStoreError,
    StorageError,
)
from taskwatch.routines import decode_life_routine
from taskwatch.storage.sanitize import decode_history_entry
from taskwatch.types import (
    RECURRENCE_LINKAGE_FIELDS,
    HistoryEntry,
    LifeRoutine,
    RepeatingRule,
    iso_to_ms,
    is_valid_uuid,
    ms_to_iso,
)

logger = logging.getLogger(__name__)

HISTORY_TABLE = "session_history"
REPEATING_TABLE = "repeating_sessions"
LIFE_ROUTINES_TABLE = "life_routines"

CAPABILITY_KEY_PREFIX = "taskwatch-schema-extended:"

_MISSING_COLUMN_CODES = frozenset({"42703", "PGRST204"})
_FOREIGN_KEY_CODES = frozenset({"23503"})
_CONFLICT_CODES = frozenset({"23505", "409"})


def classify_remote_error(exc: BaseException) -> RemoteStoreError:
    """Map a driver or network exception to a typed RemoteStoreError.

    Reads ``code``, ``message``, ``details`` and ``hint`` with getattr so any
    PostgREST-shaped error works, not only ``postgrest.APIError``. Errors
    with no code at all are transient.
    """
    if isinstance(exc, RemoteStoreError):
        return exc
    if isinstance(exc, (httpx.TransportError, OSError, asyncio.TimeoutError)):
        return RemoteStoreError(ErrorKind.TRANSIENT, f"Network error: {exc}")
    if not isinstance(exc, APIError) and getattr(exc, "code", None) is None:
        return RemoteStoreError(ErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}")

    code = getattr(exc, "code", None)
    code = str(code) if code is not None else None
    message = getattr(exc, "message", None) or str(exc)
    extra = [str(part) for part in (getattr(exc, "details", None), getattr(exc, "hint", None)) if part]
    details = " ".join(extra) or None
    text = f"{message} {details or ''}".lower()

    if code in _MISSING_COLUMN_CODES or ("column" in text and "does not exist" in text):
        kind = ErrorKind.MISSING_COLUMN
    elif code in _FOREIGN_KEY_CODES or "foreign key" in text:
        kind = ErrorKind.FOREIGN_KEY_VIOLATION
    elif code in _CONFLICT_CODES or "duplicate key" in text:
        kind = ErrorKind.CONFLICT
    else:
        kind = ErrorKind.TRANSIENT
    return RemoteStoreError(kind, str(message), code=code, details=details)


class SchemaCapabilities:
    """Persisted "remote table has the optional columns" flag.

    Defaults to enabled. Once disabled it stays disabled across restarts
    until ``reset()`` is called.
    """

    def __init__(self, table: str, storage: Optional[KeyValueStorage] = None):
        self.table = table
        self._storage = storage
        self._key = f"{CAPABILITY_KEY_PREFIX}{table}"
        self._enabled = self._load()

    def _load(self) -> bool:
        if self._storage is None:
            return True
        try:
            return self._storage.get_item(self._key) != "0"
        except (OSError, StorageError) as e:
            logger.debug(f"Failed to read schema flag for {self.table}: {e}")
            return True

    @property
    def enabled(self) -> bool:
        return self._enabled

    def disable(self) -> None:
        self._enabled = False
        if self._storage is None:
            return
        try:
            self._storage.set_item(self._key, "0")
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to persist schema flag for {self.table}: {e}")

    def reset(self) -> None:
        self._enabled = True
        if self._storage is None:
            return
        try:
            self._storage.remove_item(self._key)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to reset schema flag for {self.table}: {e}")


@dataclass
class UpsertResult:
    # record id -> updated_at accepted by the remote (epoch ms)
    accepted: Dict[str, int] = field(default_factory=dict)


@dataclass
class DeleteResult:
    deleted: List[str] = field(default_factory=list)
    # ids that can never exist remotely; callers purge them locally
    skipped: List[str] = field(default_factory=list)


class TableGateway:
    """Row access to one owner-scoped remote table.

    Subclasses declare the table name, the columns every deployment has and
    the optional columns that may be missing.
    """

    table: str = ""
    base_columns: Tuple[str, ...] = ("id", "user_id")
    optional_columns: Tuple[str, ...] = ()
    # A rejected foreign key into fk_table is retried without fk_columns
    fk_table: Optional[str] = None
    fk_columns: Tuple[str, ...] = ()
    on_conflict: str = "id"

    def __init__(self, client: Any, storage: Optional[KeyValueStorage] = None):
        self._client = client
        self.capabilities = SchemaCapabilities(self.table, storage)

    @property
    def columns(self) -> Tuple[str, ...]:
        if self.capabilities.enabled:
            return self.base_columns + self.optional_columns
        return self.base_columns

    def _query(self):
        return self._client.table(self.table)

    async def _execute(self, builder, action: str):
        try:
            return await builder.execute()
        except Exception as e:
            error = classify_remote_error(e)
            logger.debug(f"{action} on {self.table} failed ({error.kind.value}): {error}")
            raise error from e

    @staticmethod
    def _strip(rows: List[Dict[str, Any]], names: Iterable[str]) -> List[Dict[str, Any]]:
        names = set(names)
        return [{k: v for k, v in row.items() if k not in names} for row in rows]

    @staticmethod
    def _check_owner(rows: List[Dict[str, Any]], owner_id: str) -> None:
        if not owner_id:
            raise IdentityMismatchError(None, owner_id)
        for row in rows:
            if row.get("user_id") != owner_id:
                raise IdentityMismatchError(owner_id, row.get("user_id"))

    def _can_degrade(self, error: RemoteStoreError) -> bool:
        return (
            error.kind == ErrorKind.MISSING_COLUMN
            and self.capabilities.enabled
            and bool(self.optional_columns)
        )

    def _degraded_rows(
        self, rows: List[Dict[str, Any]], error: RemoteStoreError
    ) -> Optional[List[Dict[str, Any]]]:
        """Rows to retry with after ``error``, or None when it is not retryable."""
        if self._can_degrade(error):
            logger.warning(
                f"{self.table} lacks an optional column, continuing without "
                f"{', '.join(self.optional_columns)}: {error}"
            )
            self.capabilities.disable()
            return self._strip(rows, self.optional_columns)
        if (
            error.kind == ErrorKind.FOREIGN_KEY_VIOLATION
            and self.fk_table
            and self.fk_columns
            and error.mentions(self.fk_table)
        ):
            logger.warning(f"{self.table} rejected a link to {self.fk_table}, retrying without it")
            return self._strip(rows, self.fk_columns)
        return None

    async def _write(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            response = await self._execute(
                self._query().upsert(rows, on_conflict=self.on_conflict), "upsert"
            )
        except RemoteStoreError as e:
            if e.kind == ErrorKind.CONFLICT:
                logger.info(f"Conflict upserting into {self.table}, treating as accepted: {e}")
                return []
            raise
        return list(response.data or [])

    async def _upsert_rows(self, rows: List[Dict[str, Any]], owner_id: str) -> List[Dict[str, Any]]:
        """Upsert rows, degrading once on a schema fault.

        Returns:
            The rows echoed back by the remote (may be empty).
        """
        if not rows:
            return []
        self._check_owner(rows, owner_id)
        if not self.capabilities.enabled:
            rows = self._strip(rows, self.optional_columns)
        try:
            return await self._write(rows)
        except RemoteStoreError as e:
            retry = self._degraded_rows(rows, e)
            if retry is None:
                raise
            return await self._write(retry)

    async def _run_select(self, owner_id: str, refine: Optional[Callable]) -> List[Dict[str, Any]]:
        query = self._query().select(",".join(self.columns)).eq("user_id", owner_id)
        if refine is not None:
            query = refine(query)
        response = await self._execute(query, "select")
        return list(response.data or [])

    async def _select_rows(
        self, owner_id: str, refine: Optional[Callable] = None
    ) -> List[Dict[str, Any]]:
        """Select the owner's rows; ``refine`` adds filters/ordering to the query."""
        try:
            rows = await self._run_select(owner_id, refine)
        except RemoteStoreError as e:
            if not self._can_degrade(e):
                raise
            logger.warning(f"{self.table} lacks an optional column, selecting base columns: {e}")
            self.capabilities.disable()
            rows = await self._run_select(owner_id, refine)

        owned = []
        for row in rows:
            if row.get("user_id") not in (None, owner_id):
                logger.warning(f"Ignoring {self.table} row {row.get('id')} owned by another user")
                continue
            owned.append(row)
        return owned

    async def delete_batch(self, ids: List[str], owner_id: str) -> DeleteResult:
        """Delete rows by id.

        Only syntactically valid UUIDs are sent; other ids never reached the
        remote and come back as ``skipped``.
        """
        result = DeleteResult()
        for record_id in ids:
            (result.deleted if is_valid_uuid(record_id) else result.skipped).append(record_id)
        if not owner_id:
            raise IdentityMismatchError(None, owner_id)
        if result.deleted:
            await self._execute(
                self._query().delete().eq("user_id", owner_id).in_("id", result.deleted),
                "delete",
            )
        return result


# =============================================================================
# Session history
# =============================================================================


def _time_value(value: Any) -> Any:
    if isinstance(value, str):
        return iso_to_ms(value)
    return value


def entry_to_row(entry: HistoryEntry, owner_id: str) -> Dict[str, Any]:
    """Map a history entry to a ``session_history`` row."""
    return {
        "id": entry.id,
        "user_id": owner_id,
        "task_name": entry.task_name,
        "elapsed_ms": max(0, int(entry.elapsed)),
        "started_at": ms_to_iso(entry.started_at),
        "ended_at": ms_to_iso(entry.ended_at),
        "goal_name": entry.goal_name,
        "bucket_name": entry.bucket_name,
        "goal_id": entry.goal_id,
        "bucket_id": entry.bucket_id,
        "task_id": entry.task_id,
        "goal_surface": entry.goal_surface,
        "bucket_surface": entry.bucket_surface,
        "created_at": ms_to_iso(entry.created_at or entry.updated_at),
        "updated_at": ms_to_iso(entry.updated_at),
        "notes": entry.notes,
        "subtasks": [
            {"id": s.id, "text": s.text, "completed": s.completed, "sort_index": s.sort_index}
            for s in entry.subtasks
        ],
        "difficulty": entry.difficulty,
        "future_session": entry.future_session,
        "repeating_session_id": entry.repeating_session_id,
        "original_time": ms_to_iso(entry.original_time) if entry.original_time is not None else None,
        "occurrence_date": entry.occurrence_date,
    }


def row_to_entry(row: Dict[str, Any]) -> HistoryEntry | DecodeError:
    """Decode a ``session_history`` row. Remote rows carry no pending action."""
    if not isinstance(row, dict):
        return DecodeError("row is not an object")
    task_name = row.get("task_name")
    data = {
        "id": row.get("id"),
        "task_name": task_name if isinstance(task_name, str) else "",
        "started_at": _time_value(row.get("started_at")),
        "ended_at": _time_value(row.get("ended_at")),
        "goal_name": row.get("goal_name"),
        "bucket_name": row.get("bucket_name"),
        "goal_id": row.get("goal_id"),
        "bucket_id": row.get("bucket_id"),
        "task_id": row.get("task_id"),
        "goal_surface": row.get("goal_surface"),
        "bucket_surface": row.get("bucket_surface"),
        "notes": row.get("notes"),
        "subtasks": row.get("subtasks"),
        "difficulty": row.get("difficulty"),
        "future_session": row.get("future_session"),
        "repeating_session_id": row.get("repeating_session_id"),
        "original_time": _time_value(row.get("original_time")),
        "occurrence_date": row.get("occurrence_date"),
        "created_at": _time_value(row.get("created_at")),
        "updated_at": _time_value(row.get("updated_at")),
        "pending_action": None,
    }
    return decode_history_entry(data)


class HistoryGateway(TableGateway):
    table = HISTORY_TABLE
    base_columns = (
        "id",
        "user_id",
        "task_name",
        "elapsed_ms",
        "started_at",
        "ended_at",
        "goal_name",
        "bucket_name",
        "goal_id",
        "bucket_id",
        "task_id",
        "goal_surface",
        "bucket_surface",
        "created_at",
        "updated_at",
    )
    optional_columns = (
        "notes",
        "subtasks",
        "difficulty",
        "future_session",
    ) + RECURRENCE_LINKAGE_FIELDS
    fk_table = REPEATING_TABLE
    fk_columns = RECURRENCE_LINKAGE_FIELDS

    @property
    def carry_fields(self) -> Tuple[str, ...]:
        """Entry fields the remote does not store, kept from local on merge."""
        return () if self.capabilities.enabled else self.optional_columns

    async def fetch_delta(self, since_ms: int, owner_id: str) -> List[HistoryEntry]:
        """Fetch the owner's rows updated at or after ``since_ms``."""
        rows = await self._select_rows(
            owner_id,
            lambda q: q.gte("updated_at", ms_to_iso(since_ms)).order("updated_at", desc=True),
        )
        entries = []
        for row in rows:
            entry = row_to_entry(row)
            if isinstance(entry, DecodeError):
                logger.debug(f"Skipping remote history row {row.get('id')}: {entry}")
                continue
            entries.append(entry)
        return entries

    async def upsert_batch(self, entries: List[HistoryEntry], owner_id: str) -> UpsertResult:
        """Upsert entries and report the ``updated_at`` the remote accepted."""
        rows = []
        accepted = {}
        for entry in entries:
            try:
                rows.append(entry_to_row(entry, owner_id))
            except (ValueError, OverflowError, OSError) as e:
                logger.warning(f"Skipping history entry {entry.id} that cannot be encoded: {e}")
                continue
            accepted[entry.id] = entry.updated_at
        if not rows:
            return UpsertResult()
        returned = await self._upsert_rows(rows, owner_id)
        for row in returned:
            stamp = iso_to_ms(row.get("updated_at"))
            if row.get("id") in accepted and stamp is not None:
                accepted[row["id"]] = stamp
        return UpsertResult(accepted=accepted)


# =============================================================================
# Repeating rules
# =============================================================================


def rule_to_row(rule: RepeatingRule, owner_id: str) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "user_id": owner_id,
        "is_active": rule.is_active,
        "frequency": rule.frequency,
        "day_of_week": rule.day_of_week,
        "time_of_day_minutes": rule.time_of_day_minutes,
        "duration_minutes": rule.duration_minutes,
        "task_name": rule.task_name,
        "goal_name": rule.goal_name,
        "bucket_name": rule.bucket_name,
        "timezone": rule.timezone,
        "start_date": rule.start_date,
        "end_date": rule.end_date,
    }


class RepeatingRuleGateway(TableGateway):
    table = REPEATING_TABLE
    base_columns = (
        "id",
        "user_id",
        "is_active",
        "frequency",
        "day_of_week",
        "time_of_day_minutes",
        "duration_minutes",
        "task_name",
        "goal_name",
        "bucket_name",
        "timezone",
        "created_at",
        "updated_at",
    )
    optional_columns = ("start_date", "end_date")

    async def fetch_rules(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self._select_rows(owner_id, lambda q: q.order("created_at"))

    async def upsert_rules(self, rules: List[RepeatingRule], owner_id: str) -> List[Dict[str, Any]]:
        rows = [rule_to_row(r, owner_id) for r in rules]
        returned = await self._upsert_rows(rows, owner_id)
        return returned or rows

    async def set_active(self, ids: List[str], owner_id: str, is_active: bool) -> List[str]:
        ids = [i for i in ids if is_valid_uuid(i)]
        if not ids:
            return []
        await self._execute(
            self._query().update({"is_active": is_active}).eq("user_id", owner_id).in_("id", ids),
            "update",
        )
        return ids


# =============================================================================
# Life routines
# =============================================================================


def routine_to_row(routine: LifeRoutine, owner_id: str) -> Dict[str, Any]:
    return {
        "id": routine.id,
        "user_id": owner_id,
        "bucket_id": routine.bucket_id,
        "title": routine.title,
        "blurb": routine.blurb,
        "sort_index": routine.sort_index,
        "surface_style": routine.surface_style,
    }


class LifeRoutineGateway(TableGateway):
    table = LIFE_ROUTINES_TABLE
    base_columns = ("id", "user_id", "bucket_id", "title", "blurb", "sort_index")
    optional_columns = ("surface_style",)
    # Routine ids such as "life-sleep" repeat across users
    on_conflict = "user_id,id"

    async def fetch_routines(self, owner_id: str) -> List[LifeRoutine]:
        rows = await self._select_rows(owner_id, lambda q: q.order("sort_index"))
        routines = []
        for row in rows:
            routine = decode_life_routine(row)
            if isinstance(routine, DecodeError):
                logger.debug(f"Skipping remote life routine {row.get('id')}: {routine}")
                continue
            routines.append(routine)
        return routines

    async def upsert_routines(self, routines: List[LifeRoutine], owner_id: str) -> int:
        rows = [routine_to_row(r, owner_id) for r in routines]
        await self._upsert_rows(rows, owner_id)
        return len(rows)
