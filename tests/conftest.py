"""
Pytest fixtures and test configuration for taskwatch tests.

The remote is an in-memory stand-in for the Supabase async client. It
implements the slice of the PostgREST query builder the gateways use,
enforces a per-table column set, stamps ``updated_at`` on every write and
raises real ``postgrest.exceptions.APIError`` values.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest
from postgrest.exceptions import APIError

from taskwatch.auth import StaticSessionProvider
from taskwatch.config import Settings
from taskwatch.storage.kv import MemoryKeyValueStorage
from taskwatch.sync.gateway import HistoryGateway
from taskwatch.sync.session import SyncSession
from taskwatch.types import MINUTE_MS, HistoryEntry, iso_to_ms, ms_to_iso

# 2023-11-14 22:14 UTC, minute aligned
BASE_MS = 1_700_000_040_000
OWNER_ID = "5b0c2d4e-8f7a-4c1b-9e3d-2a6f8b1c0d9e"
OTHER_OWNER_ID = "9e8d7c6b-5a4f-4e3d-8c2b-1a0f9e8d7c6b"

HISTORY_BASE_COLUMNS = {
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
}
HISTORY_EXTENDED_COLUMNS = {
    "notes",
    "subtasks",
    "difficulty",
    "future_session",
    "repeating_session_id",
    "original_time",
    "occurrence_date",
}
REPEATING_BASE_COLUMNS = {
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
}
LIFE_ROUTINE_BASE_COLUMNS = {"id", "user_id", "bucket_id", "title", "blurb", "sort_index"}

FULL_SCHEMA = {
    "session_history": HISTORY_BASE_COLUMNS | HISTORY_EXTENDED_COLUMNS,
    "repeating_sessions": REPEATING_BASE_COLUMNS | {"start_date", "end_date"},
    "life_routines": LIFE_ROUTINE_BASE_COLUMNS | {"surface_style"},
}

LEGACY_SCHEMA = {
    "session_history": set(HISTORY_BASE_COLUMNS),
    "repeating_sessions": set(REPEATING_BASE_COLUMNS),
    "life_routines": set(LIFE_ROUTINE_BASE_COLUMNS),
}


def api_error(code: Optional[str], message: str, details: Optional[str] = None) -> APIError:
    return APIError({"code": code, "message": message, "details": details, "hint": None})


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        parsed = iso_to_ms(value)
        return parsed if parsed is not None else value
    return 0 if value is None else value


class FakeResponse:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data
        self.count = None


class FakeQuery:
    """One PostgREST request under construction."""

    def __init__(self, backend, table: str, op: str, payload=None, columns="*", on_conflict="id"):
        self.backend = backend
        self.table = table
        self.op = op
        self.payload = payload
        self.columns = columns
        self.on_conflict = on_conflict or "id"
        self.filters = []
        self.order_by: Optional[Tuple[str, bool]] = None
        self.row_limit: Optional[int] = None

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: _comparable(row.get(column)) >= _comparable(value))
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False, **_):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(f(row) for f in self.filters)

    async def execute(self):
        return self.backend.run(self)


class FakeTable:
    def __init__(self, backend, name: str):
        self._backend = backend
        self._name = name

    def select(self, columns="*", count=None):
        return FakeQuery(self._backend, self._name, "select", columns=columns)

    def upsert(self, rows, *, on_conflict="", returning=None, ignore_duplicates=False, **_):
        return FakeQuery(self._backend, self._name, "upsert", payload=rows, on_conflict=on_conflict)

    def update(self, values, **_):
        return FakeQuery(self._backend, self._name, "update", payload=values)

    def delete(self, **_):
        return FakeQuery(self._backend, self._name, "delete")


class FakeSupabase:
    """In-memory Supabase async client.

    Args:
        schema: table -> set of existing columns.
        enforce_fk: Reject history rows linking to unknown repeating rules.
    """

    def __init__(self, schema: Optional[Dict[str, set]] = None, enforce_fk: bool = False):
        self.schema = {t: set(c) for t, c in (schema or FULL_SCHEMA).items()}
        self.rows: Dict[str, Dict[Tuple, Dict[str, Any]]] = {t: {} for t in self.schema}
        self.enforce_fk = enforce_fk
        self.calls: List[Tuple[str, str, Any]] = []
        self.server_now = BASE_MS + MINUTE_MS
        self._failures: List[Tuple[Optional[str], Optional[str], Exception]] = []

    def table(self, name: str) -> FakeTable:
        return FakeTable(self, name)

    # --- test controls ---

    def fail_next(self, exc: Exception, table: Optional[str] = None, op: Optional[str] = None):
        self._failures.append((table, op, exc))

    def seed(self, table: str, row: Dict[str, Any]) -> None:
        """Insert a row as-is, bypassing schema checks and timestamps."""
        self.rows[table][(row["id"],) if table != "life_routines" else (row["user_id"], row["id"])] = dict(row)

    def table_rows(self, table: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.rows[table].values()]

    def calls_for(self, table: str, op: str) -> List[Any]:
        return [payload for t, o, payload in self.calls if t == table and o == op]

    # --- request handling ---

    def _tick(self) -> str:
        self.server_now += 1000
        return ms_to_iso(self.server_now)

    def run(self, query: FakeQuery) -> FakeResponse:
        self.calls.append((query.table, query.op, copy.deepcopy(query.payload)))
        for index, (table, op, exc) in enumerate(self._failures):
            if (table is None or table == query.table) and (op is None or op == query.op):
                del self._failures[index]
                raise exc
        handler = getattr(self, f"_{query.op}")
        return FakeResponse(handler(query))

    def _select(self, query: FakeQuery) -> List[Dict[str, Any]]:
        existing = self.schema[query.table]
        wanted = existing if query.columns == "*" else [c.strip() for c in query.columns.split(",")]
        for column in wanted:
            if column not in existing:
                raise api_error("42703", f"column {query.table}.{column} does not exist")
        rows = [r for r in self.rows[query.table].values() if query.matches(r)]
        if query.order_by:
            column, desc = query.order_by
            rows.sort(key=lambda r: _comparable(r.get(column)), reverse=desc)
        if query.row_limit is not None:
            rows = rows[: query.row_limit]
        return [{c: copy.deepcopy(r.get(c)) for c in wanted} for r in rows]

    def _upsert(self, query: FakeQuery) -> List[Dict[str, Any]]:
        rows = query.payload if isinstance(query.payload, list) else [query.payload]
        existing = self.schema[query.table]
        for row in rows:
            for column in row:
                if column not in existing:
                    raise api_error(
                        "PGRST204",
                        f"Could not find the '{column}' column of '{query.table}' in the schema cache",
                    )
            linked = row.get("repeating_session_id")
            if (
                self.enforce_fk
                and query.table == "session_history"
                and linked
                and (linked,) not in self.rows["repeating_sessions"]
            ):
                raise api_error(
                    "23503",
                    'insert or update on table "session_history" violates foreign key constraint '
                    '"session_history_repeating_session_id_fkey"',
                    f'Key (repeating_session_id)=({linked}) is not present in table "repeating_sessions".',
                )
        key_columns = [c.strip() for c in query.on_conflict.split(",")]
        stored = []
        for row in rows:
            key = tuple(row.get(c) for c in key_columns)
            target = self.rows[query.table].setdefault(key, {})
            target.update(copy.deepcopy(row))
            if "updated_at" in existing:
                target["updated_at"] = self._tick()
            stored.append(copy.deepcopy(target))
        return stored

    def _update(self, query: FakeQuery) -> List[Dict[str, Any]]:
        updated = []
        for row in self.rows[query.table].values():
            if query.matches(row):
                row.update(query.payload)
                updated.append(dict(row))
        return updated

    def _delete(self, query: FakeQuery) -> List[Dict[str, Any]]:
        removed = []
        for key, row in list(self.rows[query.table].items()):
            if query.matches(row):
                removed.append(self.rows[query.table].pop(key))
        return removed


class FakeClock:
    """Controllable epoch-ms clock."""

    def __init__(self, now: int = BASE_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture(autouse=True)
def taskwatch_home(tmp_path, monkeypatch):
    """Point the data directory (and logs) at a temp directory."""
    monkeypatch.setenv("TASKWATCH_DATA_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryKeyValueStorage()


@pytest.fixture
def settings():
    return Settings(_env_file=None, push_debounce_ms=10)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def provider():
    return StaticSessionProvider(OWNER_ID)


@pytest.fixture
def make_entry():
    """Factory for history entries with sane defaults."""

    def _make(entry_id: str, started_at: int = BASE_MS - 2 * 60 * MINUTE_MS, **overrides) -> HistoryEntry:
        ended_at = overrides.pop("ended_at", started_at + 30 * MINUTE_MS)
        fields = {
            "id": entry_id,
            "task_name": overrides.pop("task_name", f"Task {entry_id}"),
            "elapsed": max(0, ended_at - started_at),
            "started_at": started_at,
            "ended_at": ended_at,
        }
        fields.update(overrides)
        return HistoryEntry(**fields)

    return _make


@pytest.fixture
def local_session(storage, settings, clock):
    """Session with no remote attached."""
    return SyncSession(storage, settings=settings, clock=clock)


@pytest.fixture
def remote_session(storage, fake_supabase, provider, settings, clock):
    """Session wired to the fake remote and signed in as OWNER_ID."""
    return SyncSession(
        storage,
        gateway=HistoryGateway(fake_supabase, storage),
        session_provider=provider,
        settings=settings,
        clock=clock,
    )
