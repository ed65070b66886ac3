"""
Shared record types for taskwatch.

All synced record dataclasses live here: session history entries and their
subtasks, repeating rules and life routines. These are the vocabulary shared
by the local store, the sanitizers, the reconciliation engine and the remote
gateways.
"""

import math
import re
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Constants ===

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS

# Epoch-ms range that formats as a datetime, with a margin for minute snapping.
MIN_TIMESTAMP_MS = -62135510400000
MAX_TIMESTAMP_MS = 253402128000000

# Maximum number of history entries retained locally.
HISTORY_LIMIT = 250

# Remote delta fetches only cover rows updated within this many days.
SYNC_WINDOW_DAYS = 30

# Quiet period before a scheduled push runs.
PUSH_DEBOUNCE_MS = 40

DEFAULT_SURFACE_STYLE = "glass"

SURFACE_STYLES = (
    "glass",
    "midnight",
    "slate",
    "charcoal",
    "linen",
    "frost",
    "grove",
    "lagoon",
    "ember",
    "deep-indigo",
    "warm-amber",
    "fresh-teal",
    "sunset-orange",
    "cool-blue",
    "soft-magenta",
    "muted-lavender",
    "neutral-grey-blue",
    "leaf",
    "sprout",
    "fern",
    "sage",
    "meadow",
    "willow",
    "pine",
    "basil",
    "mint",
    "coral",
    "peach",
    "apricot",
    "salmon",
    "tangerine",
    "papaya",
)

VALID_DIFFICULTIES = ("none", "green", "yellow", "red")

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# === Shared Utility Functions ===


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def finite_number(value: Any) -> Optional[float]:
    """Return value when it is a finite int or float, else None.

    Booleans are not numbers. Integers too large for a float count as
    non-finite.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        if not math.isfinite(value):
            return None
    except OverflowError:
        return None
    return value


def timestamp_ms(value: Any) -> Optional[float]:
    """Return value when it is an epoch-ms timestamp a datetime can hold."""
    ms = finite_number(value)
    if ms is None or not MIN_TIMESTAMP_MS <= ms <= MAX_TIMESTAMP_MS:
        return None
    return ms


def snap_to_minute(ms: float) -> int:
    """Round an epoch-ms timestamp to the nearest whole minute."""
    return int(round(ms / MINUTE_MS)) * MINUTE_MS


def is_valid_uuid(value: Any) -> bool:
    """Check whether a value is a syntactically valid UUID string."""
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def ms_to_iso(ms: float) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def iso_to_ms(value: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601 string into epoch milliseconds.

    Returns None for empty or unparseable input instead of raising.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(round(parsed.timestamp() * 1000))


# === Enums ===


class PendingAction(str, Enum):
    """Outstanding obligation of a record toward the remote store.

    A record with no obligation carries ``pending_action=None``.
    """

    UPSERT = "upsert"
    DELETE = "delete"


# === History ===


@dataclass
class Subtask:
    """An ordered checklist item attached to a history entry."""

    id: str
    text: str = ""
    completed: bool = False
    sort_index: float = 0


# Sync metadata fields; everything else on HistoryEntry is content.
SYNC_METADATA_FIELDS = frozenset({"created_at", "updated_at", "pending_action"})

# Linkage fields that older remote schemas do not carry.
RECURRENCE_LINKAGE_FIELDS = ("repeating_session_id", "original_time", "occurrence_date")


@dataclass
class HistoryEntry:
    """A logged or planned time-tracking session.

    Content fields describe the session; ``created_at``, ``updated_at`` and
    ``pending_action`` are sync metadata and never shown in the UI.
    """

    id: str
    task_name: str
    elapsed: int
    started_at: int
    ended_at: int
    goal_name: Optional[str] = None
    bucket_name: Optional[str] = None
    goal_id: Optional[str] = None
    bucket_id: Optional[str] = None
    task_id: Optional[str] = None
    goal_surface: str = DEFAULT_SURFACE_STYLE
    bucket_surface: Optional[str] = None
    notes: str = ""
    subtasks: List[Subtask] = field(default_factory=list)
    difficulty: str = "none"
    # Recurrence linkage
    repeating_session_id: Optional[str] = None
    original_time: Optional[int] = None
    occurrence_date: Optional[str] = None
    future_session: bool = False
    # Sync metadata
    created_at: int = 0
    updated_at: int = 0
    pending_action: Optional[PendingAction] = None

    @property
    def is_deleted(self) -> bool:
        return self.pending_action == PendingAction.DELETE

    def content(self) -> Dict[str, Any]:
        """Content fields only, for field-for-field comparison."""
        return {
            f.name: _plain(getattr(self, f.name))
            for f in fields(self)
            if f.name not in SYNC_METADATA_FIELDS
        }

    def same_content(self, other: "HistoryEntry") -> bool:
        return self.content() == other.content()

    def with_content_of(self, other: "HistoryEntry") -> "HistoryEntry":
        """Copy of this record carrying ``other``'s content and this record's metadata."""
        return replace(
            other,
            created_at=self.created_at,
            updated_at=self.updated_at,
            pending_action=self.pending_action,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the local store."""
        data = self.content()
        data["created_at"] = self.created_at
        data["updated_at"] = self.updated_at
        data["pending_action"] = self.pending_action.value if self.pending_action else None
        return data


def _plain(value: Any) -> Any:
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, Subtask):
        return {
            "id": value.id,
            "text": value.text,
            "completed": value.completed,
            "sort_index": value.sort_index,
        }
    if isinstance(value, Enum):
        return value.value
    return value


def active_entries(entries: List[HistoryEntry]) -> List[HistoryEntry]:
    """Entries visible to the UI (not pending remote deletion)."""
    return [e for e in entries if not e.is_deleted]


# === Repeating rules ===


@dataclass
class RepeatingRule:
    """A daily or weekly recurring session template."""

    id: str
    is_active: bool = True
    frequency: str = "daily"  # 'daily' | 'weekly'
    day_of_week: Optional[int] = None  # 0=Sun .. 6=Sat, weekly only
    time_of_day_minutes: int = 0  # minutes from local midnight
    duration_minutes: int = 60
    task_name: str = ""
    goal_name: Optional[str] = None
    bucket_name: Optional[str] = None
    timezone: Optional[str] = None
    # Activation boundary: guides render only on/after this instant
    created_at_ms: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# === Life routines ===


@dataclass
class LifeRoutine:
    """A built-in or user-defined everyday routine bucket."""

    id: str
    bucket_id: str
    title: str
    blurb: str = ""
    surface_style: str = DEFAULT_SURFACE_STYLE
    sort_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# === Results ===


@dataclass
class SyncResult:
    """Outcome of a push or sync pass."""

    pushed: int = 0  # records upserted remotely
    deleted: int = 0  # records deleted remotely (or purged as local-only)
    pulled: int = 0  # remote rows adopted or applied locally
    dropped: int = 0  # local records removed as remotely deleted
    skipped: Optional[str] = None  # reason the pass did not run
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.pushed += other.pushed
        self.deleted += other.deleted
        self.pulled += other.pulled
        self.dropped += other.dropped
        self.errors.extend(other.errors)
        return self
