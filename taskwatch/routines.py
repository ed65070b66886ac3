"""Life routines: built-in everyday buckets (sleep, eat, ...).

The routine list is stored locally as a whole, always filled up with the
built-in defaults, and mirrored to the ``life_routines`` table when a
session is available.
"""

import json
import logging
from dataclasses import replace
from typing import Any, List, Optional

from taskwatch.events import LIFE_ROUTINES_EVENT, Broadcaster
from taskwatch.protocols import (
    DecodeError,
    KeyValueStorage,
    RemoteStoreError,
    SessionProvider,
    StorageError,
)
from taskwatch.surfaces import ensure_surface_style
from taskwatch.types import DEFAULT_SURFACE_STYLE, LifeRoutine, finite_number

logger = logging.getLogger(__name__)

LIFE_ROUTINE_STORAGE_KEY = "taskwatch-life-routines-v1"

LIFE_ROUTINES_NAME = "Life Routines"
LIFE_ROUTINES_SURFACE = "linen"

LIFE_ROUTINE_DEFAULTS = (
    LifeRoutine(
        id="life-sleep",
        bucket_id="life-sleep",
        title="Sleep",
        blurb="Protect 7-9 hours and wind down with intention.",
        surface_style="midnight",
        sort_index=0,
    ),
    LifeRoutine(
        id="life-eat",
        bucket_id="life-eat",
        title="Eat",
        blurb="Plan balanced meals and pause to truly refuel.",
        surface_style="grove",
        sort_index=1,
    ),
    LifeRoutine(
        id="life-cooking",
        bucket_id="life-cooking",
        title="Cooking",
        blurb="Prep ingredients, cook, and plate something nourishing.",
        surface_style="grove",
        sort_index=2,
    ),
    LifeRoutine(
        id="life-socials",
        bucket_id="life-socials",
        title="Socials",
        blurb="Reach out, share a laugh, or check in with someone.",
        surface_style="ember",
        sort_index=3,
    ),
    LifeRoutine(
        id="life-screen-break",
        bucket_id="life-screen-break",
        title="Screen Break",
        blurb="Step away from devices: move, stretch, or rest your eyes.",
        surface_style="lagoon",
        sort_index=4,
    ),
    LifeRoutine(
        id="life-meditate",
        bucket_id="life-meditate",
        title="Meditate",
        blurb="Give your mind 10 minutes of quiet focus.",
        surface_style="lagoon",
        sort_index=5,
    ),
)

_DEFAULTS_BY_ID = {r.id: r for r in LIFE_ROUTINE_DEFAULTS}

# Routine title (lowercased) -> surface, used to colour history entries.
LIFE_ROUTINE_SURFACE_LOOKUP = {r.title.lower(): r.surface_style for r in LIFE_ROUTINE_DEFAULTS}


def default_life_routines() -> List[LifeRoutine]:
    return [replace(r) for r in LIFE_ROUTINE_DEFAULTS]


def _text(raw: dict, snake: str, camel: str) -> str:
    value = raw.get(snake, raw.get(camel))
    return value.strip() if isinstance(value, str) else ""


def decode_life_routine(raw: Any) -> LifeRoutine | DecodeError:
    """Decode a stored or remote routine. Never raises."""
    if not isinstance(raw, dict):
        return DecodeError("not an object")
    routine_id = raw.get("id")
    if not isinstance(routine_id, str) or not routine_id.strip():
        return DecodeError("missing id", field="id")
    routine_id = routine_id.strip()
    defaults = _DEFAULTS_BY_ID.get(routine_id)

    sort_raw = finite_number(raw.get("sort_index", raw.get("sortIndex")))
    if sort_raw is not None:
        sort_index = int(sort_raw)
    else:
        sort_index = defaults.sort_index if defaults else 0

    return LifeRoutine(
        id=routine_id,
        bucket_id=_text(raw, "bucket_id", "bucketId") or routine_id,
        title=_text(raw, "title", "title") or (defaults.title if defaults else "Routine"),
        blurb=_text(raw, "blurb", "blurb") or (defaults.blurb if defaults else ""),
        surface_style=ensure_surface_style(
            raw.get("surface_style", raw.get("surfaceStyle")),
            defaults.surface_style if defaults else DEFAULT_SURFACE_STYLE,
        ),
        sort_index=sort_index,
    )


def sanitize_life_routines(value: Any) -> List[LifeRoutine]:
    """Sanitize a routine list, filling in any missing built-in routine.

    A non-list value yields the default list.
    """
    if not isinstance(value, list):
        return default_life_routines()
    seen = set()
    result: List[LifeRoutine] = []
    for raw in value:
        routine = decode_life_routine(raw)
        if isinstance(routine, DecodeError):
            logger.debug(f"Dropping life routine: {routine}")
            continue
        if routine.id in seen:
            continue
        seen.add(routine.id)
        result.append(routine)
    for default in LIFE_ROUTINE_DEFAULTS:
        if default.id not in seen:
            seen.add(default.id)
            result.append(replace(default))
    return result


class LifeRoutineRepository:
    """Local-first storage of the life routine list.

    Args:
        storage: Key-value backend for the local copy.
        broadcaster: Receives ``LIFE_ROUTINES_EVENT`` after each write.
        gateway: Remote table gateway; None keeps routines local only.
        session_provider: Supplies the owner for remote calls.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        broadcaster: Optional[Broadcaster] = None,
        gateway=None,
        session_provider: Optional[SessionProvider] = None,
    ):
        self._storage = storage
        self._broadcaster = broadcaster or Broadcaster()
        self._gateway = gateway
        self._session_provider = session_provider

    def read(self) -> List[LifeRoutine]:
        try:
            raw = self._storage.get_item(LIFE_ROUTINE_STORAGE_KEY)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to read life routines: {e}")
            return default_life_routines()
        if not raw:
            return default_life_routines()
        try:
            return sanitize_life_routines(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.warning("Stored life routines are corrupt; using defaults")
            return default_life_routines()

    def write(self, routines: List[Any]) -> List[LifeRoutine]:
        """Sanitize, store and broadcast the routine list.

        Accepts LifeRoutine instances or raw dicts. Returns the sanitized list
        even when the local write fails.
        """
        raw = [r.to_dict() if isinstance(r, LifeRoutine) else r for r in routines]
        sanitized = sanitize_life_routines(raw)
        try:
            self._storage.set_item(
                LIFE_ROUTINE_STORAGE_KEY, json.dumps([r.to_dict() for r in sanitized])
            )
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to persist life routines locally: {e}")
            return [replace(r) for r in sanitized]
        self._broadcaster.publish(LIFE_ROUTINES_EVENT, [replace(r) for r in sanitized])
        return [replace(r) for r in sanitized]

    async def push_to_remote(
        self, routines: Optional[List[LifeRoutine]] = None, strict: bool = False
    ) -> int:
        """Upsert the routine list remotely.

        Args:
            routines: Routines to push; defaults to the local list.
            strict: Raise on failure instead of logging.

        Returns:
            Number of routines accepted remotely.
        """
        if self._gateway is None or self._session_provider is None:
            return 0
        session = await self._session_provider.get_current_session()
        if session is None:
            return 0
        to_push = routines if routines is not None else self.read()
        try:
            return await self._gateway.upsert_routines(to_push, session.owner_id)
        except RemoteStoreError as e:
            if strict:
                raise
            logger.warning(f"Failed to push life routines: {e}")
            return 0

    async def fetch_remote(self) -> Optional[List[LifeRoutine]]:
        """Fetch the remote list and store it locally.

        Returns None when no session is available or the fetch failed.
        """
        if self._gateway is None or self._session_provider is None:
            return None
        session = await self._session_provider.get_current_session()
        if session is None:
            return None
        try:
            rows = await self._gateway.fetch_routines(session.owner_id)
        except RemoteStoreError as e:
            logger.warning(f"Failed to fetch life routines: {e}")
            return None
        if not rows:
            return None
        return self.write(rows)
