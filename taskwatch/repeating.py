"""Repeating session rules.

A rule turns one logged session into a daily or weekly guide. Rules live
in the ``repeating_sessions`` table when a session is available and in a
local list otherwise. The activation boundary (the instant from which the
guide renders) is kept in a separate local map, since the remote only
records its own ``created_at``.
"""

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskwatch.events import REPEATING_RULES_EVENT, Broadcaster
from taskwatch.protocols import (
    DecodeError,
    KeyValueStorage,
    RemoteStoreError,
    SessionProvider,
    StorageError,
)
from taskwatch.types import (
    MINUTE_MS,
    HistoryEntry,
    PendingAction,
    RepeatingRule,
    finite_number,
    iso_to_ms,
    is_valid_uuid,
    timestamp_ms,
)

logger = logging.getLogger(__name__)

REPEATING_RULES_KEY = "taskwatch-repeating-rules"
ACTIVATION_MAP_KEY = "taskwatch-repeating-activation-map"

FREQUENCIES = ("daily", "weekly")


def _pick(raw: Dict[str, Any], snake: str, camel: str) -> Any:
    return raw[snake] if snake in raw else raw.get(camel)


def decode_repeating_rule(raw: Any) -> RepeatingRule | DecodeError:
    """Decode a remote row (snake_case) or a local rule (camelCase)."""
    if not isinstance(raw, dict):
        return DecodeError("not an object")
    rule_id = raw.get("id")
    if not isinstance(rule_id, str) or not rule_id:
        return DecodeError("missing id", field="id")

    frequency = raw.get("frequency")
    if frequency not in FREQUENCIES:
        frequency = "daily"
    day_of_week = finite_number(_pick(raw, "day_of_week", "dayOfWeek"))
    time_of_day = finite_number(_pick(raw, "time_of_day_minutes", "timeOfDayMinutes"))
    duration = finite_number(_pick(raw, "duration_minutes", "durationMinutes"))
    is_active = _pick(raw, "is_active", "isActive")

    created_at_ms = timestamp_ms(_pick(raw, "created_at_ms", "createdAtMs"))
    if created_at_ms is not None:
        created_at_ms = max(0, int(created_at_ms))
    else:
        created_at_ms = iso_to_ms(raw.get("created_at"))

    def text(snake: str, camel: str) -> Optional[str]:
        value = _pick(raw, snake, camel)
        return value if isinstance(value, str) else None

    return RepeatingRule(
        id=rule_id,
        is_active=is_active is not False,
        frequency=frequency,
        day_of_week=int(day_of_week) if day_of_week is not None else None,
        time_of_day_minutes=int(time_of_day) if time_of_day is not None else 0,
        duration_minutes=max(1, int(duration)) if duration is not None else 60,
        task_name=text("task_name", "taskName") or "",
        goal_name=text("goal_name", "goalName"),
        bucket_name=text("bucket_name", "bucketName"),
        timezone=text("timezone", "timeZone"),
        created_at_ms=created_at_ms,
        start_date=text("start_date", "startDate"),
        end_date=text("end_date", "endDate"),
    )


def sanitize_repeating_rules(value: Any) -> List[RepeatingRule]:
    if not isinstance(value, list):
        return []
    rules = []
    seen = set()
    for raw in value:
        rule = decode_repeating_rule(raw)
        if isinstance(rule, DecodeError) or rule.id in seen:
            continue
        seen.add(rule.id)
        rules.append(rule)
    return rules


def _local_time(ms: int, tz: Optional[str]) -> datetime:
    instant = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    if tz:
        try:
            return instant.astimezone(ZoneInfo(tz))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown timezone {tz!r}, using system local time")
    return instant.astimezone()


def _entry_slot(entry: HistoryEntry, tz: Optional[str]) -> Tuple[int, int, int]:
    """(minutes from local midnight, duration minutes, day of week with 0=Sunday)."""
    start = _local_time(entry.started_at, tz)
    duration = max(1, round(max(1, entry.ended_at - entry.started_at) / MINUTE_MS))
    return start.hour * 60 + start.minute, duration, (start.weekday() + 1) % 7


def rule_for_entry(
    entry: HistoryEntry,
    frequency: str,
    tz: Optional[str] = None,
    rule_id: Optional[str] = None,
) -> RepeatingRule:
    """Build a rule repeating ``entry`` daily or weekly from its start."""
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unsupported frequency: {frequency}")
    minutes, duration, day_of_week = _entry_slot(entry, tz)
    return RepeatingRule(
        id=rule_id or str(uuid.uuid4()),
        is_active=True,
        frequency=frequency,
        day_of_week=day_of_week if frequency == "weekly" else None,
        time_of_day_minutes=minutes,
        duration_minutes=duration,
        task_name=entry.task_name or "",
        goal_name=entry.goal_name,
        bucket_name=entry.bucket_name,
        timezone=tz,
        created_at_ms=max(0, entry.started_at),
    )


def rule_matches_entry(rule: RepeatingRule, entry: HistoryEntry, tz: Optional[str] = None) -> bool:
    """Whether ``rule`` would produce ``entry``: same labels, slot and weekday."""
    minutes, duration, day_of_week = _entry_slot(entry, rule.timezone or tz)
    labels = (
        (rule.task_name or "") == (entry.task_name or "")
        and rule.goal_name == entry.goal_name
        and rule.bucket_name == entry.bucket_name
    )
    slot = rule.time_of_day_minutes == minutes and rule.duration_minutes == duration
    day = rule.frequency == "daily" or rule.day_of_week == day_of_week
    return labels and slot and day


def remap_repeating_ids(entries: List[HistoryEntry], id_map: Dict[str, str]) -> List[HistoryEntry]:
    """Re-point history linkage after rules were re-keyed.

    Re-pointed entries that are not pending deletion become pending upserts.
    """
    if not id_map:
        return list(entries)
    result = []
    for entry in entries:
        new_id = id_map.get(entry.repeating_session_id or "")
        if new_id is None:
            result.append(entry)
            continue
        pending = entry.pending_action if entry.is_deleted else PendingAction.UPSERT
        result.append(replace(entry, repeating_session_id=new_id, pending_action=pending))
    return result


class RepeatingRuleRepository:
    """Remote-first rule access with a local fallback list.

    Args:
        storage: Key-value backend for local rules and the activation map.
        gateway: ``RepeatingRuleGateway``; None keeps rules local.
        session_provider: Supplies the owner for remote calls.
        broadcaster: Receives ``REPEATING_RULES_EVENT`` after local writes.
        tz: IANA timezone name used to place entries in the day.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        gateway=None,
        session_provider: Optional[SessionProvider] = None,
        broadcaster: Optional[Broadcaster] = None,
        tz: Optional[str] = None,
    ):
        self._storage = storage
        self._gateway = gateway
        self._session_provider = session_provider
        self._broadcaster = broadcaster or Broadcaster()
        self.tz = tz

    # === Local ===

    def _read_json(self, key: str) -> Any:
        try:
            raw = self._storage.get_item(key)
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to read {key}: {e}")
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.warning(f"Stored {key} is corrupt; ignoring it")
            return None

    def _write_json(self, key: str, value: Any) -> bool:
        try:
            self._storage.set_item(key, json.dumps(value))
        except (OSError, StorageError, TypeError, ValueError) as e:
            logger.warning(f"Failed to persist {key}: {e}")
            return False
        return True

    def read_local(self) -> List[RepeatingRule]:
        return sanitize_repeating_rules(self._read_json(REPEATING_RULES_KEY))

    def write_local(self, rules: List[RepeatingRule]) -> None:
        if self._write_json(REPEATING_RULES_KEY, [r.to_dict() for r in rules]):
            self._broadcaster.publish(REPEATING_RULES_EVENT, [replace(r) for r in rules])

    def read_activation_map(self) -> Dict[str, int]:
        value = self._read_json(ACTIVATION_MAP_KEY)
        if not isinstance(value, dict):
            return {}
        return {
            k: max(0, int(v))
            for k, v in value.items()
            if isinstance(k, str) and timestamp_ms(v) is not None
        }

    def _remember_activation(self, rule_id: str, activation_ms: int) -> None:
        activation = self.read_activation_map()
        activation[rule_id] = max(0, int(activation_ms))
        self._write_json(ACTIVATION_MAP_KEY, activation)

    def _with_activation(self, rules: List[RepeatingRule]) -> List[RepeatingRule]:
        activation = self.read_activation_map()
        return [
            replace(r, created_at_ms=activation[r.id]) if r.id in activation else r for r in rules
        ]

    async def _owner(self) -> Optional[str]:
        if self._gateway is None or self._session_provider is None:
            return None
        session = await self._session_provider.get_current_session()
        return session.owner_id if session else None

    # === Operations ===

    async def fetch_rules(self) -> List[RepeatingRule]:
        """Remote rules with activation boundaries applied; local rules offline."""
        owner_id = await self._owner()
        if owner_id is None:
            return self.read_local()
        try:
            rows = await self._gateway.fetch_rules(owner_id)
        except RemoteStoreError as e:
            logger.warning(f"Failed to fetch repeating rules, using local copy: {e}")
            return self.read_local()
        return self._with_activation(sanitize_repeating_rules(rows))

    def _save_local_rule(self, rule: RepeatingRule) -> RepeatingRule:
        self.write_local(self.read_local() + [rule])
        return rule

    async def create_rule_for_entry(self, entry: HistoryEntry, frequency: str) -> RepeatingRule:
        """Create a rule repeating ``entry``.

        The rule is stored remotely when possible and locally otherwise, so
        the caller always gets a rule back.
        """
        rule = rule_for_entry(entry, frequency, self.tz)
        owner_id = await self._owner()
        if owner_id is None:
            return self._save_local_rule(rule)
        try:
            rows = await self._gateway.upsert_rules([rule], owner_id)
        except RemoteStoreError as e:
            logger.warning(f"Failed to create repeating rule remotely, keeping it local: {e}")
            return self._save_local_rule(rule)

        created = decode_repeating_rule(rows[0]) if rows else rule
        if isinstance(created, DecodeError):
            created = rule
        self._remember_activation(created.id, rule.created_at_ms or 0)
        return replace(created, created_at_ms=rule.created_at_ms)

    def deactivate_matching_local(self, entry: HistoryEntry) -> List[str]:
        ids = []
        rules = []
        for rule in self.read_local():
            if rule.is_active and rule_matches_entry(rule, entry, self.tz):
                ids.append(rule.id)
                rule = replace(rule, is_active=False)
            rules.append(rule)
        if ids:
            self.write_local(rules)
        return ids

    def delete_matching_local(self, entry: HistoryEntry) -> List[str]:
        ids = []
        rules = []
        for rule in self.read_local():
            if rule_matches_entry(rule, entry, self.tz):
                ids.append(rule.id)
            else:
                rules.append(rule)
        if ids:
            self.write_local(rules)
        return ids

    async def _matching_remote(self, entry: HistoryEntry, owner_id: str) -> List[str]:
        rows = await self._gateway.fetch_rules(owner_id)
        return [
            r.id for r in sanitize_repeating_rules(rows) if rule_matches_entry(r, entry, self.tz)
        ]

    async def deactivate_matching(self, entry: HistoryEntry) -> List[str]:
        """Deactivate every rule that would produce ``entry``; returns their ids."""
        owner_id = await self._owner()
        if owner_id is None:
            return self.deactivate_matching_local(entry)
        try:
            ids = await self._matching_remote(entry, owner_id)
            return await self._gateway.set_active(ids, owner_id, False)
        except RemoteStoreError as e:
            logger.warning(f"Failed to deactivate repeating rules: {e}")
            return []

    async def delete_matching(self, entry: HistoryEntry) -> List[str]:
        """Delete every rule that would produce ``entry``; returns their ids."""
        owner_id = await self._owner()
        if owner_id is None:
            return self.delete_matching_local(entry)
        try:
            ids = await self._matching_remote(entry, owner_id)
            result = await self._gateway.delete_batch(ids, owner_id)
        except RemoteStoreError as e:
            logger.warning(f"Failed to delete repeating rules: {e}")
            return []
        return result.deleted

    async def push_rules(self, rules: List[RepeatingRule], strict: bool = False) -> Dict[str, str]:
        """Upsert rules remotely, re-keying ids the remote cannot store.

        Args:
            rules: Rules to push, typically the local list.
            strict: Raise RemoteStoreError on failure instead of logging.

        Returns:
            Map of old id -> new UUID for every re-keyed rule. Empty when
            nothing was pushed.
        """
        owner_id = await self._owner()
        if owner_id is None or not rules:
            return {}
        id_map: Dict[str, str] = {}
        prepared = []
        for rule in rules:
            if is_valid_uuid(rule.id):
                prepared.append(rule)
                continue
            new_id = str(uuid.uuid4())
            id_map[rule.id] = new_id
            prepared.append(replace(rule, id=new_id))
        try:
            await self._gateway.upsert_rules(prepared, owner_id)
        except RemoteStoreError as e:
            if strict:
                raise
            logger.warning(f"Failed to push {len(prepared)} repeating rules: {e}")
            return {}

        if id_map:
            activation = self.read_activation_map()
            for old_id, new_id in id_map.items():
                if old_id in activation:
                    activation[new_id] = activation.pop(old_id)
            self._write_json(ACTIVATION_MAP_KEY, activation)
            local = self.read_local()
            self.write_local([replace(r, id=id_map.get(r.id, r.id)) for r in local])
        for rule in prepared:
            if rule.created_at_ms is not None:
                self._remember_activation(rule.id, rule.created_at_ms)
        return id_map
