"""SyncSession: the owner of all mutable sync state for one replica.

A session holds the local store, the persist sink, the push scheduler, the
push lock, the in-flight sync pass and the bound owner. Tests and embedders
create as many independent sessions as they need; nothing here is module
level.

Two entry points drive the engine:

- ``persist_snapshot(records)``: a local edit. Diffs against the store,
  tags pending changes, writes, broadcasts and schedules a debounced push.
- ``sync_with_remote()``: on session start or app focus. Pulls the windowed
  remote delta, reconciles, pushes pending changes, persists and
  broadcasts.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from taskwatch.config import Settings, get_settings
from taskwatch.events import HISTORY_EVENT, Broadcaster
from taskwatch.logging_config import log_sync_event
from taskwatch.protocols import (
    DecodeError,
    IdentityMismatchError,
    KeyValueStorage,
    RemoteStoreError,
    SessionProvider,
)
from taskwatch.storage.local_store import LAST_SYNC_KEY, LocalRecordStore
from taskwatch.storage.sanitize import decode_history_entry
from taskwatch.sync.gateway import HistoryGateway
from taskwatch.sync.pending import mark_active_set, partition_pending, reclassify_future
from taskwatch.sync.reconcile import merge_remote_delta, sync_window_start
from taskwatch.sync.scheduler import PushScheduler
from taskwatch.sync.sink import PersistSink, sort_history
from taskwatch.types import HistoryEntry, PendingAction, SyncResult, active_entries, now_ms

logger = logging.getLogger(__name__)


class SyncSession:
    """Local-first history replica with remote reconciliation.

    Args:
        storage: Key-value backend for the local copy.
        gateway: Remote history gateway; None keeps everything local.
        session_provider: Supplies the signed-in owner.
        broadcaster: Receives ``HISTORY_EVENT`` after each persist.
        settings: Limits and timings; defaults to ``get_settings()``.
        clock: Returns the current time in epoch ms.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        gateway: Optional[HistoryGateway] = None,
        session_provider: Optional[SessionProvider] = None,
        broadcaster: Optional[Broadcaster] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings or get_settings()
        self.store = LocalRecordStore(storage)
        self.broadcaster = broadcaster or Broadcaster()
        self.sink = PersistSink(
            self.store, self.broadcaster, HISTORY_EVENT, limit=self.settings.history_limit
        )
        self.gateway = gateway
        self.session_provider = session_provider
        self.scheduler = PushScheduler(self._flush, delay_ms=self.settings.push_debounce_ms)
        self._clock = clock
        self._push_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def remote_enabled(self) -> bool:
        return self.gateway is not None and self.session_provider is not None

    @property
    def owner_id(self) -> Optional[str]:
        return self.store.get_owner()

    # === Local reads and writes ===

    def read_all(self) -> List[HistoryEntry]:
        """Every stored record, pending deletes included."""
        return self.store.read_all()

    def read_history(self) -> List[HistoryEntry]:
        """The active history, newest first.

        Planned sessions whose start has passed are reclassified and
        persisted as a side effect.
        """
        records, changed = reclassify_future(self.store.read_all(), self._clock())
        if changed:
            records = self.sink.persist(records)
        return active_entries(sort_history(records))

    def subscribe(self, callback: Callable[[List[HistoryEntry]], None]) -> Callable[[], None]:
        """Subscribe to persisted history updates; returns an unsubscribe function."""
        return self.broadcaster.subscribe(HISTORY_EVENT, callback)

    def _normalize(self, records: List[Any]) -> List[HistoryEntry]:
        normalized = []
        for record in records:
            raw = record.to_dict() if isinstance(record, HistoryEntry) else record
            entry = decode_history_entry(raw)
            if isinstance(entry, DecodeError):
                logger.warning(f"Ignoring invalid history entry {entry.record_id or '?'}: {entry}")
                continue
            normalized.append(entry)
        return normalized

    def persist_snapshot(self, next_records: List[Any]) -> List[HistoryEntry]:
        """Replace the active history with ``next_records``.

        Records missing from the snapshot become pending deletes, changed
        ones pending upserts. Saving an identical snapshot writes nothing.

        Returns:
            The active history after the write.
        """
        current = self.store.read_all()
        updated = mark_active_set(current, self._normalize(next_records), self._clock())
        if {r.id: r.to_dict() for r in updated} == {r.id: r.to_dict() for r in current}:
            return active_entries(sort_history(current))
        stored = self.sink.persist(updated)
        self.schedule_flush()
        return active_entries(stored)

    # === Push ===

    def schedule_flush(self) -> None:
        """Schedule a debounced push of pending changes."""
        if not self.remote_enabled:
            return
        self.scheduler.schedule_flush()

    async def _flush(self) -> None:
        result = await self.push_pending()
        if result.errors:
            logger.info(f"Push left work pending: {'; '.join(result.errors)}")

    def _lock(self) -> asyncio.Lock:
        # One lock per event loop; the synchronous fallback runs on fresh loops
        loop = asyncio.get_running_loop()
        if self._push_lock is None or self._lock_loop is not loop:
            self._push_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._push_lock

    def _check_identity(self, session_owner: str) -> None:
        bound = self.store.get_owner()
        if bound is None:
            self.store.set_owner(session_owner)
            return
        if bound != session_owner:
            raise IdentityMismatchError(bound, session_owner)

    async def push_pending(self) -> SyncResult:
        """Push pending upserts and deletes.

        Confirmed upserts clear their pending action and take the updated_at
        accepted by the remote, unless the record was edited again while the
        push was in flight. Confirmed deletes are removed. Failures leave
        pending state untouched for the next pass.

        Raises:
            IdentityMismatchError: The signed-in owner is not the owner the
                local history belongs to.
        """
        if not self.remote_enabled:
            return SyncResult(skipped="remote not configured")
        async with self._lock():
            session = await self.session_provider.get_current_session()
            if session is None:
                return SyncResult(skipped="no session")
            self._check_identity(session.owner_id)
            return await self._push_locked(session.owner_id)

    async def _push_locked(self, owner_id: str) -> SyncResult:
        result = SyncResult()
        changes = partition_pending(self.store.read_all())
        if changes.empty:
            return result

        sent_upserts = {r.id: r.updated_at for r in changes.upserts}
        sent_deletes = {r.id: r.updated_at for r in changes.deletes}
        accepted: Dict[str, int] = {}
        confirmed_deletes = set()

        if changes.upserts:
            try:
                upserted = await self.gateway.upsert_batch(changes.upserts, owner_id)
                accepted = upserted.accepted
            except RemoteStoreError as e:
                logger.warning(f"Failed to push {len(changes.upserts)} history entries: {e}")
                result.errors.append(f"upsert failed ({e.kind.value}): {e}")

        if changes.deletes:
            try:
                deleted = await self.gateway.delete_batch([r.id for r in changes.deletes], owner_id)
                confirmed_deletes = set(deleted.deleted) | set(deleted.skipped)
                if deleted.skipped:
                    logger.debug(f"Purging {len(deleted.skipped)} local-only deletions")
            except RemoteStoreError as e:
                logger.warning(f"Failed to delete {len(changes.deletes)} history entries: {e}")
                result.errors.append(f"delete failed ({e.kind.value}): {e}")

        # The store may have changed while the remote calls were in flight
        records = self.store.read_all()
        next_records = []
        for record in records:
            if (
                record.id in accepted
                and record.pending_action == PendingAction.UPSERT
                and record.updated_at == sent_upserts[record.id]
            ):
                next_records.append(
                    replace(record, pending_action=None, updated_at=accepted[record.id])
                )
                result.pushed += 1
                continue
            if (
                record.id in confirmed_deletes
                and record.is_deleted
                and record.updated_at == sent_deletes[record.id]
            ):
                result.deleted += 1
                continue
            next_records.append(record)

        if result.pushed or result.deleted:
            self.sink.persist(next_records)
        logger.info(
            f"Push complete: pushed={result.pushed}, deleted={result.deleted}, "
            f"errors={len(result.errors)}"
        )
        log_sync_event(owner_id, "push", result.pushed + result.deleted, len(result.errors))
        return result

    # === Sync ===

    async def sync_with_remote(self) -> SyncResult:
        """Pull, reconcile and push.

        A call made while a pass is running waits for that pass and returns
        its result instead of starting another.
        """
        task = self._sync_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._sync_pass())
            self._sync_task = task
        return await asyncio.shield(task)

    async def _sync_pass(self) -> SyncResult:
        if not self.remote_enabled:
            return SyncResult(skipped="remote not configured")
        session = await self.session_provider.get_current_session()
        if session is None:
            logger.debug("No session, sync skipped")
            return SyncResult(skipped="no session")
        owner_id = session.owner_id
        self.bind_owner(owner_id)

        result = SyncResult()
        window_start = sync_window_start(self._clock(), self.settings.sync_window_days)
        try:
            remote = await self.gateway.fetch_delta(window_start, owner_id)
        except RemoteStoreError as e:
            logger.warning(f"Failed to fetch remote history: {e}")
            result.errors.append(f"fetch failed ({e.kind.value}): {e}")
            remote = None

        if remote is not None:
            merged = merge_remote_delta(
                self.store.read_all(),
                remote,
                window_start=window_start,
                now=self._clock(),
                carry_fields=self.gateway.carry_fields,
            )
            self.sink.persist(merged.records)
            result.pulled = merged.pulled
            result.dropped = merged.dropped
            log_sync_event(owner_id, "pull", merged.pulled + merged.dropped)

        try:
            result.merge(await self.push_pending())
        except IdentityMismatchError as e:
            # Owner changed between the pull and the push
            logger.warning(f"Push blocked: {e}")
            result.errors.append(str(e))

        if result.success:
            self.store.set_meta(LAST_SYNC_KEY, str(self._clock()))
        logger.info(
            f"Sync complete: pulled={result.pulled}, dropped={result.dropped}, "
            f"pushed={result.pushed}, deleted={result.deleted}, errors={len(result.errors)}"
        )
        return result

    # === Ownership ===

    def bind_owner(self, owner_id: str) -> bool:
        """Bind the local history to ``owner_id``.

        Guest history (no recorded owner) is adopted by the first owner. A
        different previous owner's records and pending changes are
        discarded.

        Returns:
            True if local history was discarded.
        """
        previous = self.store.get_owner()
        if previous == owner_id:
            return False
        if previous is None:
            logger.info(f"Adopting guest history for owner {owner_id}")
            self.store.set_owner(owner_id)
            return False

        discarded = len(self.store.read_all())
        logger.warning(
            f"Owner changed from {previous} to {owner_id}; discarding {discarded} local entries"
        )
        self.scheduler.cancel()
        self.store.clear()
        self.store.set_meta(LAST_SYNC_KEY, None)
        self.store.set_owner(owner_id)
        self.broadcaster.publish(HISTORY_EVENT, [])
        return True

    # === Status ===

    def get_last_sync_time(self) -> Optional[datetime]:
        raw = self.store.get_meta(LAST_SYNC_KEY)
        if not raw:
            return None
        try:
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    def get_sync_status(self) -> Dict[str, Any]:
        changes = partition_pending(self.store.read_all())
        return {
            "owner_id": self.store.get_owner(),
            "remote_configured": self.remote_enabled,
            "pending_upserts": len(changes.upserts),
            "pending_deletes": len(changes.deletes),
            "extended_schema": (
                self.gateway.capabilities.enabled if self.gateway is not None else None
            ),
            "last_sync_time": self.get_last_sync_time(),
            "push_scheduled": self.scheduler.pending,
        }

    async def aclose(self) -> None:
        """Run any scheduled push and wait for in-flight work."""
        await self.scheduler.drain()
        if self._sync_task is not None and not self._sync_task.done():
            await self._sync_task
