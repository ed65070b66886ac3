"""One-time migration of guest data into a signed-in account.

Data recorded before sign-in lives only in local storage. The first time an
owner signs in on this replica, repeating rules, history and life routines
are pushed to the remote. Completion is recorded per owner; a failed
migration leaves the marker unset so the next session retries.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Dict

from taskwatch.protocols import (
    BootstrapError,
    IdentityMismatchError,
    KeyValueStorage,
    RemoteStoreError,
    StorageError,
)
from taskwatch.repeating import RepeatingRuleRepository, remap_repeating_ids
from taskwatch.routines import LifeRoutineRepository
from taskwatch.sync.session import SyncSession
from taskwatch.types import HistoryEntry, PendingAction, is_valid_uuid

logger = logging.getLogger(__name__)

BOOTSTRAP_MARKER_PREFIX = "taskwatch-bootstrap-v1:"


class GuestDataBootstrapper:
    """Runs the guest migration at most once per owner.

    Args:
        storage: Key-value backend holding the completion markers.
        session: History sync session bound to the signing-in owner.
        repeating: Repeating rule repository.
        routines: Life routine repository.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        session: SyncSession,
        repeating: RepeatingRuleRepository,
        routines: LifeRoutineRepository,
    ):
        self._storage = storage
        self._session = session
        self._repeating = repeating
        self._routines = routines
        self._inflight: Dict[str, asyncio.Task] = {}

    def _marker(self, owner_id: str) -> str:
        return f"{BOOTSTRAP_MARKER_PREFIX}{owner_id}"

    def is_complete(self, owner_id: str) -> bool:
        try:
            return self._storage.get_item(self._marker(owner_id)) == "1"
        except (OSError, StorageError) as e:
            logger.debug(f"Failed to read bootstrap marker: {e}")
            return False

    def _mark_complete(self, owner_id: str) -> None:
        try:
            self._storage.set_item(self._marker(owner_id), "1")
        except (OSError, StorageError) as e:
            logger.warning(f"Failed to record bootstrap completion for {owner_id}: {e}")

    async def bootstrap_if_needed(self, owner_id: str) -> bool:
        """Migrate guest data for ``owner_id`` unless already done.

        Concurrent calls for the same owner share one migration.

        Returns:
            True if a migration ran and completed during this call.

        Raises:
            BootstrapError: The migration failed; it will be retried.
        """
        if not owner_id or not self._session.remote_enabled:
            return False
        task = self._inflight.get(owner_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run(owner_id))
            self._inflight[owner_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(owner_id, None))
        return await asyncio.shield(task)

    async def _run(self, owner_id: str) -> bool:
        if self.is_complete(owner_id):
            return False
        logger.info(f"Migrating guest data for owner {owner_id}")
        try:
            await self._migrate(owner_id)
        except (RemoteStoreError, IdentityMismatchError) as e:
            logger.warning(f"Guest data migration failed for {owner_id}: {e}")
            raise BootstrapError(f"Guest data migration failed: {e}") from e
        self._mark_complete(owner_id)
        logger.info(f"Guest data migration complete for owner {owner_id}")
        return True

    @staticmethod
    def _claim(record: HistoryEntry) -> HistoryEntry:
        """Queue a surviving guest record for upload under a remote-safe id."""
        if record.is_deleted:
            return record
        if not is_valid_uuid(record.id):
            record = replace(record, id=str(uuid.uuid4()))
        return replace(record, pending_action=PendingAction.UPSERT)

    async def _migrate(self, owner_id: str) -> None:
        self._session.bind_owner(owner_id)

        rules = self._repeating.read_local()
        id_map = await self._repeating.push_rules(rules, strict=True) if rules else {}

        records = [
            self._claim(r) for r in remap_repeating_ids(self._session.read_all(), id_map)
        ]
        if records:
            self._session.sink.persist(records)
            result = await self._session.push_pending()
            if result.skipped:
                raise BootstrapError(f"History push skipped: {result.skipped}")
            if result.errors:
                raise BootstrapError(f"History push failed: {'; '.join(result.errors)}")

        await self._routines.push_to_remote(strict=True)
