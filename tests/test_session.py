"""Tests for SyncSession: local edits, push, pull and ownership."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from conftest import (
    BASE_MS,
    LEGACY_SCHEMA,
    OTHER_OWNER_ID,
    OWNER_ID,
    FakeSupabase,
)

from taskwatch.auth import StaticSessionProvider
from taskwatch.config import Settings
from taskwatch.protocols import IdentityMismatchError
from taskwatch.storage.local_store import HISTORY_STORAGE_KEY, LAST_SYNC_KEY
from taskwatch.sync.gateway import HistoryGateway, entry_to_row
from taskwatch.sync.session import SyncSession
from taskwatch.types import DAY_MS, MINUTE_MS, PendingAction, iso_to_ms

ID_A = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"
ID_B = "b2c3d4e5-f6a7-4b8c-9d0e-1f2a3b4c5d6e"
ID_C = "c3d4e5f6-a7b8-4c9d-8e1f-2a3b4c5d6e7f"


def remote_row(fake, table="session_history"):
    rows = fake.table_rows(table)
    assert len(rows) == 1
    return rows[0]


class HookedGateway(HistoryGateway):
    """Runs ``hook`` once, just before the first upsert reaches the remote."""

    hook = None

    async def upsert_batch(self, entries, owner_id):
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return await super().upsert_batch(entries, owner_id)


class TestLocalEdits:
    """persist_snapshot and read_history without a remote."""

    def test_new_entries_are_pending(self, local_session, make_entry):
        active = local_session.persist_snapshot([make_entry("a")])
        assert [r.id for r in active] == ["a"]
        assert local_session.read_all()[0].pending_action == PendingAction.UPSERT

    def test_removed_entry_becomes_pending_delete(self, local_session, make_entry):
        local_session.persist_snapshot([make_entry("a"), make_entry("b")])
        active = local_session.persist_snapshot([make_entry("a")])
        assert [r.id for r in active] == ["a"]
        assert [r.id for r in local_session.read_history()] == ["a"]
        deleted = [r for r in local_session.read_all() if r.is_deleted]
        assert [r.id for r in deleted] == ["b"]

    def test_identical_snapshot_writes_nothing(self, local_session, make_entry):
        received = []
        local_session.persist_snapshot([make_entry("a")])
        local_session.subscribe(received.append)
        local_session.persist_snapshot([make_entry("a")])
        assert received == []

    def test_subscribers_get_active_set(self, local_session, make_entry):
        received = []
        local_session.subscribe(received.append)
        local_session.persist_snapshot([make_entry("a"), make_entry("b")])
        local_session.persist_snapshot([make_entry("b")])
        assert [[r.id for r in payload] for payload in received] == [["a", "b"], ["b"]]

    def test_accepts_raw_dicts_and_skips_invalid(self, local_session, make_entry):
        raw = make_entry("a").to_dict()
        active = local_session.persist_snapshot([raw, {"id": "broken"}])
        assert [r.id for r in active] == ["a"]

    def test_read_history_reclassifies_past_plans(self, local_session, make_entry):
        planned = make_entry("p", started_at=BASE_MS - MINUTE_MS, future_session=True, updated_at=1)
        local_session.store.write_all([planned])

        history = local_session.read_history()

        assert history[0].future_session is False
        stored = local_session.read_all()[0]
        assert stored.future_session is False
        assert stored.pending_action == PendingAction.UPSERT

    def test_plan_flips_once_after_start_passes(self, local_session, make_entry, clock):
        local_session.persist_snapshot([make_entry("p", started_at=BASE_MS + MINUTE_MS, future_session=True)])
        clock.advance(2 * MINUTE_MS)
        assert local_session.read_all()[0].future_session is True

        assert local_session.read_history()[0].future_session is False
        flipped = local_session.read_all()[0]
        assert flipped.pending_action == PendingAction.UPSERT
        assert flipped.updated_at == clock()

        clock.advance(MINUTE_MS)
        local_session.read_history()
        assert local_session.read_all()[0] == flipped

    def test_no_push_without_remote(self, local_session, make_entry):
        local_session.persist_snapshot([make_entry("a")])
        assert not local_session.scheduler.pending

    def test_status(self, local_session, make_entry):
        local_session.persist_snapshot([make_entry("a"), make_entry("b")])
        local_session.persist_snapshot([make_entry("a")])
        status = local_session.get_sync_status()
        assert status["owner_id"] is None
        assert status["remote_configured"] is False
        assert status["pending_upserts"] == 1
        assert status["pending_deletes"] == 1
        assert status["extended_schema"] is None
        assert status["last_sync_time"] is None
        assert status["push_scheduled"] is False


class TestInlinePush:
    def test_push_runs_inline_without_loop(self, remote_session, fake_supabase, make_entry):
        remote_session.persist_snapshot([make_entry(ID_A)])
        assert remote_row(fake_supabase)["id"] == ID_A
        assert remote_session.read_all()[0].pending_action is None
        assert remote_session.owner_id == OWNER_ID


@pytest.mark.asyncio
class TestPush:
    """Debounced and direct pushes against the fake remote."""

    async def test_pending_upsert_takes_server_timestamp(self, remote_session, fake_supabase, make_entry):
        remote_session.persist_snapshot([make_entry(ID_A)])
        await remote_session.scheduler.drain()

        record = remote_session.read_all()[0]
        assert record.pending_action is None
        assert record.updated_at == iso_to_ms(remote_row(fake_supabase)["updated_at"])
        assert record.updated_at != BASE_MS

    async def test_burst_of_edits_pushes_once(self, remote_session, fake_supabase, make_entry, clock):
        remote_session.persist_snapshot([make_entry(ID_A)])
        clock.advance(1000)
        remote_session.persist_snapshot([make_entry(ID_A, task_name="Second")])
        await asyncio.sleep(0.05)

        assert len(fake_supabase.calls_for("session_history", "upsert")) == 1
        assert remote_row(fake_supabase)["task_name"] == "Second"

    async def test_edit_during_push_stays_pending(self, storage, fake_supabase, provider, settings, clock, make_entry):
        gateway = HookedGateway(fake_supabase, storage)
        session = SyncSession(storage, gateway=gateway, session_provider=provider, settings=settings, clock=clock)
        session.persist_snapshot([make_entry(ID_A, task_name="First")])
        session.scheduler.cancel()

        def edit():
            clock.advance(1000)
            session.persist_snapshot([make_entry(ID_A, task_name="Edited")])

        gateway.hook = edit
        result = await session.push_pending()

        assert result.pushed == 0
        record = session.read_all()[0]
        assert record.task_name == "Edited"
        assert record.pending_action == PendingAction.UPSERT

        await session.aclose()
        assert session.read_all()[0].pending_action is None
        assert remote_row(fake_supabase)["task_name"] == "Edited"

    async def test_transient_failure_keeps_pending(self, remote_session, fake_supabase, make_entry):
        remote_session.persist_snapshot([make_entry(ID_A)])
        remote_session.scheduler.cancel()
        fake_supabase.fail_next(httpx.ConnectError("connection refused"))

        result = await remote_session.push_pending()

        assert not result.success
        assert "transient" in result.errors[0]
        assert remote_session.read_all()[0].pending_action == PendingAction.UPSERT

        retry = await remote_session.push_pending()
        assert retry.pushed == 1
        assert remote_session.read_all()[0].pending_action is None

    async def test_delete_reaches_remote(self, remote_session, fake_supabase, make_entry):
        remote_session.persist_snapshot([make_entry(ID_A), make_entry(ID_B)])
        await remote_session.scheduler.drain()
        remote_session.persist_snapshot([make_entry(ID_A)])
        await remote_session.scheduler.drain()

        assert remote_row(fake_supabase)["id"] == ID_A
        assert [r.id for r in remote_session.read_all()] == [ID_A]

    async def test_local_only_deletes_are_purged(self, remote_session, fake_supabase, make_entry):
        remote_session.store.write_all(
            [make_entry("local-1", updated_at=5, pending_action=PendingAction.DELETE)]
        )

        result = await remote_session.push_pending()

        assert result.deleted == 1
        assert remote_session.read_all() == []
        assert fake_supabase.calls_for("session_history", "delete") == []

    async def test_owner_mismatch_blocks_push(self, remote_session, fake_supabase, make_entry):
        remote_session.store.set_owner(OTHER_OWNER_ID)
        remote_session.store.write_all([make_entry(ID_A, pending_action=PendingAction.UPSERT)])

        with pytest.raises(IdentityMismatchError):
            await remote_session.push_pending()
        assert fake_supabase.calls == []

    async def test_signed_out_push_is_skipped(self, storage, fake_supabase, settings, clock):
        session = SyncSession(
            storage,
            gateway=HistoryGateway(fake_supabase),
            session_provider=StaticSessionProvider(),
            settings=settings,
            clock=clock,
        )
        assert (await session.push_pending()).skipped == "no session"

    async def test_local_session_push_is_skipped(self, local_session):
        assert (await local_session.push_pending()).skipped == "remote not configured"

    async def test_legacy_schema_keeps_local_only_fields(self, storage, provider, settings, clock, make_entry):
        remote = FakeSupabase(schema=LEGACY_SCHEMA)
        session = SyncSession(
            storage,
            gateway=HistoryGateway(remote, storage),
            session_provider=provider,
            settings=settings,
            clock=clock,
        )
        session.persist_snapshot([make_entry(ID_A, notes="only here")])
        await session.scheduler.drain()
        assert not session.gateway.capabilities.enabled

        await session.sync_with_remote()

        record = session.read_all()[0]
        assert record.notes == "only here"
        assert record.pending_action is None
        assert session.get_sync_status()["extended_schema"] is False


@pytest.mark.asyncio
class TestSyncWithRemote:
    """Pull, reconcile and push in one pass."""

    async def test_adopts_remote_rows(self, remote_session, fake_supabase, make_entry, clock):
        fake_supabase.seed("session_history", entry_to_row(make_entry(ID_A, updated_at=BASE_MS - 1000), OWNER_ID))

        result = await remote_session.sync_with_remote()

        assert result.success
        assert result.pulled == 1
        assert [r.id for r in remote_session.read_history()] == [ID_A]
        assert remote_session.get_last_sync_time() == datetime.fromtimestamp(clock() / 1000, tz=timezone.utc)
        assert remote_session.store.get_meta(LAST_SYNC_KEY) == str(clock())

    async def test_older_remote_loses_to_pending_local(self, remote_session, fake_supabase, make_entry):
        fake_supabase.seed(
            "session_history",
            entry_to_row(make_entry(ID_A, task_name="remote", updated_at=BASE_MS - 10_000), OWNER_ID),
        )
        remote_session.store.write_all(
            [make_entry(ID_A, task_name="local", updated_at=BASE_MS - 100, pending_action=PendingAction.UPSERT)]
        )

        result = await remote_session.sync_with_remote()

        assert result.pushed == 1
        assert remote_row(fake_supabase)["task_name"] == "local"
        assert remote_session.read_all()[0].task_name == "local"

    async def test_newer_remote_replaces_settled_local(self, remote_session, fake_supabase, make_entry):
        remote_session.store.write_all([make_entry(ID_A, task_name="local", updated_at=BASE_MS - 10_000)])
        fake_supabase.seed(
            "session_history",
            entry_to_row(make_entry(ID_A, task_name="remote", updated_at=BASE_MS - 100), OWNER_ID),
        )

        await remote_session.sync_with_remote()

        assert remote_session.read_all()[0].task_name == "remote"
        assert fake_supabase.calls_for("session_history", "upsert") == []

    async def test_remote_deletion_is_applied(self, remote_session, make_entry):
        remote_session.store.set_owner(OWNER_ID)
        remote_session.store.write_all([make_entry(ID_C, updated_at=BASE_MS - DAY_MS)])

        result = await remote_session.sync_with_remote()

        assert result.dropped == 1
        assert remote_session.read_history() == []

    async def test_past_plan_is_reclassified_once(self, remote_session, fake_supabase, make_entry):
        planned = make_entry(
            ID_A, started_at=BASE_MS - 10 * MINUTE_MS, future_session=True, updated_at=BASE_MS - 1000
        )
        fake_supabase.seed("session_history", entry_to_row(planned, OWNER_ID))

        await remote_session.sync_with_remote()
        await remote_session.sync_with_remote()

        assert len(fake_supabase.calls_for("session_history", "upsert")) == 1
        assert remote_row(fake_supabase)["future_session"] is False
        assert remote_session.read_all()[0].future_session is False

    async def test_concurrent_calls_share_one_pass(self, remote_session, fake_supabase):
        first, second = await asyncio.gather(
            remote_session.sync_with_remote(), remote_session.sync_with_remote()
        )
        assert first is second
        assert len(fake_supabase.calls_for("session_history", "select")) == 1

    async def test_fetch_failure_still_pushes(self, remote_session, fake_supabase, make_entry):
        remote_session.store.write_all([make_entry(ID_A, updated_at=BASE_MS, pending_action=PendingAction.UPSERT)])
        fake_supabase.fail_next(httpx.ReadTimeout("timed out"), op="select")

        result = await remote_session.sync_with_remote()

        assert not result.success
        assert result.pushed == 1
        assert remote_session.get_last_sync_time() is None

    async def test_unrepresentable_record_does_not_block_sync(self, remote_session, storage, fake_supabase, make_entry):
        good = make_entry(ID_A, updated_at=BASE_MS, pending_action=PendingAction.UPSERT).to_dict()
        storage.set_item(HISTORY_STORAGE_KEY, json.dumps([good, dict(good, id=ID_B, started_at=10**17)]))

        result = await remote_session.sync_with_remote()

        assert result.success
        assert result.pushed == 1
        assert remote_row(fake_supabase)["id"] == ID_A

    async def test_signed_out_sync_is_skipped(self, storage, fake_supabase, settings, clock):
        session = SyncSession(
            storage,
            gateway=HistoryGateway(fake_supabase),
            session_provider=StaticSessionProvider(),
            settings=settings,
            clock=clock,
        )
        result = await session.sync_with_remote()
        assert result.skipped == "no session"
        assert fake_supabase.calls == []


@pytest.mark.asyncio
class TestOwnership:
    async def test_guest_history_is_adopted_and_pushed(self, remote_session, fake_supabase, make_entry):
        remote_session.store.write_all([make_entry(ID_A, updated_at=BASE_MS, pending_action=PendingAction.UPSERT)])

        await remote_session.sync_with_remote()

        assert remote_session.owner_id == OWNER_ID
        assert remote_row(fake_supabase)["user_id"] == OWNER_ID

    async def test_owner_switch_discards_previous_history(self, remote_session, fake_supabase, make_entry):
        remote_session.store.set_owner(OTHER_OWNER_ID)
        remote_session.store.write_all([make_entry(ID_A, updated_at=BASE_MS, pending_action=PendingAction.UPSERT)])
        remote_session.store.set_meta(LAST_SYNC_KEY, "123")
        received = []
        remote_session.subscribe(received.append)

        result = await remote_session.sync_with_remote()
        await asyncio.sleep(0)

        assert result.pushed == 0
        assert remote_session.owner_id == OWNER_ID
        assert remote_session.read_all() == []
        assert fake_supabase.calls_for("session_history", "upsert") == []
        assert received and all(payload == [] for payload in received)


class TestBindOwner:
    def test_bind_owner(self, local_session, make_entry):
        local_session.store.write_all([make_entry("a")])
        assert local_session.bind_owner(OWNER_ID) is False
        assert local_session.bind_owner(OWNER_ID) is False
        assert local_session.read_all() != []
        assert local_session.bind_owner(OTHER_OWNER_ID) is True
        assert local_session.read_all() == []
        assert local_session.owner_id == OTHER_OWNER_ID


class TestSettings:
    def test_pending_records_outlive_history_limit(self, storage, clock, make_entry):
        session = SyncSession(storage, settings=Settings(_env_file=None, history_limit=2), clock=clock)
        session.store.write_all(
            [make_entry(str(i), started_at=BASE_MS - (i + 1) * 60 * MINUTE_MS) for i in range(4)]
        )
        session.persist_snapshot([make_entry("new", started_at=BASE_MS - 30 * MINUTE_MS)])
        stored = session.read_all()
        assert len(stored) == 5
        assert stored[0].id == "new"
        assert all(r.pending_action is not None for r in stored)
