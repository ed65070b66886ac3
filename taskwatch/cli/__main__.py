"""
taskwatch CLI - inspect and sync the local session history.

Usage:
    taskwatch status [--json]
    taskwatch history [--limit N] [--json]
    taskwatch pending [--json]
    taskwatch sync [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from taskwatch.auth import SupabaseSessionProvider, create_remote_client
from taskwatch.config import Settings, get_settings
from taskwatch.logging_config import setup_taskwatch_logging
from taskwatch.storage.kv import FileKeyValueStorage
from taskwatch.sync.gateway import HistoryGateway
from taskwatch.sync.pending import partition_pending
from taskwatch.sync.session import SyncSession

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def build_local_session(settings: Settings) -> SyncSession:
    """Session over the on-disk store with no remote attached."""
    return SyncSession(FileKeyValueStorage(settings.data_dir / "store"), settings=settings)


async def build_remote_session(settings: Settings) -> SyncSession:
    client = await create_remote_client(settings)
    provider = SupabaseSessionProvider(client, settings)
    await provider.restore()
    storage = FileKeyValueStorage(settings.data_dir / "store")
    return SyncSession(
        storage,
        gateway=HistoryGateway(client, storage),
        session_provider=provider,
        settings=settings,
    )


def cmd_status(args, session: SyncSession):
    """Show sync status."""
    status = session.get_sync_status()
    if args.json:
        last = status["last_sync_time"]
        status["last_sync_time"] = last.isoformat() if last else None
        print(json.dumps(status, indent=2))
        return
    last = status["last_sync_time"]
    print("Sync Status")
    print("=" * 40)
    print(f"Owner:           {status['owner_id'] or '(guest)'}")
    print(f"Pending upserts: {status['pending_upserts']}")
    print(f"Pending deletes: {status['pending_deletes']}")
    print(f"Last sync:       {last.isoformat() if last else 'never'}")


def cmd_history(args, session: SyncSession):
    """List the most recent history entries."""
    entries = session.read_history()[: args.limit]
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        print("No history yet.")
        return
    for e in entries:
        label = " / ".join(p for p in (e.goal_name, e.bucket_name) if p)
        minutes = e.elapsed // 60000
        planned = " [planned]" if e.future_session else ""
        print(f"{_format_ms(e.started_at)}  {minutes:>4}m  {e.task_name or '(untitled)'}{planned}")
        if label:
            print(f"{'':>24}{label}")


def cmd_pending(args, session: SyncSession):
    """List records waiting to be pushed."""
    changes = partition_pending(session.read_all())
    if args.json:
        print(
            json.dumps(
                {
                    "upserts": [r.id for r in changes.upserts],
                    "deletes": [r.id for r in changes.deletes],
                },
                indent=2,
            )
        )
        return
    if changes.empty:
        print("Nothing pending.")
        return
    for r in changes.upserts:
        print(f"upsert  {r.id}  {r.task_name}")
    for r in changes.deletes:
        print(f"delete  {r.id}  {r.task_name}")


async def _run_sync(settings: Settings):
    session = await build_remote_session(settings)
    result = await session.sync_with_remote()
    await session.aclose()
    return result


def cmd_sync(args, settings: Settings) -> int:
    """Pull, reconcile and push."""
    if not settings.remote_configured:
        print("Remote not configured: set TASKWATCH_SUPABASE_URL and TASKWATCH_SUPABASE_KEY")
        return 1
    result = asyncio.run(_run_sync(settings))
    if args.json:
        print(
            json.dumps(
                {
                    "pushed": result.pushed,
                    "deleted": result.deleted,
                    "pulled": result.pulled,
                    "dropped": result.dropped,
                    "skipped": result.skipped,
                    "errors": result.errors,
                },
                indent=2,
            )
        )
    elif result.skipped:
        print(f"Sync skipped: {result.skipped}")
    else:
        print(
            f"Synced: pulled {result.pulled}, dropped {result.dropped}, "
            f"pushed {result.pushed}, deleted {result.deleted}"
        )
        for error in result.errors:
            print(f"  error: {error}")
    return 0 if result.success else 1


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(
        prog="taskwatch",
        description="Local-first session history with remote sync",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from settings)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--json", action="store_true", help="Output as JSON")

    p_history = subparsers.add_parser("history", help="List recent history")
    p_history.add_argument("--limit", "-n", type=int, default=20, help="Entries to show")
    p_history.add_argument("--json", action="store_true", help="Output as JSON")

    p_pending = subparsers.add_parser("pending", help="List changes waiting to be pushed")
    p_pending.add_argument("--json", action="store_true", help="Output as JSON")

    p_sync = subparsers.add_parser("sync", help="Sync with the remote store")
    p_sync.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_taskwatch_logging(level=args.log_level or settings.log_level)

    try:
        if args.command == "sync":
            sys.exit(cmd_sync(args, settings))
        session = build_local_session(settings)
        if args.command == "status":
            cmd_status(args, session)
        elif args.command == "history":
            cmd_history(args, session)
        elif args.command == "pending":
            cmd_pending(args, session)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
