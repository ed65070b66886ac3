"""Sync engine: pending tracking, reconciliation, remote gateways and scheduling."""

from taskwatch.sync.gateway import (
    DeleteResult,
    HistoryGateway,
    LifeRoutineGateway,
    RepeatingRuleGateway,
    SchemaCapabilities,
    TableGateway,
    UpsertResult,
    classify_remote_error,
)
from taskwatch.sync.pending import (
    PendingChanges,
    mark_active_set,
    partition_pending,
    reclassify_future,
)
from taskwatch.sync.reconcile import MergeResult, merge_remote_delta, sync_window_start
from taskwatch.sync.scheduler import PushScheduler
from taskwatch.sync.session import SyncSession
from taskwatch.sync.sink import PersistSink, sort_history, truncate_history

__all__ = [
    "DeleteResult",
    "HistoryGateway",
    "LifeRoutineGateway",
    "MergeResult",
    "PendingChanges",
    "PersistSink",
    "PushScheduler",
    "RepeatingRuleGateway",
    "SchemaCapabilities",
    "SyncSession",
    "TableGateway",
    "UpsertResult",
    "classify_remote_error",
    "mark_active_set",
    "merge_remote_delta",
    "partition_pending",
    "reclassify_future",
    "sort_history",
    "sync_window_start",
    "truncate_history",
]
