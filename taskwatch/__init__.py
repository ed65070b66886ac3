"""
taskwatch - local-first session history with remote reconciliation.

Works offline against a durable local store and syncs with one Supabase
project when a session is available.
"""

from .events import Broadcaster
from .sync.session import SyncSession
from .types import HistoryEntry, PendingAction, SyncResult

try:
    from importlib.metadata import version

    __version__ = version("taskwatch")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Broadcaster", "HistoryEntry", "PendingAction", "SyncResult", "SyncSession"]
