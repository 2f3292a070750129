"""Sync module: engine, scheduler and Codeforces client."""

from cftracker.sync.engine import (
    BatchStats,
    SyncEngine,
    SyncInProgressError,
    SyncResult,
    SyncState,
    SyncSummary,
)
from cftracker.sync.scheduler import SyncScheduler

__all__ = [
    "BatchStats",
    "SyncEngine",
    "SyncInProgressError",
    "SyncResult",
    "SyncScheduler",
    "SyncState",
    "SyncSummary",
]
