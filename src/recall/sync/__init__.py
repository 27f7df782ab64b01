"""Recall sync — folder reconciliation and file watching."""

from recall.sync.engine import (
    INDEXABLE_EXTENSIONS,
    FileFailure,
    SyncEngine,
    SyncOptions,
    SyncPhase,
    SyncProgress,
    SyncReport,
    scan_folder,
)
from recall.sync.watcher import Debouncer, FileWatcher

__all__ = [
    "Debouncer",
    "FileFailure",
    "FileWatcher",
    "INDEXABLE_EXTENSIONS",
    "SyncEngine",
    "SyncOptions",
    "SyncPhase",
    "SyncProgress",
    "SyncReport",
    "scan_folder",
]
