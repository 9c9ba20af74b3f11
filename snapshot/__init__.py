"""Snapshot store, incremental copy and system state capture for hostsnap."""
from __future__ import annotations

from .api import SnapshotService
from .errors import SnapshotError
from .locator import BackupLocator
from .store import SnapshotStore
from .types import BackupResult, IssueKind, SnapshotIssue, SnapshotSummary

__all__ = [
    "BackupLocator",
    "BackupResult",
    "IssueKind",
    "SnapshotError",
    "SnapshotIssue",
    "SnapshotService",
    "SnapshotStore",
    "SnapshotSummary",
]
