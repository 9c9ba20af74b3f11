"""Error hierarchy for snapshot operations."""
from __future__ import annotations


class SnapshotError(RuntimeError):
    """Base exception for snapshot related failures."""


class StoreUnwritableError(SnapshotError):
    """Raised when the snapshot store root cannot be created or written."""


class InvalidCategoryError(SnapshotError, ValueError):
    """Raised when a category name cannot be used as a path segment."""


class SnapshotLockedError(SnapshotError):
    """Raised when another backup run holds the category lock."""


class SnapshotCollisionError(SnapshotError):
    """Raised when no free snapshot key can be allocated."""


class SnapshotNotFoundError(SnapshotError):
    """Raised when a snapshot reference does not resolve."""


class SnapshotVerificationError(SnapshotError):
    """Raised when verification of a snapshot fails."""


class SnapshotWriteError(SnapshotError):
    """Raised when writing into a snapshot under construction fails."""


class RestoreError(SnapshotError):
    """Raised when restoring a snapshot fails."""


__all__ = [
    "InvalidCategoryError",
    "RestoreError",
    "SnapshotCollisionError",
    "SnapshotError",
    "SnapshotLockedError",
    "SnapshotNotFoundError",
    "SnapshotVerificationError",
    "SnapshotWriteError",
    "StoreUnwritableError",
]
