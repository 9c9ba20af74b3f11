"""Common dataclasses shared across snapshot modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class IssueKind(str, Enum):
    MISSING_SOURCE = "missing_source"
    COPY_FAILURE = "copy_failure"
    TOOL_UNAVAILABLE = "tool_unavailable"
    NO_BASELINE = "no_baseline"
    NORMALIZATION_MISMATCH = "normalization_mismatch"


@dataclass(slots=True)
class SnapshotIssue:
    """Non-fatal problem recorded while building or comparing a snapshot."""

    kind: IssueKind
    subject: str
    detail: str = ""

    def describe(self) -> str:
        text = f"{self.kind.value}: {self.subject}"
        return f"{text} ({self.detail})" if self.detail else text


@dataclass(slots=True)
class BackupContext:
    """Explicit state threaded through one backup run."""

    category: str
    exclude_patterns: List[str] = field(default_factory=list)
    compare: str = "mtime"
    one_file_system: bool = True
    dry_run: bool = False


@dataclass(slots=True)
class CommandResult:
    """Outcome of one OS introspection call."""

    ok: bool
    output: str
    command: str
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class CopyOutcome:
    source: Path
    destination: Path
    kind: str
    copied: int = 0
    linked: int = 0
    removed: int = 0
    excluded: int = 0
    skipped: int = 0
    bytes_copied: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class CaptureResult:
    directory: Path
    files: List[str] = field(default_factory=list)
    issues: List[SnapshotIssue] = field(default_factory=list)
    tools: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class BackupResult:
    category: str
    store_root: Path
    sources: List[str]
    dry_run: bool = False
    snapshot_key: Optional[str] = None
    directory: Optional[Path] = None
    manifest_path: Optional[Path] = None
    previous: Optional[Path] = None
    outcomes: List[CopyOutcome] = field(default_factory=list)
    capture: Optional[CaptureResult] = None
    issues: List[SnapshotIssue] = field(default_factory=list)

    @property
    def files_copied(self) -> int:
        return sum(outcome.copied for outcome in self.outcomes)

    @property
    def files_linked(self) -> int:
        return sum(outcome.linked for outcome in self.outcomes)


@dataclass(slots=True)
class SnapshotSummary:
    category: str
    key: str
    path: Path
    created: Optional[datetime]
    complete: bool
    is_latest: bool
    labels: List[str] = field(default_factory=list)


__all__ = [
    "BackupContext",
    "BackupResult",
    "CaptureResult",
    "CommandResult",
    "CopyOutcome",
    "IssueKind",
    "SnapshotIssue",
    "SnapshotSummary",
]
