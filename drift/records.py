"""Canonical record types produced by the normalizer and compared by the diff engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from snapshot.types import IssueKind, SnapshotIssue


@dataclass(frozen=True, order=True, slots=True)
class NetRecord:
    """One socket, independent of the tool that listed it."""

    protocol: str
    local_address: str
    local_port: str
    state: str
    peer: str = ""

    @property
    def endpoint(self) -> str:
        address = f"[{self.local_address}]" if ":" in self.local_address else self.local_address
        return f"{address}:{self.local_port}"

    @property
    def identity(self) -> tuple:
        return (self.protocol, self.local_address, self.local_port, self.peer)

    def render(self) -> str:
        text = f"{self.protocol} {self.state} {self.endpoint}"
        return f"{text} -> {self.peer}" if self.peer else text


@dataclass(frozen=True, order=True, slots=True)
class NameCount:
    """Aggregate record: a process or service name and how often it occurs."""

    name: str
    count: int = 1

    @property
    def identity(self) -> str:
        return self.name

    def render(self) -> str:
        return f"{self.name} ({self.count})" if self.count != 1 else self.name


Record = Union[NetRecord, NameCount, str]


def render_record(record: Record) -> str:
    if isinstance(record, str):
        return record
    return record.render()


def record_identity(record: Record) -> Optional[Any]:
    if isinstance(record, str):
        return None
    return record.identity


@dataclass(slots=True)
class DiffResult:
    target: str
    title: str
    status: str = "ok"
    added: List[Record] = field(default_factory=list)
    removed: List[Record] = field(default_factory=list)
    raw_unified_diff: str = ""
    baseline: Optional[Path] = None
    current: Optional[str] = None
    message: str = ""
    format: str = ""

    @property
    def changed(self) -> List[str]:
        """Names of aggregate records present in both ``added`` and ``removed``."""

        added_ids = {record_identity(record): record for record in self.added}
        names = []
        for record in self.removed:
            identity = record_identity(record)
            if identity is not None and identity in added_ids:
                names.append(record.name if isinstance(record, NameCount) else record.endpoint)  # type: ignore[union-attr]
        return sorted(set(names))

    @property
    def has_differences(self) -> bool:
        return bool(self.added or self.removed or self.raw_unified_diff)

    @property
    def completed(self) -> bool:
        return self.status in {"ok", "fallback"}

    @property
    def issue(self) -> Optional[SnapshotIssue]:
        if self.status == "no_baseline":
            return SnapshotIssue(IssueKind.NO_BASELINE, self.target, self.message)
        if self.status == "fallback":
            return SnapshotIssue(IssueKind.NORMALIZATION_MISMATCH, self.target, self.message)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "title": self.title,
            "status": self.status,
            "added": [render_record(record) for record in self.added],
            "removed": [render_record(record) for record in self.removed],
            "changed": self.changed,
            "raw_unified_diff": self.raw_unified_diff,
            "baseline": str(self.baseline) if self.baseline else None,
            "current": self.current,
            "message": self.message,
            "format": self.format,
            "issue": self.issue.describe() if self.issue else None,
        }


__all__ = ["DiffResult", "NameCount", "NetRecord", "Record", "record_identity", "render_record"]
