"""Create snapshots: begin, mirror sources, capture state, write manifest, finalize."""
from __future__ import annotations

import os
import platform
import socket
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core import __version__ as APP_VERSION

from .capture import SYSTEM_INFO_DIR, SystemCapturer
from .copier import copy_tree, mirror_layout
from .errors import SnapshotWriteError
from .logs import SnapshotLogger
from .store import SnapshotStore
from .types import BackupContext, BackupResult, CopyOutcome, IssueKind, SnapshotIssue

MANIFEST_NAME = "manifest.txt"


def copy_source(
    source: str,
    dest: Path,
    previous: Optional[Path],
    context: BackupContext,
    *,
    logger: SnapshotLogger,
) -> Tuple[CopyOutcome, List[SnapshotIssue]]:
    """Mirror one configured source; every failure becomes a non-fatal issue."""

    issues: List[SnapshotIssue] = []
    if not os.path.lexists(source):
        logger.warning("source_missing", category=context.category, source=source)
        issues.append(SnapshotIssue(IssueKind.MISSING_SOURCE, source, "does not exist"))
        return CopyOutcome(source=Path(source), destination=dest, kind="missing"), issues
    outcome = copy_tree(
        Path(source),
        dest,
        previous,
        context.exclude_patterns,
        compare=context.compare,
        one_file_system=context.one_file_system,
    )
    if outcome.errors:
        detail = outcome.errors[0]
        if len(outcome.errors) > 1:
            detail = f"{detail} (+{len(outcome.errors) - 1} more)"
        issues.append(SnapshotIssue(IssueKind.COPY_FAILURE, source, detail))
        logger.warning("copy_failure", category=context.category, source=source, errors=len(outcome.errors))
    else:
        logger.info(
            "copy_source",
            category=context.category,
            source=source,
            kind=outcome.kind,
            copied=outcome.copied,
            linked=outcome.linked,
        )
    return outcome, issues


def write_manifest(
    path: Path,
    *,
    category: str,
    snapshot_key: str,
    sources: Sequence[str],
    issues: Sequence[SnapshotIssue],
    created: datetime,
    previous: Optional[str] = None,
    hostname: Optional[str] = None,
    kernel: Optional[str] = None,
) -> Path:
    lines = [
        f"Backup System: hostsnap {APP_VERSION}",
        f"Date: {created.astimezone().isoformat(timespec='seconds')}",
        f"Category: {category}",
        f"Hostname: {hostname or socket.gethostname()}",
        f"Kernel: {kernel or platform.release()}",
        f"Snapshot: {snapshot_key}",
        f"Previous: {previous or 'none'}",
        f"Status: {'partial' if issues else 'complete'}",
        "Source Paths:",
    ]
    lines.extend(f"  - {source}" for source in sources)
    lines.append("Issues:")
    if issues:
        lines.extend(f"  - {issue.describe()}" for issue in issues)
    else:
        lines.append("  (none)")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def read_manifest(path: Path) -> Dict[str, object]:
    """Parse ``manifest.txt`` into its fields, ``sources`` and ``issues``."""

    fields: Dict[str, object] = {}
    sources: List[str] = []
    issues: List[str] = []
    section: Optional[List[str]] = None
    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if raw.startswith("  - ") and section is not None:
            section.append(raw[4:].strip())
            continue
        if raw.strip() == "Source Paths:":
            section = sources
            continue
        if raw.strip() == "Issues:":
            section = issues
            continue
        if ":" in raw and not raw.startswith(" "):
            key, _, value = raw.partition(":")
            fields[key.strip().lower().replace(" ", "_")] = value.strip()
            section = None
    fields["sources"] = sources
    fields["issues"] = issues
    return fields


def run_backup(
    store: SnapshotStore,
    context: BackupContext,
    sources: Sequence[str],
    *,
    capturer: SystemCapturer,
    logger: SnapshotLogger,
    clock: Callable[[], datetime] = datetime.now,
) -> BackupResult:
    """Build one snapshot for ``context.category`` and repoint ``latest``.

    ``latest`` moves only after every source and the system capture are done;
    an exception before that leaves the new snapshot marked in progress and
    the previous pointer untouched.
    """

    category = context.category
    store.category_root(category)
    result = BackupResult(category=category, store_root=store.root, sources=list(sources), dry_run=context.dry_run)
    layout = mirror_layout(sources)

    if context.dry_run:
        previous = store.current_latest(category)
        result.previous = previous
        for source in sources:
            if not os.path.lexists(source):
                result.issues.append(SnapshotIssue(IssueKind.MISSING_SOURCE, source, "does not exist"))
        logger.event(
            event="backup_dry_run",
            phase="create",
            ok=True,
            category=category,
            sources=len(sources),
            missing=len(result.issues),
            previous=str(previous) if previous else None,
        )
        return result

    with store.category_lock(category):
        previous = store.current_latest(category)
        snapshot = store.begin_snapshot(category)
        result.previous = previous
        result.snapshot_key = snapshot.name
        result.directory = snapshot
        logger.event(
            event="backup_start",
            phase="create",
            ok=True,
            category=category,
            snapshot=snapshot.name,
            previous=previous.name if previous else None,
        )
        try:
            for source in sources:
                relative = layout[source]
                prev_path = previous / relative if previous is not None else None
                outcome, issues = copy_source(source, snapshot / relative, prev_path, context, logger=logger)
                result.outcomes.append(outcome)
                result.issues.extend(issues)

            capture = capturer.capture(category, snapshot / SYSTEM_INFO_DIR)
            result.capture = capture
            result.issues.extend(capture.issues)

            result.manifest_path = write_manifest(
                snapshot / MANIFEST_NAME,
                category=category,
                snapshot_key=snapshot.name,
                sources=sources,
                issues=result.issues,
                created=clock(),
                previous=previous.name if previous else None,
            )
        except Exception as exc:
            logger.event(
                event="backup_aborted",
                phase="create",
                ok=False,
                category=category,
                snapshot=snapshot.name,
                error=str(exc) or type(exc).__name__,
            )
            if isinstance(exc, OSError):
                raise SnapshotWriteError(f"Snapshot {snapshot.name} aborted, latest unchanged: {exc}") from exc
            raise
        try:
            store.finalize(category, snapshot)
        except OSError as exc:
            raise SnapshotWriteError(f"Could not finalize snapshot {snapshot.name}: {exc}") from exc

    logger.event(
        event="backup_complete",
        phase="create",
        ok=True,
        category=category,
        snapshot=snapshot.name,
        copied=result.files_copied,
        linked=result.files_linked,
        issues=len(result.issues),
    )
    return result


__all__ = ["MANIFEST_NAME", "copy_source", "read_manifest", "run_backup", "write_manifest"]
