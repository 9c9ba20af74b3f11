"""Compare the live system against a located baseline snapshot."""
from __future__ import annotations

import difflib
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from snapshot.capture import TARGET_FILES, SystemCapturer
from snapshot.locator import BackupLocator, PinnedBaseline
from snapshot.logs import SnapshotLogger
from snapshot.store import SnapshotStore

from .normalize import NormalizedCapture, normalize
from .records import DiffResult, Record

LOGGER = logging.getLogger("hostsnap.drift.engine")

CAPTURE_TARGETS = ("ports", "connections", "processes", "services", "users", "mounts", "packages")
FILE_TARGETS = ("configs", "files")
TARGETS = CAPTURE_TARGETS + FILE_TARGETS + ("all",)
ALL_TARGETS = CAPTURE_TARGETS + ("configs",)

TITLES = {
    "ports": "LISTENING PORTS",
    "connections": "NETWORK CONNECTIONS",
    "processes": "RUNNING PROCESSES",
    "services": "ACTIVE SERVICES",
    "users": "LOGGED IN USERS",
    "mounts": "MOUNTED FILESYSTEMS",
    "packages": "INSTALLED PACKAGES",
}


class InvalidTargetError(ValueError):
    """Raised for an unknown diff target or a file target without files."""


def unified_diff(baseline: Sequence[str], current: Sequence[str], *, fromfile: str, tofile: str) -> str:
    lines = difflib.unified_diff(list(baseline), list(current), fromfile=fromfile, tofile=tofile, lineterm="")
    return "\n".join(lines)


def _line_set(text: str) -> set:
    return {line.rstrip() for line in text.splitlines() if line.strip()}


class DiffEngine:
    """Runs one or more diff targets against the baseline found by the locator.

    The baseline snapshot directories are pinned once per run, so a backup
    repointing ``latest`` mid-diff cannot mix two snapshots.
    """

    def __init__(
        self,
        store: SnapshotStore,
        locator: BackupLocator,
        capturer: SystemCapturer,
        *,
        config_files: Iterable[str] = (),
        logger: Optional[SnapshotLogger] = None,
    ) -> None:
        self.store = store
        self.locator = locator
        self.capturer = capturer
        self.config_files = [str(item) for item in config_files]
        self._logger = logger

    # ------------------------------------------------------------------
    def diff(self, target: str, category: str = "all", files: Optional[Sequence[str]] = None) -> List[DiffResult]:
        if target not in TARGETS:
            raise InvalidTargetError(f"Unknown diff target: {target!r} (expected one of {', '.join(TARGETS)})")
        if target == "files" and not files:
            raise InvalidTargetError("The 'files' target needs at least one file")
        self.store.category_root(category)

        targets = ALL_TARGETS if target == "all" else (target,)
        pinned = self.locator.pin(category)
        results: List[DiffResult] = []
        with tempfile.TemporaryDirectory(prefix="hostsnap-diff-") as scratch:
            scratch_dir = Path(scratch)
            for name in targets:
                if name == "configs":
                    results.extend(self._diff_files("configs", self.config_files, category, pinned))
                elif name == "files":
                    results.extend(self._diff_files("files", list(files or []), category, pinned))
                else:
                    results.append(self._diff_capture(name, category, scratch_dir, pinned))
        for result in results:
            self._log_result(result, category)
        return results

    def _log_result(self, result: DiffResult, category: str) -> None:
        if self._logger is None:
            return
        self._logger.event(
            event="drift_result",
            phase="diff",
            ok=result.completed,
            target=result.target,
            category=category,
            status=result.status,
            added=len(result.added),
            removed=len(result.removed),
            baseline=str(result.baseline) if result.baseline else None,
        )
        issue = result.issue
        if issue is not None:
            self._logger.warning(
                "drift_issue", category=category, target=result.target, kind=issue.kind.value, detail=issue.detail
            )

    # ------------------------------------------------------------------
    def _no_baseline(self, target: str, title: str, name: str, category: str) -> DiffResult:
        message = (
            f"No baseline '{name}' found for category '{category}'. "
            f"Run 'hostsnap backup {category}' or 'hostsnap backup all' first."
        )
        LOGGER.warning(message)
        return DiffResult(target=target, title=title, status="no_baseline", message=message)

    @staticmethod
    def _unreadable_baseline(target: str, title: str, path: Path, exc: OSError) -> DiffResult:
        message = f"Baseline {path} could not be read: {exc.strerror or exc}"
        LOGGER.warning(message)
        return DiffResult(target=target, title=title, status="no_baseline", baseline=path, message=message)

    def _diff_capture(self, target: str, category: str, scratch_dir: Path, pinned: PinnedBaseline) -> DiffResult:
        name = TARGET_FILES[target]
        title = TITLES[target]
        current_path = self.capturer.capture_target(name, scratch_dir)
        baseline_path = self.locator.locate(category, name, pinned)
        if baseline_path is None:
            return self._no_baseline(target, title, name, category)

        try:
            baseline_text = baseline_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return self._unreadable_baseline(target, title, baseline_path, exc)
        current_text = current_path.read_text(encoding="utf-8", errors="replace")
        baseline = normalize(target, baseline_text)
        current = normalize(target, current_text)
        if not (baseline.recognized and current.recognized):
            return self._fallback(target, title, baseline_path, baseline_text, current_text, baseline, current)

        baseline_set = set(baseline.records)
        current_set = set(current.records)
        added: List[Record] = sorted(current_set - baseline_set)  # type: ignore[type-var]
        removed: List[Record] = sorted(baseline_set - current_set)  # type: ignore[type-var]
        return DiffResult(
            target=target,
            title=title,
            status="ok",
            added=added,
            removed=removed,
            raw_unified_diff=unified_diff(baseline.lines, current.lines, fromfile=str(baseline_path), tofile="current"),
            baseline=baseline_path,
            current=current.format,
            format=f"{baseline.format} -> {current.format}",
            message="" if added or removed else "No changes detected",
        )

    def _fallback(
        self,
        target: str,
        title: str,
        baseline_path: Path,
        baseline_text: str,
        current_text: str,
        baseline: NormalizedCapture,
        current: NormalizedCapture,
    ) -> DiffResult:
        sides = []
        if not baseline.recognized:
            sides.append(f"baseline ({baseline.format})")
        if not current.recognized:
            sides.append(f"current ({current.format})")
        message = f"Could not normalize {' and '.join(sides)}; showing raw diff"
        LOGGER.warning("%s: %s", target, message)
        baseline_lines = _line_set(baseline_text)
        current_lines = _line_set(current_text)
        return DiffResult(
            target=target,
            title=title,
            status="fallback",
            added=sorted(current_lines - baseline_lines),
            removed=sorted(baseline_lines - current_lines),
            raw_unified_diff=unified_diff(
                baseline_text.splitlines(), current_text.splitlines(), fromfile=str(baseline_path), tofile="current"
            ),
            baseline=baseline_path,
            current="raw",
            format=f"{baseline.format} -> {current.format}",
            message=message,
        )

    # ------------------------------------------------------------------
    def _locate_file(self, live: Path, category: str, pinned: PinnedBaseline) -> Optional[Path]:
        """Mirrored copy of *live* in the pinned latest snapshot, else any file of that base name.

        A mirrored symlink whose target lies outside the store is returned
        unresolved; following it would read the live file back as its own
        baseline.
        """

        parts = [part for part in live.parts if part != live.anchor]
        for cat in dict.fromkeys([category, "all"]):
            latest = pinned.latest.get(cat)
            if latest is None:
                continue
            for start in range(len(parts)):
                candidate = latest.joinpath(*parts[start:])
                if not os.path.lexists(candidate):
                    continue
                if self.locator.inside_store(candidate) and candidate.is_file():
                    return candidate.resolve()
                if candidate.is_symlink():
                    return candidate
                LOGGER.warning("ignoring %s: a linked directory leads outside the store", candidate)
        return self.locator.locate(category, live.name, pinned)

    @staticmethod
    def _describe_link(path: Path, link: Path) -> str:
        if link.is_symlink():
            return f"{path} -> {os.readlink(link)}"
        return f"{path} (regular file)"

    def _diff_link(self, target: str, title: str, baseline_link: Path, live: Path) -> DiffResult:
        """Compare link targets; the content behind an external link was never captured."""

        baseline_line = self._describe_link(live, baseline_link)
        current_line = self._describe_link(live, live)
        changed = baseline_line != current_line
        return DiffResult(
            target=target,
            title=title,
            status="ok",
            added=[current_line] if changed else [],
            removed=[baseline_line] if changed else [],
            raw_unified_diff=unified_diff([baseline_line], [current_line], fromfile=str(baseline_link), tofile=str(live))
            if changed
            else "",
            baseline=baseline_link,
            current=str(live),
            format="symlink",
            message=(
                "Symlink target changed"
                if changed
                else "Symlink target unchanged; the linked file lies outside the snapshot and was not compared"
            ),
        )

    def _diff_files(self, target: str, paths: Sequence[str], category: str, pinned: PinnedBaseline) -> List[DiffResult]:
        results: List[DiffResult] = []
        for raw in paths:
            live = Path(raw)
            title = f"CONFIG {live}" if target == "configs" else f"FILE {live}"
            if not live.is_file():
                results.append(
                    DiffResult(
                        target=target,
                        title=title,
                        status="no_current",
                        current=str(live),
                        message=f"Live file {live} does not exist",
                    )
                )
                continue
            baseline_path = self._locate_file(live, category, pinned)
            if baseline_path is None:
                results.append(self._no_baseline(target, title, live.name, category))
                continue
            if baseline_path.is_symlink():
                try:
                    results.append(self._diff_link(target, title, baseline_path, live))
                except OSError as exc:
                    results.append(self._unreadable_baseline(target, title, baseline_path, exc))
                continue
            try:
                baseline_text = baseline_path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                results.append(self._unreadable_baseline(target, title, baseline_path, exc))
                continue
            try:
                current_text = live.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                message = f"Live file {live} could not be read: {exc.strerror or exc}"
                LOGGER.warning(message)
                results.append(
                    DiffResult(
                        target=target,
                        title=title,
                        status="no_current",
                        baseline=baseline_path,
                        current=str(live),
                        message=message,
                    )
                )
                continue
            baseline_lines = _line_set(baseline_text)
            current_lines = _line_set(current_text)
            raw_diff = unified_diff(
                baseline_text.splitlines(), current_text.splitlines(), fromfile=str(baseline_path), tofile=str(live)
            )
            results.append(
                DiffResult(
                    target=target,
                    title=title,
                    status="ok",
                    added=sorted(current_lines - baseline_lines),
                    removed=sorted(baseline_lines - current_lines),
                    raw_unified_diff=raw_diff,
                    baseline=baseline_path,
                    current=str(live),
                    format="file",
                    message="" if raw_diff else "No changes detected",
                )
            )
        return results


__all__ = ["ALL_TARGETS", "DiffEngine", "InvalidTargetError", "TARGETS", "unified_diff"]
