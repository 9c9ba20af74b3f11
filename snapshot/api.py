"""Public API for snapshot operations."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.paths import resolve_store_root, resolve_working_dir
from core.settings import load_settings, merge_defaults, section

from .capture import SystemCapturer
from .create import run_backup
from .logs import SnapshotLogger
from .restore import restore_snapshot
from .sources import resolve_sources
from .store import SnapshotStore
from .tools import CommandRunner, Toolset, resolve_toolset
from .types import BackupContext, BackupResult, SnapshotSummary
from .verify import verify_snapshot


class SnapshotService:
    """Coordinate backup, listing, labelling, verification and restore."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        runner: Optional[CommandRunner] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        if settings is None:
            self._settings = load_settings(self._working_dir)
        else:
            self._settings = merge_defaults(dict(settings))
        capture_cfg = section(self._settings, "capture")
        self._runner = runner or CommandRunner(timeout=float(capture_cfg.get("command_timeout_s", 30)))
        self._clock = clock
        self._logger = SnapshotLogger(self._working_dir)
        self._toolset: Optional[Toolset] = None

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def settings(self) -> Dict[str, Any]:
        return self._settings

    @property
    def logger(self) -> SnapshotLogger:
        return self._logger

    @property
    def toolset(self) -> Toolset:
        if self._toolset is None:
            self._toolset = resolve_toolset(self._runner)
        return self._toolset

    # ------------------------------------------------------------------
    def store(self, destination_root: Optional[Path] = None) -> SnapshotStore:
        root = resolve_store_root(self._working_dir, self._settings, destination_root)
        return SnapshotStore(root, clock=self._clock)

    def capturer(self) -> SystemCapturer:
        capture_cfg = section(self._settings, "capture")
        return SystemCapturer(
            self.toolset,
            recent_logins=int(capture_cfg.get("recent_logins", 20)),
            clock=self._clock,
        )

    def sources(self, category: str) -> List[str]:
        return resolve_sources(category, self._settings)

    # ------------------------------------------------------------------
    def backup(
        self,
        category: str,
        destination_root: Optional[Path] = None,
        exclude_patterns: Sequence[str] = (),
        dry_run: bool = False,
    ) -> BackupResult:
        store = self.store(destination_root)
        store.category_root(category)
        backup_cfg = section(self._settings, "backup")
        patterns = [str(item) for item in backup_cfg.get("exclude_patterns", [])]
        patterns.extend(pattern for pattern in exclude_patterns if pattern not in patterns)
        context = BackupContext(
            category=category,
            exclude_patterns=patterns,
            compare=str(backup_cfg.get("compare", "mtime")),
            one_file_system=bool(backup_cfg.get("one_file_system", True)),
            dry_run=dry_run,
        )
        return run_backup(
            store,
            context,
            self.sources(category),
            capturer=self.capturer(),
            logger=self._logger,
            clock=self._clock,
        )

    def list_categories(self, destination_root: Optional[Path] = None) -> List[str]:
        root = self.store(destination_root).root
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir() and not entry.name.startswith((".", "_")))

    def list_snapshots(self, category: str, destination_root: Optional[Path] = None) -> List[SnapshotSummary]:
        return self.store(destination_root).list_snapshots(category)

    def label(self, category: str, ref: str, label: str, destination_root: Optional[Path] = None) -> Path:
        link = self.store(destination_root).label_snapshot(category, ref, label)
        self._logger.event(event="snapshot_labelled", phase="label", ok=True, category=category, ref=ref, label=label)
        return link

    def verify(self, category: str, ref: str = "latest", destination_root: Optional[Path] = None) -> Dict[str, object]:
        return verify_snapshot(self.store(destination_root), category, ref, logger=self._logger)

    def restore(
        self,
        category: str,
        ref: str = "latest",
        *,
        target_root: Optional[Path] = None,
        paths: Optional[Sequence[str]] = None,
        dry_run: bool = False,
        destination_root: Optional[Path] = None,
    ) -> Dict[str, object]:
        return restore_snapshot(
            self.store(destination_root),
            category,
            ref,
            logger=self._logger,
            target_root=target_root,
            paths=paths,
            dry_run=dry_run,
        )


__all__ = ["SnapshotService"]
