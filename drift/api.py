"""Public API for drift comparisons."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from core.settings import section
from snapshot.api import SnapshotService
from snapshot.locator import BackupLocator
from snapshot.logs import SnapshotLogger

from .engine import DiffEngine
from .records import DiffResult
from .report import format_results


class DriftService:
    """Diff the live host against stored snapshots."""

    def __init__(self, snapshots: SnapshotService) -> None:
        self._snapshots = snapshots
        self._logger = SnapshotLogger(
            snapshots.working_dir, filename="drift.jsonl", name="hostsnap.drift"
        )

    def engine(self, destination_root: Optional[Path] = None) -> DiffEngine:
        store = self._snapshots.store(destination_root)
        toolset = self._snapshots.toolset
        diff_cfg = section(self._snapshots.settings, "diff")
        return DiffEngine(
            store,
            BackupLocator(store, toolset.files),
            self._snapshots.capturer(),
            config_files=diff_cfg.get("config_files", []),
            logger=self._logger,
        )

    def diff(
        self,
        target: str,
        category: str = "all",
        files: Optional[Sequence[str]] = None,
        *,
        destination_root: Optional[Path] = None,
    ) -> List[DiffResult]:
        return self.engine(destination_root).diff(target, category, files)

    def render(self, results: Iterable[DiffResult], color: Optional[bool] = None) -> str:
        if color is None:
            color = bool(section(self._snapshots.settings, "diff").get("color", True))
        return format_results(results, color=color)


__all__ = ["DriftService"]
