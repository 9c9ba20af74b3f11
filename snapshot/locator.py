"""Resolve a logical capture name to a baseline file across snapshot layouts."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

from .capture import SYSTEM_INFO_DIR
from .store import IN_PROGRESS_MARKER, LATEST_NAME, SAFETY_DIR_NAME, SnapshotStore
from .tools import FileLister

LOGGER = logging.getLogger("hostsnap.snapshot.locator")

GENERIC_CATEGORY = "all"


@dataclass(slots=True)
class PinnedBaseline:
    """Snapshot directories resolved once, so later lookups ignore new backups."""

    latest: Dict[str, Optional[Path]] = field(default_factory=dict)
    snapshots: Dict[str, List[Path]] = field(default_factory=dict)
    finalized: FrozenSet[Path] = frozenset()


class BackupLocator:
    """Ordered fallback search for baseline files.

    1. ``<category>/{latest,today}/system_info/<name>`` (and the symlink target)
    2. the same under the generic ``all`` category
    3. ``all/{latest,today}/<name>`` without ``system_info``
    4. any finalized snapshot in the store holding a file of that base name,
       newest first

    Matches that resolve outside the store, such as mirrored absolute
    symlinks pointing back at the live system, are never returned.
    """

    def __init__(
        self,
        store: SnapshotStore,
        files: Optional[FileLister] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.files = files or FileLister()
        self._clock = clock

    # ------------------------------------------------------------------
    @staticmethod
    def _categories(category: str) -> List[str]:
        return list(dict.fromkeys([category, GENERIC_CATEGORY]))

    def _snapshot_dirs(self, category: str) -> List[Path]:
        base = self.store.root / category
        day = self._clock().strftime("%Y%m%d")
        dirs = [base / LATEST_NAME, base / day]
        if base.is_dir():
            todays = sorted(
                (
                    entry
                    for entry in base.iterdir()
                    if entry.name.startswith(f"{day}-")
                    and not entry.is_symlink()
                    and self.store.is_complete(entry)
                ),
                key=lambda entry: entry.name,
                reverse=True,
            )
            if todays:
                dirs.append(todays[0])
        return dirs

    @staticmethod
    def _with_target(path: Path) -> List[Path]:
        if path.is_symlink():
            return [path, path.resolve()]
        return [path]

    def _finalized(self) -> FrozenSet[Path]:
        root = self.store.root
        if not root.is_dir():
            return frozenset()
        found = set()
        for base in root.iterdir():
            if not base.is_dir() or base.is_symlink() or base.name.startswith("."):
                continue
            for entry in base.iterdir():
                if not entry.is_symlink() and entry.name != SAFETY_DIR_NAME and self.store.is_complete(entry):
                    found.add(entry.resolve())
        return frozenset(found)

    def pin(self, category: str) -> PinnedBaseline:
        """Resolve every ``latest`` and dated snapshot directory for *category* once."""

        pinned = PinnedBaseline(finalized=self._finalized())
        for cat in self._categories(category):
            latest = self.store.current_latest(cat)
            resolved_latest = latest.resolve() if latest is not None else None
            pinned.latest[cat] = resolved_latest
            dirs: List[Path] = [resolved_latest] if resolved_latest is not None else []
            # first entry is the ``latest`` link itself, already read above
            for snapshot in self._snapshot_dirs(cat)[1:]:
                resolved = snapshot.resolve()
                if resolved not in dirs:
                    dirs.append(resolved)
            pinned.snapshots[cat] = dirs
        LOGGER.debug("pinned baselines for %s: %s", category, pinned.latest)
        return pinned

    def _dirs(self, category: str, pinned: Optional[PinnedBaseline]) -> List[Path]:
        if pinned is not None:
            return pinned.snapshots.get(category, [])
        return [resolved for snapshot in self._snapshot_dirs(category) for resolved in self._with_target(snapshot)]

    def candidates(self, category: str, name: str, pinned: Optional[PinnedBaseline] = None) -> List[Path]:
        """Ordered list of concrete paths tried before the store-wide search."""

        paths: List[Path] = []
        for cat in self._categories(category):
            for snapshot in self._dirs(cat, pinned):
                paths.append(snapshot / SYSTEM_INFO_DIR / name)
        for snapshot in self._dirs(GENERIC_CATEGORY, pinned):
            paths.append(snapshot / name)
        unique: List[Path] = []
        for path in paths:
            if path not in unique:
                unique.append(path)
        return unique

    def inside_store(self, path: Path) -> bool:
        """True if *path*, with every symlink followed, lies within the store root."""

        try:
            path.resolve().relative_to(self.store.root.resolve())
        except ValueError:
            return False
        return True

    def _searchable(self, match: Path, root: Path, pinned: Optional[PinnedBaseline]) -> bool:
        try:
            relative = match.relative_to(root)
        except ValueError:
            return False
        parts = relative.parts
        if len(parts) < 3 or SAFETY_DIR_NAME in parts or parts[1] == LATEST_NAME:
            return False
        snapshot = root / parts[0] / parts[1]
        if pinned is not None:
            return snapshot in pinned.finalized
        return not (snapshot / IN_PROGRESS_MARKER).exists()

    def search(self, name: str, pinned: Optional[PinnedBaseline] = None) -> List[Path]:
        if not self.store.root.is_dir():
            return []
        root = self.store.root.resolve()
        matches = [
            match
            for match in self.files.find(root, name)
            if match.name == name and self._searchable(match, root, pinned)
        ]

        def _order(match: Path) -> tuple:
            parts = match.relative_to(root).parts
            return (parts[1], str(match))

        return sorted(matches, key=_order, reverse=True)

    def _usable(self, path: Path) -> bool:
        if not path.is_file():
            return False
        if not self.inside_store(path):
            LOGGER.warning("ignoring %s: it resolves outside the snapshot store", path)
            return False
        return True

    def locate(self, category: str, name: str, pinned: Optional[PinnedBaseline] = None) -> Optional[Path]:
        """Return the resolved baseline path for *name*, or ``None``."""

        for path in self.candidates(category, name, pinned):
            if self._usable(path):
                LOGGER.info("baseline for %s/%s found at %s", category, name, path)
                return path.resolve()
        for match in self.search(name, pinned):
            if self._usable(match):
                LOGGER.info("baseline for %s/%s found by search at %s", category, name, match)
                return match.resolve()
        LOGGER.info("no baseline for %s/%s", category, name)
        return None


__all__ = ["BackupLocator", "GENERIC_CATEGORY", "PinnedBaseline"]
