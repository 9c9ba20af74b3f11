"""On-disk snapshot store: category roots, dated snapshots and the latest pointer."""
from __future__ import annotations

import errno
import fcntl
import logging
import os
import re
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from core.paths import is_valid_label

from .errors import (
    InvalidCategoryError,
    SnapshotCollisionError,
    SnapshotError,
    SnapshotLockedError,
    SnapshotNotFoundError,
    StoreUnwritableError,
)
from .types import SnapshotSummary

LOGGER = logging.getLogger("hostsnap.snapshot.store")

LATEST_NAME = "latest"
IN_PROGRESS_MARKER = ".in_progress"
LOCK_NAME = ".lock"
SAFETY_DIR_NAME = "_safety"
MAX_COLLISION_SUFFIX = 99

_KEY_PATTERN = re.compile(r"^(?P<day>\d{8})(?:-(?P<time>\d{6}))?(?:-(?P<seq>\d{2}))?$")
_RESERVED_NAMES = {LATEST_NAME, SAFETY_DIR_NAME}


def parse_snapshot_key(name: str) -> Optional[datetime]:
    """Return the creation time encoded in a snapshot key, or ``None``.

    Both ``YYYYMMDD-HHMMSS[-NN]`` keys and legacy day-only ``YYYYMMDD`` names
    are understood.
    """

    match = _KEY_PATTERN.match(name)
    if not match:
        return None
    stamp = match.group("day") + (match.group("time") or "000000")
    try:
        return datetime.strptime(stamp, "%Y%m%d%H%M%S")
    except ValueError:
        return None


def _replace_symlink(link: Path, target: str) -> None:
    tmp = link.with_name(f".{link.name}.tmp-{os.getpid()}")
    if tmp.is_symlink() or tmp.exists():
        tmp.unlink()
    os.symlink(target, tmp)
    os.replace(tmp, link)


class SnapshotStore:
    """Owns ``<root>/<category>/<key>`` directories and their pointers."""

    def __init__(self, root: Path, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.root = Path(root)
        self._clock = clock

    # ------------------------------------------------------------------
    def category_root(self, category: str) -> Path:
        if not is_valid_label(category) or category in _RESERVED_NAMES:
            raise InvalidCategoryError(f"Invalid category name: {category!r}")
        return self.root / category

    def _ensure_category_root(self, category: str) -> Path:
        base = self.category_root(category)
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnwritableError(f"Cannot create snapshot store at {base}: {exc}") from exc
        if not os.access(base, os.W_OK | os.X_OK):
            raise StoreUnwritableError(f"Snapshot store is not writable: {base}")
        return base

    @contextmanager
    def category_lock(self, category: str) -> Iterator[Path]:
        """Hold an exclusive, non-blocking lock on the category for a backup run."""

        base = self._ensure_category_root(category)
        lock_path = base / LOCK_NAME
        try:
            handle = open(lock_path, "a+", encoding="utf-8")
        except OSError as exc:
            raise StoreUnwritableError(f"Cannot open lock file {lock_path}: {exc}") from exc
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                if exc.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    raise SnapshotLockedError(
                        f"Another backup of category '{category}' is running ({lock_path})"
                    ) from exc
                raise
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            try:
                yield lock_path
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    # ------------------------------------------------------------------
    def begin_snapshot(self, category: str) -> Path:
        """Allocate a fresh snapshot directory and mark it in progress."""

        base = self._ensure_category_root(category)
        key = self._clock().strftime("%Y%m%d-%H%M%S")
        candidates = [key] + [f"{key}-{seq:02d}" for seq in range(1, MAX_COLLISION_SUFFIX + 1)]
        for name in candidates:
            path = base / name
            try:
                path.mkdir()
            except FileExistsError:
                LOGGER.debug("snapshot key %s already taken", name)
                continue
            except OSError as exc:
                raise StoreUnwritableError(f"Cannot create snapshot directory {path}: {exc}") from exc
            (path / IN_PROGRESS_MARKER).write_text(
                f"{self._clock().isoformat()} pid={os.getpid()}\n", encoding="utf-8"
            )
            LOGGER.info("allocated snapshot %s/%s", category, name)
            return path
        raise SnapshotCollisionError(f"No free snapshot key for {category} at {key}")

    def current_latest(self, category: str) -> Optional[Path]:
        """Resolve ``latest`` one level; ``None`` when absent or dangling."""

        base = self.category_root(category)
        link = base / LATEST_NAME
        if link.is_symlink():
            target = Path(os.readlink(link))
            if not target.is_absolute():
                target = base / target
            return target if target.is_dir() else None
        if link.is_dir():
            return link
        return None

    def finalize(self, category: str, snapshot: Path) -> Path:
        """Close *snapshot* and repoint ``latest`` at it. Safe to repeat."""

        base = self.category_root(category)
        snapshot = Path(snapshot)
        if snapshot.parent.resolve() != base.resolve() or not snapshot.is_dir():
            raise SnapshotError(f"{snapshot} is not a snapshot of category '{category}'")
        marker = snapshot / IN_PROGRESS_MARKER
        marker.unlink(missing_ok=True)
        link = base / LATEST_NAME
        if link.is_dir() and not link.is_symlink():
            legacy = base / f"legacy-latest-{self._clock().strftime('%Y%m%d-%H%M%S')}"
            LOGGER.warning("moving legacy latest directory to %s", legacy)
            os.replace(link, legacy)
        _replace_symlink(link, snapshot.name)
        LOGGER.info("latest for %s now points at %s", category, snapshot.name)
        return link

    @staticmethod
    def is_complete(snapshot: Path) -> bool:
        return snapshot.is_dir() and not (snapshot / IN_PROGRESS_MARKER).exists()

    # ------------------------------------------------------------------
    def _labels(self, base: Path) -> Dict[str, List[str]]:
        labels: Dict[str, List[str]] = {}
        for entry in base.iterdir():
            if not entry.is_symlink() or entry.name == LATEST_NAME or entry.name.startswith("."):
                continue
            target = Path(os.readlink(entry)).name
            labels.setdefault(target, []).append(entry.name)
        return labels

    def list_snapshots(self, category: str) -> List[SnapshotSummary]:
        base = self.category_root(category)
        if not base.is_dir():
            return []
        latest = self.current_latest(category)
        latest_name = latest.name if latest is not None and latest.name != LATEST_NAME else None
        labels = self._labels(base)
        summaries: List[SnapshotSummary] = []
        for entry in base.iterdir():
            if entry.is_symlink() or not entry.is_dir():
                continue
            if entry.name.startswith(".") or entry.name in _RESERVED_NAMES:
                continue
            summaries.append(
                SnapshotSummary(
                    category=category,
                    key=entry.name,
                    path=entry,
                    created=parse_snapshot_key(entry.name),
                    complete=self.is_complete(entry),
                    is_latest=entry.name == latest_name,
                    labels=sorted(labels.get(entry.name, [])),
                )
            )
        summaries.sort(key=lambda item: item.key, reverse=True)
        return summaries

    def resolve_ref(self, category: str, ref: str) -> Path:
        """Resolve ``latest``, a label or a snapshot key to a snapshot directory."""

        base = self.category_root(category)
        if ref == LATEST_NAME:
            latest = self.current_latest(category)
            if latest is None:
                raise SnapshotNotFoundError(f"No finalized snapshot for category '{category}'")
            return latest
        if not ref or "/" in ref or ref.startswith("."):
            raise SnapshotNotFoundError(f"Invalid snapshot reference: {ref!r}")
        candidate = base / ref
        if candidate.is_symlink():
            target = Path(os.readlink(candidate))
            candidate = target if target.is_absolute() else base / target
        if not candidate.is_dir():
            raise SnapshotNotFoundError(f"Snapshot '{ref}' not found for category '{category}'")
        return candidate

    def label_snapshot(self, category: str, ref: str, label: str) -> Path:
        """Point the symlink ``<category>/<label>`` at a finalized snapshot."""

        if not is_valid_label(label) or label in _RESERVED_NAMES or parse_snapshot_key(label):
            raise InvalidCategoryError(f"Invalid snapshot label: {label!r}")
        snapshot = self.resolve_ref(category, ref)
        if not self.is_complete(snapshot):
            raise SnapshotError(f"Snapshot {snapshot.name} is still in progress")
        base = self.category_root(category)
        link = base / label
        if link.exists() and not link.is_symlink():
            raise SnapshotError(f"{link} exists and is not a label")
        _replace_symlink(link, snapshot.name)
        LOGGER.info("labelled %s/%s as %s", category, snapshot.name, label)
        return link


__all__ = [
    "IN_PROGRESS_MARKER",
    "LATEST_NAME",
    "SAFETY_DIR_NAME",
    "SnapshotStore",
    "parse_snapshot_key",
]
