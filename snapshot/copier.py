"""Incremental mirror copy that hardlinks unchanged files against the previous snapshot."""
from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Set

from .types import CopyOutcome

LOGGER = logging.getLogger("hostsnap.snapshot.copier")

COMPARE_MODES = ("mtime", "sha256")


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """Shell-glob match against the full path, or the base name for slash-less patterns."""

    name = os.path.basename(path.rstrip("/"))
    for pattern in patterns:
        if not pattern:
            continue
        if fnmatch.fnmatchcase(path, pattern):
            return True
        if "/" not in pattern and fnmatch.fnmatchcase(name, pattern):
            return True
    return False


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def files_match(source: Path, source_stat: os.stat_result, other: Path, *, compare: str = "mtime") -> bool:
    """Return True when *other* can stand in for *source* without copying."""

    try:
        other_stat = other.lstat()
    except FileNotFoundError:
        return False
    if not stat.S_ISREG(other_stat.st_mode):
        return False
    if other_stat.st_size != source_stat.st_size:
        return False
    if stat.S_IMODE(other_stat.st_mode) != stat.S_IMODE(source_stat.st_mode):
        return False
    if compare == "sha256":
        return _sha256(source) == _sha256(other)
    return other_stat.st_mtime_ns == source_stat.st_mtime_ns


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _preserve_owner(path: Path, source_stat: os.stat_result) -> None:
    if os.geteuid() != 0:
        return
    os.chown(path, source_stat.st_uid, source_stat.st_gid, follow_symlinks=False)


class _Mirror:
    def __init__(
        self,
        outcome: CopyOutcome,
        patterns: Sequence[str],
        *,
        compare: str,
        one_file_system: bool,
        root_dev: int,
    ) -> None:
        self.outcome = outcome
        self.patterns = list(patterns)
        self.compare = compare
        self.one_file_system = one_file_system
        self.root_dev = root_dev

    # ------------------------------------------------------------------
    def _error(self, path: Path, exc: OSError) -> None:
        message = f"{path}: {exc.strerror or exc}"
        self.outcome.errors.append(message)
        LOGGER.warning("copy error %s", message)

    def place_file(self, src: Path, src_stat: os.stat_result, dst: Path, prev: Optional[Path]) -> None:
        if dst.is_symlink() or dst.exists():
            if files_match(src, src_stat, dst, compare=self.compare):
                return
            # never write through an existing inode, it may be shared with an older snapshot
            _remove(dst)
        if prev is not None and files_match(src, src_stat, prev, compare=self.compare):
            try:
                os.link(prev, dst)
                self.outcome.linked += 1
                return
            except OSError as exc:
                LOGGER.debug("hardlink %s -> %s failed (%s), copying", prev, dst, exc)
        shutil.copy2(src, dst, follow_symlinks=False)
        _preserve_owner(dst, src_stat)
        self.outcome.copied += 1
        self.outcome.bytes_copied += src_stat.st_size

    def place_symlink(self, src: Path, dst: Path) -> None:
        target = os.readlink(src)
        if dst.is_symlink() and os.readlink(dst) == target:
            return
        if dst.is_symlink() or dst.exists():
            _remove(dst)
        os.symlink(target, dst)
        self.outcome.copied += 1

    def mirror_dir(self, src: Path, dst: Path, prev: Optional[Path]) -> None:
        if dst.is_symlink() or (dst.exists() and not dst.is_dir()):
            _remove(dst)
        dst.mkdir(parents=True, exist_ok=True)
        keep: Set[str] = set()
        with os.scandir(src) as entries:
            children = sorted(entries, key=lambda item: item.name)
        for entry in children:
            child_src = Path(entry.path)
            child_dst = dst / entry.name
            child_prev = prev / entry.name if prev is not None else None
            if is_excluded(entry.path, self.patterns):
                keep.add(entry.name)
                self.outcome.excluded += 1
                continue
            try:
                entry_stat = entry.stat(follow_symlinks=False)
                if stat.S_ISLNK(entry_stat.st_mode):
                    keep.add(entry.name)
                    self.place_symlink(child_src, child_dst)
                elif stat.S_ISDIR(entry_stat.st_mode):
                    keep.add(entry.name)
                    if self.one_file_system and entry_stat.st_dev != self.root_dev:
                        child_dst.mkdir(exist_ok=True)
                        self.outcome.skipped += 1
                        LOGGER.debug("not crossing filesystem boundary at %s", child_src)
                        continue
                    self.mirror_dir(child_src, child_dst, child_prev if child_prev and child_prev.is_dir() else None)
                elif stat.S_ISREG(entry_stat.st_mode):
                    keep.add(entry.name)
                    self.place_file(child_src, entry_stat, child_dst, child_prev)
                else:
                    self.outcome.skipped += 1
            except OSError as exc:
                keep.add(entry.name)
                self._error(child_src, exc)
        self.prune(src, dst, keep)
        try:
            shutil.copystat(src, dst, follow_symlinks=False)
            _preserve_owner(dst, src.lstat())
        except OSError as exc:
            self._error(dst, exc)

    def prune(self, src: Path, dst: Path, keep: Set[str]) -> None:
        """Drop destination entries gone from *src*; excluded names are protected."""

        try:
            existing = list(dst.iterdir())
        except OSError as exc:
            self._error(dst, exc)
            return
        for item in existing:
            if item.name in keep or is_excluded(str(src / item.name), self.patterns):
                continue
            try:
                _remove(item)
                self.outcome.removed += 1
            except OSError as exc:
                self._error(item, exc)


def copy_tree(
    source: Path,
    dest: Path,
    previous: Optional[Path] = None,
    exclude_patterns: Sequence[str] = (),
    *,
    compare: str = "mtime",
    one_file_system: bool = True,
) -> CopyOutcome:
    """Mirror *source* into *dest*, hardlinking files unchanged since *previous*.

    Directories are mirrored with deletion of extraneous destination entries
    (excluded names are left alone). A single file is placed at *dest*. A
    missing source produces an outcome of kind ``missing`` and no error.
    Per-entry ``OSError`` is collected in ``CopyOutcome.errors``.
    """

    if compare not in COMPARE_MODES:
        raise ValueError(f"Unknown compare mode: {compare}")
    source = Path(source)
    dest = Path(dest)
    previous = Path(previous) if previous is not None else None
    outcome = CopyOutcome(source=source, destination=dest, kind="missing")
    try:
        source_stat = source.lstat()
    except FileNotFoundError:
        LOGGER.info("source %s does not exist, skipping", source)
        return outcome
    if is_excluded(str(source), exclude_patterns):
        outcome.kind = "excluded"
        outcome.excluded += 1
        return outcome

    mirror = _Mirror(
        outcome,
        exclude_patterns,
        compare=compare,
        one_file_system=one_file_system,
        root_dev=source_stat.st_dev,
    )
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if stat.S_ISLNK(source_stat.st_mode):
            outcome.kind = "symlink"
            mirror.place_symlink(source, dest)
        elif stat.S_ISDIR(source_stat.st_mode):
            outcome.kind = "directory"
            prev_dir = previous if previous is not None and previous.is_dir() else None
            mirror.mirror_dir(source, dest, prev_dir)
        elif stat.S_ISREG(source_stat.st_mode):
            outcome.kind = "file"
            mirror.place_file(source, source_stat, dest, previous)
        else:
            outcome.kind = "special"
            outcome.skipped += 1
    except OSError as exc:
        mirror._error(source, exc)
    LOGGER.debug(
        "copied %s: copied=%d linked=%d removed=%d excluded=%d errors=%d",
        source,
        outcome.copied,
        outcome.linked,
        outcome.removed,
        outcome.excluded,
        len(outcome.errors),
    )
    return outcome


def snapshot_relative(source: str) -> str:
    """Name under which *source* is mirrored inside a snapshot (its base name)."""

    name = os.path.basename(source.rstrip("/"))
    return name or "root"


def mirror_layout(sources: Iterable[str]) -> Dict[str, str]:
    """Map each source to its directory name inside a snapshot.

    The first source with a given base name keeps it; later ones fall back to
    the full path flattened with underscores.
    """

    layout: Dict[str, str] = {}
    used: Set[str] = set()
    for item in sources:
        name = snapshot_relative(item)
        if name in used:
            name = item.strip("/").replace("/", "_") or "root"
        used.add(name)
        layout[item] = name
    return layout


__all__ = [
    "COMPARE_MODES",
    "copy_tree",
    "files_match",
    "is_excluded",
    "mirror_layout",
    "snapshot_relative",
]
