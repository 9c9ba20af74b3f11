"""Restore mirrored sources from a snapshot with safety copies and rollback."""
from __future__ import annotations

import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .copier import mirror_layout
from .create import MANIFEST_NAME, read_manifest
from .errors import RestoreError, SnapshotError
from .logs import SnapshotLogger
from .store import SAFETY_DIR_NAME, SnapshotStore


def _replace_with_link(src: Path, dst: Path) -> None:
    if dst.is_symlink() or dst.is_file():
        dst.unlink()
    elif dst.is_dir():
        shutil.rmtree(dst)
    os.symlink(os.readlink(src), dst)


def _overlay(src: Path, dst: Path) -> None:
    """Copy *src* over *dst* without deleting anything already at *dst*."""

    if src.is_symlink():
        dst.parent.mkdir(parents=True, exist_ok=True)
        _replace_with_link(src, dst)
        return
    if src.is_file():
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.is_symlink():
            dst.unlink()
        shutil.copy2(src, dst)
        return
    dst.mkdir(parents=True, exist_ok=True)
    for entry in sorted(src.iterdir()):
        _overlay(entry, dst / entry.name)
    shutil.copystat(src, dst)


def _target_for(source: str, target_root: Optional[Path]) -> Path:
    if target_root is None:
        return Path(source)
    return Path(target_root) / source.lstrip("/")


def restore_snapshot(
    store: SnapshotStore,
    category: str,
    ref: str = "latest",
    *,
    logger: SnapshotLogger,
    target_root: Optional[Path] = None,
    paths: Optional[Sequence[str]] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    try:
        base = store.resolve_ref(category, ref)
    except SnapshotError as exc:
        raise RestoreError(str(exc)) from exc
    if not store.is_complete(base):
        raise RestoreError(f"Snapshot {base.name} is still in progress")
    manifest_path = base / MANIFEST_NAME
    if not manifest_path.is_file():
        raise RestoreError(f"Snapshot manifest missing at {manifest_path}")
    sources = [str(item) for item in read_manifest(manifest_path)["sources"]]  # type: ignore[union-attr]
    layout = mirror_layout(sources)

    selected = sources
    if paths:
        unknown = [path for path in paths if path not in layout]
        if unknown:
            raise RestoreError(f"Not recorded in snapshot {base.name}: {', '.join(unknown)}")
        selected = [source for source in sources if source in paths]

    plan: List[tuple[str, Path, Path]] = []
    skipped: List[str] = []
    for source in selected:
        mirrored = base / layout[source]
        if not os.path.lexists(mirrored):
            skipped.append(source)
            continue
        plan.append((source, mirrored, _target_for(source, target_root)))

    if dry_run:
        return {
            "snapshot": base.name,
            "restored": [],
            "planned": [str(target) for _, _, target in plan],
            "skipped": skipped,
            "safety_dir": None,
        }

    safety_dir = store.category_root(category) / SAFETY_DIR_NAME / f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{base.name}"
    safety_copies: List[tuple[Path, Path]] = []
    created: List[Path] = []
    try:
        safety_dir.mkdir(parents=True, exist_ok=True)
        for source, _, target in plan:
            if os.path.lexists(target):
                backup_path = safety_dir / layout[source]
                _overlay(target, backup_path)
                safety_copies.append((backup_path, target))
            else:
                created.append(target)
    except OSError as exc:
        logger.error("restore_safety_failed", category=category, snapshot=base.name, error=str(exc))
        raise RestoreError(f"Could not save current files before restoring {base.name}; nothing restored: {exc}") from exc

    restored: List[str] = []
    try:
        for source, mirrored, target in plan:
            logger.info("restore_copy", category=category, snapshot=base.name, source=source, target=str(target))
            _overlay(mirrored, target)
            restored.append(str(target))
    except OSError as exc:
        logger.error("restore_failed", category=category, snapshot=base.name, error=str(exc))
        for backup_path, target in reversed(safety_copies):
            _overlay(backup_path, target)
        for target in created:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif os.path.lexists(target):
                target.unlink()
        raise RestoreError(f"Restore of {base.name} failed and was rolled back: {exc}") from exc

    logger.event(event="snapshot_restored", phase="restore", ok=True, category=category, snapshot=base.name)
    return {
        "snapshot": base.name,
        "restored": restored,
        "planned": [str(target) for _, _, target in plan],
        "skipped": skipped,
        "safety_dir": str(safety_dir),
    }


__all__ = ["restore_snapshot"]
