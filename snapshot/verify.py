"""Verify snapshots after a backup run."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from .capture import SYSTEM_INFO_DIR
from .create import MANIFEST_NAME, read_manifest
from .errors import SnapshotVerificationError
from .logs import SnapshotLogger
from .store import IN_PROGRESS_MARKER, SnapshotStore


def _count_files(root: Path) -> tuple[int, int]:
    count = 0
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = Path(dirpath) / name
            try:
                stat_result = path.lstat()
            except OSError:
                continue
            count += 1
            total += stat_result.st_size
    return count, total


def verify_snapshot(
    store: SnapshotStore,
    category: str,
    ref: str = "latest",
    *,
    logger: Optional[SnapshotLogger] = None,
) -> Dict[str, object]:
    base = store.resolve_ref(category, ref)
    if (base / IN_PROGRESS_MARKER).exists():
        raise SnapshotVerificationError(f"snapshot {base.name} is still in progress")
    manifest_path = base / MANIFEST_NAME
    if not manifest_path.is_file():
        raise SnapshotVerificationError(f"manifest not found at {manifest_path}")
    system_info = base / SYSTEM_INFO_DIR
    if not system_info.is_dir():
        raise SnapshotVerificationError(f"system_info directory missing in {base}")

    manifest = read_manifest(manifest_path)
    file_count, total_bytes = _count_files(base)
    info_count, _ = _count_files(system_info)
    if info_count == 0:
        raise SnapshotVerificationError(f"system_info is empty in {base}")

    if logger is not None:
        logger.event(
            event="snapshot_verified",
            phase="verify",
            ok=True,
            category=category,
            snapshot=base.name,
            files=file_count,
        )
    return {
        "category": category,
        "snapshot": base.name,
        "path": str(base),
        "file_count": file_count,
        "system_info_files": info_count,
        "total_bytes": total_bytes,
        "manifest": True,
        "in_progress": False,
        "status": manifest.get("status", "unknown"),
        "issues": manifest.get("issues", []),
    }


__all__ = ["verify_snapshot"]
