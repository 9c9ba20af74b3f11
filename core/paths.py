from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = [
    "DEFAULT_BASE_DIR",
    "get_backups_dir",
    "get_default_settings_paths",
    "get_logs_dir",
    "is_valid_label",
    "resolve_store_root",
    "resolve_working_dir",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_BASE_DIR = Path("/opt/hostsnap")
_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _usable_dir(path: Path) -> bool:
    """Create *path* if needed and prove a file can be written inside it."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-check-"):
            pass
    except OSError:
        return False
    return True


def resolve_working_dir() -> Path:
    """Pick the working directory: ``$HOSTSNAP_HOME``, ``/opt/hostsnap`` or ``~/.hostsnap``."""

    candidates = []
    env_home = os.environ.get("HOSTSNAP_HOME")
    if env_home:
        candidates.append(_expand_path(env_home))
    candidates.append(DEFAULT_BASE_DIR)
    for candidate in candidates:
        if _usable_dir(candidate):
            return candidate
    fallback = Path.home() / ".hostsnap"
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def get_backups_dir(working_dir: Path) -> Path:
    return working_dir / "backups"


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def resolve_store_root(
    working_dir: Path,
    settings: Optional[Mapping[str, Any]] = None,
    destination: Optional[os.PathLike[str] | str] = None,
) -> Path:
    """Pick the snapshot store root.

    Order: explicit destination, ``HOSTSNAP_BACKUP_DIR``, ``store_root`` from
    settings, then ``<working_dir>/backups``.
    """

    if destination:
        return _expand_path(str(destination))
    env_root = os.environ.get("HOSTSNAP_BACKUP_DIR")
    if env_root:
        return _expand_path(env_root)
    configured = (settings or {}).get("store_root")
    if isinstance(configured, str) and configured.strip():
        return _expand_path(configured)
    return get_backups_dir(working_dir)


def is_valid_label(label: str) -> bool:
    """Return True if *label* can be used as a category or snapshot label."""

    return bool(label) and bool(_LABEL_PATTERN.match(label))


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    return [working_dir / "settings.json", _PROJECT_ROOT / "settings.json"]
