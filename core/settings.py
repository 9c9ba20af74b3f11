from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .paths import get_default_settings_paths, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_EXCLUDE_PATTERNS",
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "load_settings",
    "merge_defaults",
    "save_settings",
    "section",
]

LOGGER = logging.getLogger("hostsnap.settings")

SETTINGS_VERSION = 2

DEFAULT_EXCLUDE_PATTERNS: List[str] = [
    "/tmp/*",
    "/var/tmp/*",
    "/proc/*",
    "/sys/*",
    "/run/*",
    "/dev/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
]


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "store_root": None,
    "backup": {
        "exclude_patterns": list(DEFAULT_EXCLUDE_PATTERNS),
        "compare": "mtime",
        "one_file_system": True,
    },
    "capture": {
        "command_timeout_s": 30,
        "recent_logins": 20,
    },
    "categories": {},
    "diff": {
        "color": True,
        "config_files": [
            "/etc/passwd",
            "/etc/group",
            "/etc/hosts",
            "/etc/resolv.conf",
            "/etc/hostname",
            "/etc/fstab",
            "/etc/ssh/sshd_config",
        ],
    },
    "api": {
        "host": "127.0.0.1",
        "port": 8765,
    },
}


def _fill(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for key, default in defaults.items():
        given = overrides.get(key, default)
        if isinstance(default, dict):
            merged[key] = _fill(default, given if isinstance(given, dict) else {})
        elif isinstance(default, list):
            # a configured list replaces the default wholesale
            merged[key] = list(given) if isinstance(given, list) else list(default)
        else:
            merged[key] = given
    merged.update({key: value for key, value in overrides.items() if key not in defaults})
    return merged


def merge_defaults(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return *data* completed with every default block and key."""

    return _fill(DEFAULT_SETTINGS, dict(data or {}))


def section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return the ``name`` block of *settings*, or an empty dict."""

    value = settings.get(name)
    return value if isinstance(value, dict) else {}


def _migrate(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade pre-v2 files, which kept ``backup_dir`` and ``exclude`` at the top level."""

    try:
        version = int(raw.get("version") or 0)
    except (TypeError, ValueError):
        version = 0
    if version >= SETTINGS_VERSION:
        return raw
    upgraded = dict(raw)
    legacy_dir = upgraded.pop("backup_dir", None)
    if isinstance(legacy_dir, str) and legacy_dir.strip() and not upgraded.get("store_root"):
        upgraded["store_root"] = legacy_dir
    legacy_excludes = upgraded.pop("exclude", None)
    if isinstance(legacy_excludes, list):
        backup = dict(upgraded.get("backup") or {})
        backup.setdefault("exclude_patterns", [str(item) for item in legacy_excludes])
        upgraded["backup"] = backup
    upgraded["version"] = SETTINGS_VERSION
    if raw:
        LOGGER.info("settings migrated from version %s to %s", version, SETTINGS_VERSION)
    return upgraded


def _record_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> List[str]:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return unknown
    LOGGER.warning("ignoring unknown settings keys: %s", ", ".join(unknown))
    target = get_logs_dir(working_dir) / "settings_unknown.json"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps({"ts": time.time(), "unknown": unknown}, indent=2), encoding="utf-8")
    except OSError as exc:
        LOGGER.debug("could not write %s: %s", target, exc)
    return unknown


def _read_first(working_dir: Path) -> Dict[str, Any]:
    for candidate in get_default_settings_paths(working_dir):
        if not candidate.is_file():
            continue
        try:
            loaded = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("skipping unreadable settings file %s: %s", candidate, exc)
            continue
        if isinstance(loaded, dict):
            return loaded
        LOGGER.warning("skipping settings file %s: top level is not an object", candidate)
    return {}


def load_settings(working_dir: Path) -> Dict[str, Any]:
    """Read ``settings.json``, upgrade it and fill in defaults."""

    settings = merge_defaults(_migrate(_read_first(working_dir)))
    settings.setdefault("working_dir", str(working_dir))
    _record_unknown_keys(settings, working_dir)
    return settings


def save_settings(settings: Dict[str, Any], working_dir: Path) -> Path:
    payload = merge_defaults(_migrate(dict(settings)))
    payload.setdefault("working_dir", str(working_dir))
    path = working_dir / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)
    return path
