"""JSONL event trail for snapshot and drift runs."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict

from core.paths import get_logs_dir


def _summarise(payload: Dict[str, Any]) -> str:
    details = " ".join(
        f"{key}={value}" for key, value in sorted(payload.items()) if key not in {"event", "ts", "ok"}
    )
    return f"{payload.get('event')} {details}".strip()


class SnapshotLogger:
    """Appends one JSON object per event under ``<working_dir>/logs`` and mirrors it to ``logging``."""

    def __init__(self, working_dir: Path, *, filename: str = "snapshot.jsonl", name: str = "hostsnap.snapshot") -> None:
        self._path = get_logs_dir(Path(working_dir)) / filename
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger(name)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    def _emit(self, level: int, event: str, ok: bool, fields: Dict[str, Any]) -> None:
        record = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, "ok": ok, **fields}
        line = json.dumps(record, sort_keys=True, default=str)
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        self._logger.log(level, "%s", _summarise(record))

    def event(self, *, event: str, phase: str, ok: bool, **extra: Any) -> None:
        """Lifecycle event; failures are logged at ERROR."""

        self._emit(logging.INFO if ok else logging.ERROR, event, bool(ok), {"phase": phase, **extra})

    def debug(self, event: str, **extra: Any) -> None:
        self._emit(logging.DEBUG, event, True, extra)

    def info(self, event: str, **extra: Any) -> None:
        self._emit(logging.INFO, event, True, extra)

    def warning(self, event: str, **extra: Any) -> None:
        self._emit(logging.WARNING, event, False, extra)

    def error(self, event: str, **extra: Any) -> None:
        self._emit(logging.ERROR, event, False, extra)


__all__ = ["SnapshotLogger"]
