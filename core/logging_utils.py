from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .paths import get_logs_dir, resolve_working_dir

_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()) | {"message", "asctime"}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are kept, paths as strings."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _RESERVED_ATTRS and key not in payload
        }
        payload.update(extras)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[LEVEL] message`` lines for the terminal."""

    def format(self, record: logging.LogRecord) -> str:
        message = f"[{record.levelname}] {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    working_dir: Optional[Path] = None,
    *,
    name: str = "hostsnap",
    verbose: bool = False,
    stream: Any = None,
) -> logging.Logger:
    base = working_dir or resolve_working_dir()
    logs_dir = get_logs_dir(base)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "hostsnap.log.jsonl"
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    has_file = False
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.FileHandler):
            continue
        if getattr(handler, "baseFilename", None) == str(log_path):
            has_file = True
        else:
            logger.removeHandler(handler)
            handler.close()
    if not has_file:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JsonLogFormatter())
        logger.addHandler(file_handler)
    for handler in list(logger.handlers):
        if getattr(handler, "_hostsnap_console", False):
            logger.removeHandler(handler)
    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(ConsoleFormatter())
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console._hostsnap_console = True  # type: ignore[attr-defined]
    logger.addHandler(console)
    logger.propagate = False
    return logger


__all__ = ["ConsoleFormatter", "JsonLogFormatter", "configure_logging"]
