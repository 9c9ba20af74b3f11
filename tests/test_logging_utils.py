from __future__ import annotations

import io
import json
import logging
from pathlib import Path

from core.logging_utils import configure_logging
from snapshot.logs import SnapshotLogger


def test_configure_logging_writes_json_and_console(tmp_path: Path) -> None:
    stream = io.StringIO()
    logger = configure_logging(tmp_path, name="hostsnap.test", stream=stream)

    logger.info("quiet on console", extra={"category": "all"})
    logger.warning("loud")

    for handler in logger.handlers:
        handler.flush()
    lines = (tmp_path / "logs" / "hostsnap.log.jsonl").read_text(encoding="utf-8").splitlines()
    first = json.loads(lines[0])
    assert first["message"] == "quiet on console"
    assert first["category"] == "all"
    assert stream.getvalue() == "[WARNING] loud\n"


def test_configure_logging_moves_file_handler_with_working_dir(tmp_path: Path) -> None:
    first = configure_logging(tmp_path / "a", name="hostsnap.test.move")
    configure_logging(tmp_path / "b", name="hostsnap.test.move")

    files = [handler for handler in first.handlers if isinstance(handler, logging.FileHandler)]
    assert [Path(handler.baseFilename).parent.parent.name for handler in files] == ["b"]


def test_snapshot_logger_appends_jsonl(tmp_path: Path) -> None:
    logger = SnapshotLogger(tmp_path)
    logger.event(event="backup_start", phase="create", ok=True, category="all")
    logger.warning("source_missing", source="/etc/nope")

    entries = [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]
    assert [entry["event"] for entry in entries] == ["backup_start", "source_missing"]
    assert entries[1]["ok"] is False
    assert logger.path == tmp_path / "logs" / "snapshot.jsonl"
