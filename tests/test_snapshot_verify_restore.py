from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from snapshot import restore as restore_module
from snapshot.capture import SYSTEM_INFO_DIR
from snapshot.create import MANIFEST_NAME
from snapshot.errors import RestoreError, SnapshotNotFoundError, SnapshotVerificationError


def test_verify_reports_counts_and_status(make_service) -> None:
    service = make_service()
    result = service.backup("app")

    report = service.verify("app")

    assert report["snapshot"] == result.directory.name
    assert report["manifest"] is True
    assert report["system_info_files"] == len(result.capture.files)
    assert report["file_count"] >= report["system_info_files"] + 4
    assert report["status"] in ("complete", "partial")


def test_verify_rejects_broken_snapshots(make_service) -> None:
    service = make_service()
    result = service.backup("app")

    shutil.rmtree(result.directory / SYSTEM_INFO_DIR)
    with pytest.raises(SnapshotVerificationError):
        service.verify("app", result.directory.name)

    (result.directory / MANIFEST_NAME).unlink()
    with pytest.raises(SnapshotVerificationError, match="manifest"):
        service.verify("app")

    with pytest.raises(SnapshotNotFoundError):
        service.verify("app", "20000101-000000")


def test_restore_overlays_files_under_target_root(make_service, host_tree, tmp_path: Path) -> None:
    service = make_service()
    service.backup("app")
    target_root = tmp_path / "restored"
    app_target = target_root / str(host_tree.app).lstrip("/")
    app_target.mkdir(parents=True)
    (app_target / "app.conf").write_text("listen = 9999\n", encoding="utf-8")
    (app_target / "local.conf").write_text("keep me\n", encoding="utf-8")

    report = service.restore("app", target_root=target_root)

    assert (app_target / "app.conf").read_text(encoding="utf-8") == "listen = 8080\n"
    assert (app_target / "conf.d" / "extra.conf").exists()
    assert (app_target / "local.conf").read_text(encoding="utf-8") == "keep me\n"
    hosts_target = target_root / str(host_tree.hosts).lstrip("/")
    assert hosts_target.read_text(encoding="utf-8") == "127.0.0.1 localhost\n"
    safety = Path(report["safety_dir"])
    assert (safety / "app" / "app.conf").read_text(encoding="utf-8") == "listen = 9999\n"
    assert str(app_target) in report["restored"]


def test_restore_dry_run_and_path_selection(make_service, host_tree, tmp_path: Path) -> None:
    service = make_service()
    service.backup("app")
    target_root = tmp_path / "restored"

    report = service.restore("app", target_root=target_root, paths=[str(host_tree.hosts)], dry_run=True)

    assert report["planned"] == [str(target_root / str(host_tree.hosts).lstrip("/"))]
    assert report["restored"] == []
    assert not target_root.exists()

    with pytest.raises(RestoreError):
        service.restore("app", target_root=target_root, paths=["/etc/not-recorded"])


def test_restore_rolls_back_on_failure(make_service, host_tree, tmp_path: Path, monkeypatch) -> None:
    service = make_service()
    service.backup("app")
    target_root = tmp_path / "restored"
    hosts_target = target_root / str(host_tree.hosts).lstrip("/")
    hosts_target.parent.mkdir(parents=True)
    hosts_target.write_text("10.9.9.9 current\n", encoding="utf-8")

    real_overlay = restore_module._overlay
    calls = {"count": 0}

    def _flaky(src: Path, dst: Path) -> None:
        if dst == hosts_target and calls["count"] == 0 and "_safety" not in str(src):
            calls["count"] += 1
            dst.write_text("half written\n", encoding="utf-8")
            raise OSError("disk full")
        real_overlay(src, dst)

    monkeypatch.setattr(restore_module, "_overlay", _flaky)
    with pytest.raises(RestoreError, match="rolled back"):
        service.restore("app", target_root=target_root)

    assert hosts_target.read_text(encoding="utf-8") == "10.9.9.9 current\n"
    assert not (target_root / str(host_tree.app).lstrip("/")).exists()


def test_restore_refuses_in_progress_snapshot(make_service) -> None:
    service = make_service()
    store = service.store()
    pending = store.begin_snapshot("app")

    with pytest.raises(RestoreError):
        service.restore("app", pending.name)


def test_failed_safety_copy_restores_nothing(make_service, host_tree, tmp_path: Path, monkeypatch) -> None:
    service = make_service()
    service.backup("app")
    target_root = tmp_path / "restored"
    hosts_target = target_root / str(host_tree.hosts).lstrip("/")
    hosts_target.parent.mkdir(parents=True)
    hosts_target.write_text("10.9.9.9 current\n", encoding="utf-8")
    real_overlay = restore_module._overlay

    def _safety_fails(src: Path, dst: Path) -> None:
        if "_safety" in str(dst):
            raise PermissionError(13, "Permission denied", str(dst))
        real_overlay(src, dst)

    monkeypatch.setattr(restore_module, "_overlay", _safety_fails)
    with pytest.raises(RestoreError, match="nothing restored"):
        service.restore("app", target_root=target_root)

    assert hosts_target.read_text(encoding="utf-8") == "10.9.9.9 current\n"
    assert not (target_root / str(host_tree.app).lstrip("/")).exists()
