from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import NETSTAT_PORTS, default_outputs
from drift.api import DriftService
from drift.engine import ALL_TARGETS, InvalidTargetError
from drift.records import NameCount, NetRecord
from snapshot.capture import SystemCapturer
from snapshot.errors import InvalidCategoryError
from snapshot.types import IssueKind

CURRENT_NETSTAT = """\
Active Internet connections (only servers)
Proto Recv-Q Send-Q Local Address           Foreign Address         State
tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN
tcp        0      0 0.0.0.0:8080            0.0.0.0:*               LISTEN
tcp6       0      0 :::22                   :::*                    LISTEN
udp        0      0 127.0.0.53:53           0.0.0.0:*
"""


def _baseline(make_service, category: str = "all"):
    service = make_service()
    service.backup(category)
    return service


def test_ports_drift_across_tools(make_service) -> None:
    _baseline(make_service)
    current = make_service({"netstat -tuln": CURRENT_NETSTAT})

    [result] = DriftService(current).diff("ports")

    assert result.status == "ok"
    assert result.added == [NetRecord("tcp", "0.0.0.0", "8080", "LISTEN")]
    assert result.removed == [NetRecord("tcp", "127.0.0.1", "3306", "LISTEN")]
    assert result.format == "ss -> netstat"
    assert result.baseline is not None and result.baseline.name == "listening_ports.txt"


def test_identical_state_reports_no_changes(make_service) -> None:
    _baseline(make_service)
    current = make_service({"netstat -tuln": NETSTAT_PORTS})

    [result] = DriftService(current).diff("ports")

    assert result.added == [] and result.removed == []
    assert not result.has_differences
    assert result.message == "No changes detected"


def test_added_and_removed_are_set_differences(make_service) -> None:
    _baseline(make_service)
    outputs = default_outputs()
    outputs["ps aux"] = outputs["ps aux"].replace("/usr/sbin/sshd -D", "/usr/bin/redis-server *:6379") + (
        "www-data     903  0.0  0.2  55280  9800 ?        S    09:01   0:00 nginx: worker process\n"
    )
    current = make_service(outputs)

    [result] = DriftService(current).diff("processes")

    baseline_names = {NameCount("/sbin/init"), NameCount("/usr/sbin/sshd"), NameCount("nginx:", 2)}
    current_names = {NameCount("/sbin/init"), NameCount("/usr/bin/redis-server"), NameCount("nginx:", 3)}
    assert set(result.added) == current_names - baseline_names
    assert set(result.removed) == baseline_names - current_names
    assert not set(result.added) & set(result.removed)
    assert result.changed == ["nginx:"]


def test_missing_baseline_suggests_backup(make_service) -> None:
    service = make_service()

    [result] = DriftService(service).diff("services", category="web")

    assert result.status == "no_baseline"
    assert not result.completed
    assert "hostsnap backup web" in result.message
    assert result.issue is not None and result.issue.kind is IssueKind.NO_BASELINE


def test_baseline_falls_back_to_all_category(make_service) -> None:
    _baseline(make_service, "all")
    current = make_service()

    [result] = DriftService(current).diff("services", category="firewall")

    assert result.completed
    assert "/all/" in str(result.baseline)
    assert result.added == [] and result.removed == []


def test_unparseable_capture_uses_raw_fallback(make_service) -> None:
    _baseline(make_service)
    current = make_service({"ss -tuln": "something entirely different\nsecond line\n"})

    [result] = DriftService(current).diff("ports")

    assert result.status == "fallback"
    assert result.completed
    assert "second line" in result.added
    assert "Could not normalize current" in result.message
    assert result.raw_unified_diff


def test_configs_and_files_targets(make_service, host_tree) -> None:
    _baseline(make_service)
    host_tree.hosts.write_text("127.0.0.1 localhost\n10.0.0.7 added\n", encoding="utf-8")
    gone = host_tree.root / "etc" / "gone.conf"
    current = make_service(diff={"config_files": [str(host_tree.hosts), str(gone)]})

    configs = DriftService(current).diff("configs")
    assert [result.status for result in configs] == ["ok", "no_current"]
    assert configs[0].added == ["10.0.0.7 added"]
    assert configs[0].removed == []
    assert "+10.0.0.7 added" in configs[0].raw_unified_diff

    [nested] = DriftService(current).diff("files", files=[str(host_tree.app / "conf.d" / "extra.conf")])
    assert nested.status == "ok"
    assert nested.baseline is not None and nested.baseline.parts[-3:] == ("app", "conf.d", "extra.conf")
    assert not nested.has_differences


def test_all_target_runs_every_comparison(make_service, tmp_path: Path) -> None:
    _baseline(make_service)
    current = make_service(diff={"config_files": []})

    drift = DriftService(current)
    results = drift.diff("all")

    assert [result.target for result in results] == [name for name in ALL_TARGETS if name != "configs"]
    log = (tmp_path / "work" / "logs" / "drift.jsonl").read_text(encoding="utf-8").splitlines()
    assert {json.loads(line)["target"] for line in log} >= {"ports", "packages"}


def test_invalid_targets_and_categories(make_service) -> None:
    drift = DriftService(make_service())
    with pytest.raises(InvalidTargetError):
        drift.diff("kernel")
    with pytest.raises(InvalidTargetError):
        drift.diff("files")
    with pytest.raises(InvalidCategoryError):
        drift.diff("ports", category="../x")


def test_mirrored_absolute_symlink_is_compared_as_a_link(make_service, host_tree, tmp_path: Path) -> None:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    (run_dir / "resolv.conf").write_text("nameserver 10.0.0.1\n", encoding="utf-8")
    (run_dir / "resolv.alt").write_text("nameserver 10.0.0.2\n", encoding="utf-8")
    live = host_tree.app / "resolv.conf"
    live.symlink_to(run_dir / "resolv.conf")
    _baseline(make_service)
    (run_dir / "resolv.conf").write_text("nameserver 192.0.2.66\n", encoding="utf-8")
    drift = DriftService(make_service())

    [same_link] = drift.diff("files", files=[str(live)])

    store = (tmp_path / "store").resolve()
    assert same_link.baseline is not None and same_link.baseline.is_symlink()
    assert str(same_link.baseline).startswith(str(store))
    assert same_link.format == "symlink"
    assert "not compared" in same_link.message
    assert "not compared" in drift.render([same_link], color=False)

    live.unlink()
    live.symlink_to(run_dir / "resolv.alt")
    [moved] = drift.diff("files", files=[str(live)])

    assert moved.added == [f"{live} -> {run_dir / 'resolv.alt'}"]
    assert moved.removed == [f"{live} -> {run_dir / 'resolv.conf'}"]


def test_all_target_compares_against_one_pinned_snapshot(make_service, monkeypatch) -> None:
    _baseline(make_service)
    current = make_service(diff={"config_files": []})
    real_capture_target = SystemCapturer.capture_target
    calls = []

    def _capture_then_backup(self, logical_name, dest_dir):
        calls.append(logical_name)
        if len(calls) == 2:
            make_service().backup("all")
        return real_capture_target(self, logical_name, dest_dir)

    monkeypatch.setattr(SystemCapturer, "capture_target", _capture_then_backup)
    results = DriftService(current).diff("all")

    keys = {result.baseline.parent.parent.name for result in results if result.baseline is not None}
    assert len(keys) == 1
    assert len(list((current.store().root / "all").glob("2024*"))) == 2


def test_unreadable_baseline_is_reported_per_target(make_service, monkeypatch) -> None:
    _baseline(make_service)
    current = make_service(diff={"config_files": []})
    real_read_text = Path.read_text

    def _guarded(self, *args, **kwargs):
        if self.name == "listening_ports.txt" and "store" in self.parts:
            raise PermissionError(13, "Permission denied", str(self))
        return real_read_text(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", _guarded)
    results = {result.target: result for result in DriftService(current).diff("all")}

    assert results["ports"].status == "no_baseline"
    assert "could not be read" in results["ports"].message
    assert results["processes"].status == "ok"
    assert results["packages"].completed
