from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from snapshot.capture import SYSTEM_INFO_DIR, SystemCapturer
from snapshot.tools import (
    CommandRunner,
    PsutilNetworkInspector,
    PsutilUserLister,
    ServiceInspector,
    is_placeholder,
    resolve_toolset,
)
from snapshot.types import IssueKind


def test_runner_reports_missing_tool_without_raising() -> None:
    runner = CommandRunner(which=lambda name: None)
    result = runner.run(["ss", "-tuln"])
    assert not result.ok
    assert result.reason == "missing_tool"
    assert result.command == "ss -tuln"


def test_runner_maps_timeout(monkeypatch) -> None:
    def _timeout(*args, **kwargs):
        raise subprocess.TimeoutExpired(cmd="sleep", timeout=1)

    monkeypatch.setattr(subprocess, "run", _timeout)
    runner = CommandRunner(timeout=1, which=lambda name: f"/usr/bin/{name}")
    result = runner.run(["sleep", "10"])
    assert not result.ok
    assert result.reason == "timeout"


def test_runner_maps_nonzero_exit(monkeypatch) -> None:
    def _fail(*args, **kwargs):
        return subprocess.CompletedProcess(args=args, returncode=3, stdout="", stderr="boom")

    monkeypatch.setattr(subprocess, "run", _fail)
    runner = CommandRunner(which=lambda name: f"/usr/bin/{name}")
    result = runner.run(["iptables-save"])
    assert result.reason == "exit_status"
    assert result.error == "boom"


def test_toolset_priority_prefers_ss_and_systemctl(fake_runner) -> None:
    runner = fake_runner(tools={"ss", "netstat", "ps", "systemctl", "service", "rpm", "dpkg", "who", "mount", "find"})
    toolset = resolve_toolset(runner)

    assert toolset.describe() == {
        "network": "ss",
        "processes": "ps",
        "services": "systemctl",
        "packages": "dpkg",
        "users": "who",
        "mounts": "mount",
        "files": "find",
    }


def test_toolset_falls_back_when_tools_are_missing(fake_runner) -> None:
    toolset = resolve_toolset(fake_runner(tools={"netstat", "service"}))
    assert toolset.network.tool == "netstat"
    assert toolset.services.tool == "service"

    bare = resolve_toolset(fake_runner(tools=set()))
    assert isinstance(bare.network, PsutilNetworkInspector)
    assert isinstance(bare.users, PsutilUserLister)
    assert type(bare.services) is ServiceInspector
    assert bare.packages.tool == "none"
    assert bare.files.tool == "walk"


def test_capture_writes_output_and_placeholders(tmp_path: Path, fake_runner, samples, clock) -> None:
    runner = fake_runner(
        {
            "ss -tuln": samples.ss_ports,
            "ps aux": samples.ps_aux,
            "systemctl list-units --type=service --state=active --no-pager": samples.systemctl_active,
            "uname -a": "Linux host 6.1.0 x86_64 GNU/Linux",
        },
        tools={"ss", "ps", "systemctl", "uname"},
    )
    capturer = SystemCapturer(resolve_toolset(runner), clock=clock)
    dest = tmp_path / SYSTEM_INFO_DIR

    result = capturer.capture("services", dest)

    assert result.files == SystemCapturer.files_for("services")
    assert "failed_services.txt" in result.files
    assert "ip_addr.txt" not in result.files
    assert (dest / "listening_ports.txt").read_text(encoding="utf-8") == samples.ss_ports
    assert (dest / "kernel_info.txt").read_text(encoding="utf-8").endswith("GNU/Linux\n")

    connections = (dest / "network_connections.txt").read_text(encoding="utf-8").splitlines()
    assert len(connections) == 1 and is_placeholder(connections[0])
    degraded = {issue.subject for issue in result.issues}
    assert "network_connections.txt" in degraded
    assert "listening_ports.txt" not in degraded
    assert all(issue.kind is IssueKind.TOOL_UNAVAILABLE for issue in result.issues)
    assert result.tools["network"] == "ss"


def test_all_category_includes_every_extra() -> None:
    files = SystemCapturer.files_for("all")
    for name in ("ip_addr.txt", "iptables.rules", "service_dependencies.txt", "packages.list"):
        assert name in files
    assert SystemCapturer.files_for("database") == SystemCapturer.base_files()


def test_network_extras_use_fallback_tools(tmp_path: Path, fake_runner, clock) -> None:
    runner = fake_runner({"ifconfig -a": "eth0: flags=4163<UP>\n", "arp -an": "? (10.0.0.1) at aa:bb\n"})
    capturer = SystemCapturer(resolve_toolset(runner), clock=clock)

    path, issue = capturer.write_file("ip_addr.txt", tmp_path)
    assert issue is None
    assert path.read_text(encoding="utf-8").startswith("eth0")
    _path, issue = capturer.write_file("arp_cache.txt", tmp_path)
    assert issue is None


def test_recent_logins_retries_without_count(tmp_path: Path, fake_runner, clock) -> None:
    lines = "".join(f"user{i} pts/0 host Mon Jan 1 00:0{i % 10}\n" for i in range(5))
    runner = fake_runner({"last": lines}, tools={"last"})
    capturer = SystemCapturer(resolve_toolset(runner), recent_logins=3, clock=clock)

    path = capturer.capture_target("recent_logins.txt", tmp_path)

    assert path.read_text(encoding="utf-8").splitlines() == lines.splitlines()[:3]
    assert runner.calls == ["last -n 3", "last"]


def test_unknown_capture_file_is_rejected(tmp_path: Path, fake_runner) -> None:
    capturer = SystemCapturer(resolve_toolset(fake_runner()))
    with pytest.raises(ValueError, match="nope.txt"):
        capturer.write_file("nope.txt", tmp_path)
