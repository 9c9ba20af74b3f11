"""Shared fixtures: a scripted command runner, a ticking clock and sample captures."""

from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Dict, Iterable, Optional, Sequence

import pytest

from snapshot.tools import CommandRunner
from snapshot.types import CommandResult

SS_PORTS = """\
Netid State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process
tcp   LISTEN 0      128          0.0.0.0:22         0.0.0.0:*
tcp   LISTEN 0      80         127.0.0.1:3306       0.0.0.0:*
tcp   LISTEN 0      128             [::]:22            [::]:*
udp   UNCONN 0      0      127.0.0.53%lo:53         0.0.0.0:*
"""

NETSTAT_PORTS = """\
Active Internet connections (only servers)
Proto Recv-Q Send-Q Local Address           Foreign Address         State
tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN
tcp        0      0 127.0.0.1:3306          0.0.0.0:*               LISTEN
tcp6       0      0 :::22                   :::*                    LISTEN
udp        0      0 127.0.0.53:53           0.0.0.0:*
"""

PS_AUX = """\
USER         PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND
root           1  0.0  0.1 167744 11200 ?        Ss   09:00   0:02 /sbin/init splash
root         612  0.0  0.0  15428  7304 ?        Ss   09:00   0:00 /usr/sbin/sshd -D
www-data     901  0.0  0.2  55280  9800 ?        S    09:01   0:00 nginx: worker process
www-data     902  0.0  0.2  55280  9800 ?        S    09:01   0:00 nginx: worker process
"""

SYSTEMCTL_ACTIVE = """\
  UNIT                     LOAD   ACTIVE SUB     DESCRIPTION
  cron.service             loaded active running Regular background program processing daemon
  ssh.service              loaded active running OpenBSD Secure Shell server
● nginx.service            loaded active running A high performance web server

LOAD   = Reflects whether the unit definition was properly loaded.
3 loaded units listed.
"""


class FakeRunner(CommandRunner):
    """Answers commands from a table instead of running them."""

    def __init__(self, outputs: Optional[Dict[str, str]] = None, *, tools: Optional[Iterable[str]] = None) -> None:
        super().__init__(timeout=5, which=lambda name: None)
        self.outputs: Dict[str, object] = dict(outputs or {})
        self.tools = set(tools) if tools is not None else {command.split()[0] for command in self.outputs}
        self.calls = []

    def available(self, name: str) -> bool:
        return name in self.tools

    def run(self, args: Sequence[str], *, timeout=None, allow_nonzero: bool = False) -> CommandResult:
        command = " ".join(args)
        self.calls.append(command)
        if args[0] not in self.tools:
            return CommandResult(ok=False, output="", command=command, error=f"{args[0]} not found", reason="missing_tool")
        value = self.outputs.get(command)
        if isinstance(value, CommandResult):
            return value
        if value is None:
            return CommandResult(ok=False, output="", command=command, error="exit status 1", reason="exit_status")
        return CommandResult(ok=True, output=str(value), command=command)


class TickingClock:
    """Returns a new second on every call so snapshot keys never collide."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture()
def samples() -> SimpleNamespace:
    return SimpleNamespace(
        ss_ports=SS_PORTS,
        netstat_ports=NETSTAT_PORTS,
        ps_aux=PS_AUX,
        systemctl_active=SYSTEMCTL_ACTIVE,
    )


@pytest.fixture()
def fake_runner():
    def _make(outputs: Optional[Dict[str, object]] = None, **kwargs) -> FakeRunner:
        return FakeRunner(outputs, **kwargs)

    return _make


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    monkeypatch.delenv("HOSTSNAP_BACKUP_DIR", raising=False)
    monkeypatch.setenv("HOSTSNAP_HOME", str(tmp_path / "home"))


def default_outputs() -> Dict[str, object]:
    return {
        "ss -tuln": SS_PORTS,
        "ss -tunap": SS_PORTS,
        "ps aux": PS_AUX,
        "systemctl list-units --type=service --state=active --no-pager": SYSTEMCTL_ACTIVE,
        "uname -a": "Linux testhost 6.1.0 x86_64 GNU/Linux",
        "who": "alice    pts/0        2024-03-01 09:00 (10.0.0.2)\n",
        "df -h": "Filesystem Size Used Avail Use% Mounted on\n/dev/sda1 20G 5G 15G 25% /\n",
        "mount": "/dev/sda1 on / type ext4 (rw,relatime)\nproc on /proc type proc (rw)\n",
        "dpkg --get-selections": "bash\t\t\t\t\t\tinstall\nopenssh-server\t\t\t\tinstall\n",
    }


@pytest.fixture()
def host_tree(tmp_path):
    """A small fake host: a config directory, a single file and a missing path."""

    root = tmp_path / "host"
    app = root / "etc" / "app"
    app.mkdir(parents=True)
    (app / "app.conf").write_text("listen = 8080\n", encoding="utf-8")
    (app / "conf.d").mkdir()
    (app / "conf.d" / "extra.conf").write_text("debug = false\n", encoding="utf-8")
    hosts = root / "etc" / "hosts"
    hosts.write_text("127.0.0.1 localhost\n", encoding="utf-8")
    return SimpleNamespace(root=root, app=app, hosts=hosts, missing=root / "etc" / "nope")


@pytest.fixture()
def make_service(tmp_path, clock, host_tree):
    from snapshot.api import SnapshotService

    def _make(outputs: Optional[Dict[str, object]] = None, *, categories=None, runner=None, **settings) -> SnapshotService:
        payload = {
            "store_root": str(tmp_path / "store"),
            "backup": {"exclude_patterns": []},
            "categories": categories
            if categories is not None
            else {
                "app": [str(host_tree.app), str(host_tree.hosts)],
                "all": [str(host_tree.app), str(host_tree.hosts)],
            },
        }
        payload.update(settings)
        return SnapshotService(
            working_dir=tmp_path / "work",
            settings=payload,
            runner=runner or FakeRunner(default_outputs() if outputs is None else outputs),
            clock=clock,
        )

    return _make
