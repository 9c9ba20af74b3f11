"""External command runner and the best-available introspection tools."""
from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import psutil

from .types import CommandResult

LOGGER = logging.getLogger("hostsnap.snapshot.tools")

PLACEHOLDER_PREFIX = "(tool unavailable"

WhichFunc = Callable[[str], Optional[str]]


def placeholder(reason: str) -> str:
    """Single line written in place of output a tool could not produce."""

    return f"{PLACEHOLDER_PREFIX}: {reason})\n"


def is_placeholder(line: str) -> bool:
    return line.strip().startswith(PLACEHOLDER_PREFIX)


class CommandRunner:
    """Run OS commands with a bounded timeout; never raises for tool failures."""

    def __init__(self, *, timeout: float = 30.0, which: WhichFunc = shutil.which) -> None:
        self.timeout = max(1.0, float(timeout))
        self._which = which

    def available(self, name: str) -> bool:
        return self._which(name) is not None

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[float] = None,
        allow_nonzero: bool = False,
    ) -> CommandResult:
        command = " ".join(args)
        executable = self._which(args[0])
        if not executable:
            return CommandResult(ok=False, output="", command=command, error=f"{args[0]} not found", reason="missing_tool")
        try:
            proc = subprocess.run(
                [executable, *args[1:]],
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired:
            LOGGER.warning("command timed out: %s", command)
            return CommandResult(ok=False, output="", command=command, error=f"{args[0]} timeout", reason="timeout")
        except FileNotFoundError:
            return CommandResult(ok=False, output="", command=command, error=f"{args[0]} not found", reason="missing_tool")
        except OSError as exc:
            return CommandResult(ok=False, output="", command=command, error=f"{args[0]} failed: {exc}", reason="exec_error")

        if proc.returncode != 0 and not (allow_nonzero and proc.stdout.strip()):
            error_msg = proc.stderr.strip() or proc.stdout.strip() or f"exit status {proc.returncode}"
            return CommandResult(ok=False, output=proc.stdout, command=command, error=error_msg, reason="exit_status")
        return CommandResult(ok=True, output=proc.stdout, command=command)


def _unavailable(command: str, detail: str = "no supported tool found") -> CommandResult:
    return CommandResult(ok=False, output="", command=command, error=detail, reason="missing_tool")


def _psutil_failure(command: str, exc: Exception) -> CommandResult:
    return CommandResult(ok=False, output="", command=command, error=f"{command} failed: {exc}", reason="psutil_error")


# ----------------------------------------------------------------------
# network


class NetworkInspector:
    tool = "none"

    def listening(self) -> CommandResult:
        return _unavailable("listening sockets")

    def connections(self) -> CommandResult:
        return _unavailable("network connections")

    def statistics(self) -> CommandResult:
        return _unavailable("socket statistics")


class SsInspector(NetworkInspector):
    tool = "ss"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def listening(self) -> CommandResult:
        return self.runner.run(["ss", "-tuln"])

    def connections(self) -> CommandResult:
        return self.runner.run(["ss", "-tunap"])

    def statistics(self) -> CommandResult:
        return self.runner.run(["ss", "-s"])


class NetstatInspector(NetworkInspector):
    tool = "netstat"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def listening(self) -> CommandResult:
        return self.runner.run(["netstat", "-tuln"])

    def connections(self) -> CommandResult:
        return self.runner.run(["netstat", "-tunap"])


_PSUTIL_STATES = {
    "ESTABLISHED": "ESTAB",
    "SYN_SENT": "SYN-SENT",
    "SYN_RECV": "SYN-RECV",
    "FIN_WAIT1": "FIN-WAIT-1",
    "FIN_WAIT2": "FIN-WAIT-2",
    "TIME_WAIT": "TIME-WAIT",
    "CLOSE": "UNCONN",
    "CLOSE_WAIT": "CLOSE-WAIT",
    "LAST_ACK": "LAST-ACK",
    "LISTEN": "LISTEN",
    "CLOSING": "CLOSING",
    "NONE": "UNCONN",
}


def _format_endpoint(addr: object, family: int) -> str:
    if not addr:
        return "[::]:*" if family == socket.AF_INET6 else "0.0.0.0:*"
    ip, port = addr  # type: ignore[misc]
    host = f"[{ip}]" if family == socket.AF_INET6 else ip
    return f"{host}:{port}"


class PsutilNetworkInspector(NetworkInspector):
    """Renders ``psutil.net_connections`` in the ``ss`` column layout."""

    tool = "psutil"

    def _render(self, *, listening_only: bool) -> CommandResult:
        command = "psutil.net_connections"
        try:
            conns = psutil.net_connections(kind="inet")
        except (psutil.Error, OSError) as exc:
            return _psutil_failure(command, exc)
        lines = ["Netid State      Recv-Q Send-Q Local Address:Port Peer Address:Port Process"]
        rows = []
        for conn in conns:
            proto = "tcp" if conn.type == socket.SOCK_STREAM else "udp"
            state = _PSUTIL_STATES.get(conn.status, conn.status or "UNCONN")
            if listening_only and state not in {"LISTEN", "UNCONN"}:
                continue
            if listening_only and conn.raddr:
                continue
            process = f"pid={conn.pid}" if conn.pid else ""
            rows.append(
                f"{proto:<5} {state:<10} 0      0      "
                f"{_format_endpoint(conn.laddr, conn.family)} {_format_endpoint(conn.raddr, conn.family)} {process}".rstrip()
            )
        lines.extend(sorted(rows))
        return CommandResult(ok=True, output="\n".join(lines) + "\n", command=command)

    def listening(self) -> CommandResult:
        return self._render(listening_only=True)

    def connections(self) -> CommandResult:
        return self._render(listening_only=False)


# ----------------------------------------------------------------------
# processes


class ProcessLister:
    tool = "none"

    def list_processes(self) -> CommandResult:
        return _unavailable("process list")


class PsProcessLister(ProcessLister):
    tool = "ps"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def list_processes(self) -> CommandResult:
        result = self.runner.run(["ps", "aux"])
        if result.ok or result.reason != "exit_status":
            return result
        # BusyBox ps rejects "aux" on some builds
        return self.runner.run(["ps"])


class PsutilProcessLister(ProcessLister):
    """Renders ``psutil.process_iter`` in the ``ps aux`` column layout."""

    tool = "psutil"

    def list_processes(self) -> CommandResult:
        command = "psutil.process_iter"
        lines = ["USER         PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND"]
        attrs = ["pid", "username", "memory_percent", "memory_info", "terminal", "status", "create_time", "cmdline", "name"]
        try:
            for proc in psutil.process_iter(attrs):
                info = proc.info
                mem = info.get("memory_info")
                cmdline = info.get("cmdline") or []
                name = " ".join(cmdline) if cmdline else f"[{info.get('name') or '?'}]"
                started = info.get("create_time")
                start = datetime.fromtimestamp(started).strftime("%H:%M") if started else "?"
                tty = (info.get("terminal") or "?").replace("/dev/", "")
                lines.append(
                    f"{(info.get('username') or '?'):<10} {info['pid']:>5}  0.0 {(info.get('memory_percent') or 0.0):4.1f} "
                    f"{(mem.vms // 1024) if mem else 0:>6} {(mem.rss // 1024) if mem else 0:>5} {tty:<8} "
                    f"{(info.get('status') or '?')[:1].upper():<4} {start:>5}   0:00 {name}"
                )
        except (psutil.Error, OSError) as exc:
            return _psutil_failure(command, exc)
        return CommandResult(ok=True, output="\n".join(lines) + "\n", command=command)


# ----------------------------------------------------------------------
# services


class ServiceInspector:
    tool = "none"

    def active(self) -> CommandResult:
        return _unavailable("active services")

    def status(self) -> CommandResult:
        return _unavailable("service status")

    def failed(self) -> CommandResult:
        return _unavailable("failed services")

    def dependencies(self) -> CommandResult:
        return _unavailable("service dependencies")


class SystemctlServiceInspector(ServiceInspector):
    tool = "systemctl"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def active(self) -> CommandResult:
        return self.runner.run(["systemctl", "list-units", "--type=service", "--state=active", "--no-pager"])

    def status(self) -> CommandResult:
        return self.runner.run(["systemctl", "list-unit-files", "--type=service", "--no-pager"])

    def failed(self) -> CommandResult:
        return self.runner.run(["systemctl", "list-units", "--failed", "--no-pager"])

    def dependencies(self) -> CommandResult:
        return self.runner.run(["systemctl", "list-dependencies", "--no-pager"])


class SysvServiceInspector(ServiceInspector):
    tool = "service"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def active(self) -> CommandResult:
        return self.runner.run(["service", "--status-all"], allow_nonzero=True)

    def status(self) -> CommandResult:
        return self.active()


# ----------------------------------------------------------------------
# packages, users, mounts


class PackageLister:
    tool = "none"

    def list_packages(self) -> CommandResult:
        return _unavailable("package list", "no supported package manager found")


class CommandPackageLister(PackageLister):
    def __init__(self, runner: CommandRunner, tool: str, args: Sequence[str], *, sort_output: bool = False) -> None:
        self.runner = runner
        self.tool = tool
        self.args = list(args)
        self.sort_output = sort_output

    def list_packages(self) -> CommandResult:
        result = self.runner.run(self.args)
        if result.ok and self.sort_output:
            lines = sorted(line for line in result.output.splitlines() if line.strip())
            result.output = "\n".join(lines) + ("\n" if lines else "")
        return result


PACKAGE_MANAGERS: List[tuple] = [
    ("dpkg", ["dpkg", "--get-selections"], False),
    ("rpm", ["rpm", "-qa"], True),
    ("apk", ["apk", "info"], True),
    ("pacman", ["pacman", "-Q"], False),
    ("nix-env", ["nix-env", "-q"], False),
]


class UserLister:
    tool = "none"

    def logged_users(self) -> CommandResult:
        return _unavailable("logged users")


class WhoUserLister(UserLister):
    tool = "who"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def logged_users(self) -> CommandResult:
        return self.runner.run(["who"])


class PsutilUserLister(UserLister):
    tool = "psutil"

    def logged_users(self) -> CommandResult:
        command = "psutil.users"
        try:
            users = psutil.users()
        except (psutil.Error, OSError) as exc:
            return _psutil_failure(command, exc)
        lines = []
        for user in users:
            started = datetime.fromtimestamp(user.started).strftime("%Y-%m-%d %H:%M")
            host = f" ({user.host})" if user.host else ""
            lines.append(f"{user.name:<8} {user.terminal or '?':<12} {started}{host}")
        return CommandResult(ok=True, output="\n".join(lines) + ("\n" if lines else ""), command=command)


class MountLister:
    tool = "none"

    def mounts(self) -> CommandResult:
        return _unavailable("mounts")


class MountCommandLister(MountLister):
    tool = "mount"

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def mounts(self) -> CommandResult:
        return self.runner.run(["mount"])


class PsutilMountLister(MountLister):
    """Renders ``psutil.disk_partitions`` in the ``mount`` layout."""

    tool = "psutil"

    def mounts(self) -> CommandResult:
        command = "psutil.disk_partitions"
        try:
            parts = psutil.disk_partitions(all=True)
        except (psutil.Error, OSError) as exc:
            return _psutil_failure(command, exc)
        lines = [f"{part.device or 'none'} on {part.mountpoint} type {part.fstype} ({part.opts})" for part in parts]
        return CommandResult(ok=True, output="\n".join(lines) + ("\n" if lines else ""), command=command)


# ----------------------------------------------------------------------
# files


class FileLister:
    """Recursive file search by exact base name; in-process walk."""

    tool = "walk"

    def find(self, root: Path, name: str) -> List[Path]:
        matches: List[Path] = []
        for dirpath, _dirnames, filenames in os.walk(root):
            if name in filenames:
                matches.append(Path(dirpath) / name)
        return sorted(matches)


class CommandFileLister(FileLister):
    def __init__(self, runner: CommandRunner, tool: str) -> None:
        self.runner = runner
        self.tool = tool

    def _args(self, root: Path, name: str) -> List[str]:
        if self.tool == "find":
            return ["find", str(root), "-type", "f", "-name", name]
        return [self.tool, "--type", "f", "--hidden", "--no-ignore", "--absolute-path", "--glob", name, str(root)]

    def find(self, root: Path, name: str) -> List[Path]:
        result = self.runner.run(self._args(root, name), allow_nonzero=True)
        if not result.ok:
            LOGGER.warning("%s failed (%s), walking %s in-process", self.tool, result.error, root)
            return super().find(root, name)
        return sorted(Path(line) for line in result.output.splitlines() if line.strip())


# ----------------------------------------------------------------------


@dataclass(slots=True)
class Toolset:
    runner: CommandRunner
    network: NetworkInspector
    processes: ProcessLister
    services: ServiceInspector
    packages: PackageLister
    users: UserLister
    mounts: MountLister
    files: FileLister

    def describe(self) -> Dict[str, str]:
        return {
            "network": self.network.tool,
            "processes": self.processes.tool,
            "services": self.services.tool,
            "packages": self.packages.tool,
            "users": self.users.tool,
            "mounts": self.mounts.tool,
            "files": self.files.tool,
        }


def resolve_toolset(runner: CommandRunner) -> Toolset:
    """Pick one implementation per capability, in priority order, once."""

    if runner.available("ss"):
        network: NetworkInspector = SsInspector(runner)
    elif runner.available("netstat"):
        network = NetstatInspector(runner)
    else:
        network = PsutilNetworkInspector()

    processes: ProcessLister = PsProcessLister(runner) if runner.available("ps") else PsutilProcessLister()

    if runner.available("systemctl"):
        services: ServiceInspector = SystemctlServiceInspector(runner)
    elif runner.available("service"):
        services = SysvServiceInspector(runner)
    else:
        services = ServiceInspector()

    packages = PackageLister()
    for tool, args, sort_output in PACKAGE_MANAGERS:
        if runner.available(tool):
            packages = CommandPackageLister(runner, tool, args, sort_output=sort_output)
            break

    users: UserLister = WhoUserLister(runner) if runner.available("who") else PsutilUserLister()
    mounts: MountLister = MountCommandLister(runner) if runner.available("mount") else PsutilMountLister()

    files = FileLister()
    for tool in ("fd", "fdfind", "find"):
        if runner.available(tool):
            files = CommandFileLister(runner, tool)
            break

    toolset = Toolset(
        runner=runner,
        network=network,
        processes=processes,
        services=services,
        packages=packages,
        users=users,
        mounts=mounts,
        files=files,
    )
    LOGGER.debug("resolved toolset %s", toolset.describe())
    return toolset


__all__ = [
    "CommandFileLister",
    "CommandPackageLister",
    "CommandRunner",
    "FileLister",
    "MountLister",
    "NetstatInspector",
    "NetworkInspector",
    "PLACEHOLDER_PREFIX",
    "PackageLister",
    "ProcessLister",
    "PsutilNetworkInspector",
    "ServiceInspector",
    "SsInspector",
    "Toolset",
    "UserLister",
    "is_placeholder",
    "placeholder",
    "resolve_toolset",
]
