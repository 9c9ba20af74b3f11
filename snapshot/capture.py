"""Capture the OS-state battery written to ``system_info/``."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .tools import Toolset, placeholder
from .types import CaptureResult, CommandResult, IssueKind, SnapshotIssue

LOGGER = logging.getLogger("hostsnap.snapshot.capture")

Producer = Callable[[], CommandResult]

SYSTEM_INFO_DIR = "system_info"

# logical names the drift engine compares
TARGET_FILES: Dict[str, str] = {
    "ports": "listening_ports.txt",
    "connections": "network_connections.txt",
    "processes": "processes.txt",
    "services": "active_services.txt",
    "users": "logged_users.txt",
    "mounts": "mounts.txt",
    "packages": "packages.list",
}

CATEGORY_EXTRAS: Dict[str, List[str]] = {
    "network": ["ip_addr.txt", "ip_route.txt", "ip_rules.txt", "arp_cache.txt", "socket_statistics.txt"],
    "firewall": ["iptables.rules", "ip6tables.rules", "nftables.rules", "ufw_status.txt"],
    "services": ["failed_services.txt", "service_dependencies.txt"],
}


def _first_ok(first: Producer, *fallbacks: Producer) -> CommandResult:
    result = first()
    for producer in fallbacks:
        if result.ok:
            break
        result = producer()
    return result


class SystemCapturer:
    """Writes captured command output, or a placeholder line, per logical file."""

    def __init__(
        self,
        toolset: Toolset,
        *,
        recent_logins: int = 20,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.toolset = toolset
        self.recent_logins = max(1, int(recent_logins))
        self._clock = clock
        self._producers = self._build_producers()

    # ------------------------------------------------------------------
    def _recent_logins(self) -> CommandResult:
        run = self.toolset.runner.run
        result = run(["last", "-n", str(self.recent_logins)])
        if result.ok or result.reason != "exit_status":
            return result
        # BusyBox last has no -n
        fallback = run(["last"])
        if fallback.ok:
            lines = fallback.output.splitlines()[: self.recent_logins]
            fallback.output = "\n".join(lines) + ("\n" if lines else "")
        return fallback

    def _snapshot_time(self) -> CommandResult:
        now = self._clock().astimezone()
        return CommandResult(ok=True, output=now.strftime("%a %b %d %H:%M:%S %Z %Y") + "\n", command="clock")

    def _build_producers(self) -> Dict[str, Producer]:
        tools = self.toolset
        run = tools.runner.run
        return {
            "kernel_info.txt": lambda: run(["uname", "-a"]),
            "disk_usage.txt": lambda: run(["df", "-h"]),
            "mounts.txt": tools.mounts.mounts,
            "network_connections.txt": tools.network.connections,
            "listening_ports.txt": tools.network.listening,
            "processes.txt": tools.processes.list_processes,
            "logged_users.txt": tools.users.logged_users,
            "recent_logins.txt": self._recent_logins,
            "active_services.txt": tools.services.active,
            "service_status.txt": tools.services.status,
            "packages.list": tools.packages.list_packages,
            "snapshot_time.txt": self._snapshot_time,
            "ip_addr.txt": lambda: _first_ok(lambda: run(["ip", "addr", "show"]), lambda: run(["ifconfig", "-a"])),
            "ip_route.txt": lambda: _first_ok(lambda: run(["ip", "route", "show"]), lambda: run(["netstat", "-rn"])),
            "ip_rules.txt": lambda: run(["ip", "rule", "show"]),
            "arp_cache.txt": lambda: _first_ok(lambda: run(["ip", "neigh", "show"]), lambda: run(["arp", "-an"])),
            "socket_statistics.txt": tools.network.statistics,
            "iptables.rules": lambda: run(["iptables-save"]),
            "ip6tables.rules": lambda: run(["ip6tables-save"]),
            "nftables.rules": lambda: run(["nft", "list", "ruleset"]),
            "ufw_status.txt": lambda: run(["ufw", "status", "verbose"]),
            "failed_services.txt": tools.services.failed,
            "service_dependencies.txt": tools.services.dependencies,
        }

    # ------------------------------------------------------------------
    @staticmethod
    def base_files() -> List[str]:
        return [
            "kernel_info.txt",
            "disk_usage.txt",
            "mounts.txt",
            "network_connections.txt",
            "listening_ports.txt",
            "processes.txt",
            "logged_users.txt",
            "recent_logins.txt",
            "active_services.txt",
            "service_status.txt",
            "packages.list",
            "snapshot_time.txt",
        ]

    @classmethod
    def files_for(cls, category: str) -> List[str]:
        files = cls.base_files()
        if category == "all":
            for extras in CATEGORY_EXTRAS.values():
                files.extend(extras)
        else:
            files.extend(CATEGORY_EXTRAS.get(category, []))
        return files

    def write_file(self, name: str, dest_dir: Path) -> tuple[Path, Optional[SnapshotIssue]]:
        try:
            producer = self._producers[name]
        except KeyError as exc:
            raise ValueError(f"Unknown capture file: {name}") from exc
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / name
        result = producer()
        issue: Optional[SnapshotIssue] = None
        if result.ok:
            text = result.output if result.output.endswith("\n") or not result.output else result.output + "\n"
        else:
            reason = f"{result.command}: {result.error or result.reason}"
            text = placeholder(reason)
            issue = SnapshotIssue(IssueKind.TOOL_UNAVAILABLE, name, reason)
            LOGGER.warning("capture of %s degraded: %s", name, reason)
        path.write_text(text, encoding="utf-8")
        return path, issue

    def capture(self, category: str, dest_dir: Path) -> CaptureResult:
        """Write the base battery plus the category extras into *dest_dir*."""

        dest_dir = Path(dest_dir)
        result = CaptureResult(directory=dest_dir, tools=self.toolset.describe())
        for name in self.files_for(category):
            _path, issue = self.write_file(name, dest_dir)
            result.files.append(name)
            if issue is not None:
                result.issues.append(issue)
        LOGGER.info("captured %d system files for %s (%d degraded)", len(result.files), category, len(result.issues))
        return result

    def capture_target(self, logical_name: str, dest_dir: Path) -> Path:
        """Capture one logical file exactly the way a backup would."""

        path, _issue = self.write_file(logical_name, Path(dest_dir))
        return path


__all__ = ["CATEGORY_EXTRAS", "SYSTEM_INFO_DIR", "SystemCapturer", "TARGET_FILES"]
