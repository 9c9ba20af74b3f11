"""Configured source paths per category.

The lists are policy, not part of the snapshot engine: the engine only relies
on getting plain absolute path strings, some of which may not exist.
Settings can override a built-in category or define new ones under
``categories``.
"""
from __future__ import annotations

import glob
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

_USER_PROFILE_FILES = (".bashrc", ".bash_profile", ".profile", ".zshrc")

BUILTIN_SOURCES: Dict[str, List[str]] = {
    "all": ["/etc", "/var/spool/cron", "/var/log/audit", "/root/.ssh"],
    "security": [
        "/etc/passwd",
        "/etc/shadow",
        "/etc/group",
        "/etc/gshadow",
        "/etc/security",
        "/etc/pam.d",
        "/etc/ssh",
        "/root/.ssh",
        "/etc/sudoers",
        "/etc/sudoers.d",
        "/etc/selinux",
        "/etc/apparmor.d",
        "/etc/audit",
        "/etc/login.defs",
        "/etc/profile.d",
        "/etc/profile",
        "/etc/bash.bashrc",
        "/etc/pki",
        "/etc/ssl",
    ],
    "audit": [
        "/var/log/audit",
        "/var/log/auth.log",
        "/var/log/secure",
        "/var/log/messages",
        "/var/log/syslog",
        "/var/log/wtmp",
        "/var/log/btmp",
        "/var/log/lastlog",
    ],
    "network": [
        "/etc/network",
        "/etc/netplan",
        "/etc/hosts",
        "/etc/resolv.conf",
        "/etc/hostname",
        "/etc/networks",
        "/etc/NetworkManager",
    ],
    "firewall": ["/etc/iptables", "/etc/nftables.conf", "/etc/ufw", "/etc/firewalld"],
    "services": ["/etc/systemd", "/etc/init.d", "/etc/init", "/etc/cron*", "/etc/logrotate.d"],
    "database": ["/etc/mysql", "/etc/postgresql"],
    "web": ["/etc/apache2", "/etc/nginx", "/etc/php", "/etc/letsencrypt"],
}


def _home_sources(home_root: Path) -> List[str]:
    paths: List[str] = []
    if not home_root.is_dir():
        return paths
    for user_home in sorted(home_root.iterdir()):
        if not user_home.is_dir():
            continue
        ssh_dir = user_home / ".ssh"
        if ssh_dir.is_dir():
            paths.append(str(ssh_dir))
        for name in _USER_PROFILE_FILES:
            candidate = user_home / name
            if candidate.is_file():
                paths.append(str(candidate))
    return paths


def _expand(entries: List[str]) -> List[str]:
    expanded: List[str] = []
    for entry in entries:
        if glob.has_magic(entry):
            matches = sorted(glob.glob(entry))
            expanded.extend(matches if matches else [entry])
        else:
            expanded.append(entry)
    return expanded


def resolve_sources(
    category: str,
    settings: Optional[Mapping[str, Any]] = None,
    *,
    home_root: Path = Path("/home"),
) -> List[str]:
    """Return the source paths to mirror for *category*.

    Unknown categories fall back to ``/etc/<name>``, the matching systemd
    unit and ``/etc/default/<name>``.
    """

    configured = (settings or {}).get("categories")
    if isinstance(configured, Mapping) and isinstance(configured.get(category), list):
        entries = [str(item) for item in configured[category] if str(item).strip()]
    elif category in BUILTIN_SOURCES:
        entries = list(BUILTIN_SOURCES[category])
        if category == "all":
            entries.extend(_home_sources(home_root))
    else:
        entries = [
            f"/etc/{category}",
            f"/etc/systemd/system/{category}.service",
            f"/etc/default/{category}",
        ]
    seen = set()
    ordered: List[str] = []
    for entry in _expand(entries):
        if entry in seen:
            continue
        seen.add(entry)
        ordered.append(entry)
    return ordered


__all__ = ["BUILTIN_SOURCES", "resolve_sources"]
