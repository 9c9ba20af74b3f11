"""Human-readable rendering of diff results."""
from __future__ import annotations

from typing import Iterable, List

from .records import DiffResult, NetRecord, render_record

SEPARATOR = "================="

GREEN = "\033[0;32m"
RED = "\033[0;31m"
YELLOW = "\033[1;33m"
BOLD = "\033[1m"
RESET = "\033[0m"

PORT_SERVICES = {
    "21": "FTP",
    "22": "SSH",
    "23": "Telnet",
    "25": "SMTP",
    "53": "DNS",
    "80": "HTTP",
    "110": "POP3",
    "143": "IMAP",
    "161": "SNMP",
    "389": "LDAP",
    "443": "HTTPS",
    "636": "LDAPS",
    "3306": "MySQL",
    "5432": "PostgreSQL",
    "8080": "HTTP Alternate",
}


def _paint(text: str, code: str, color: bool) -> str:
    return f"{code}{text}{RESET}" if color else text


def banner(title: str, *, color: bool = False) -> List[str]:
    return [SEPARATOR, _paint(f"=== {title} ===", BOLD, color), SEPARATOR]


def _color_diff_line(line: str, color: bool) -> str:
    if not color or line.startswith(("+++", "---")):
        return line
    if line.startswith("+"):
        return _paint(line, GREEN, color)
    if line.startswith("-"):
        return _paint(line, RED, color)
    if line.startswith("@@"):
        return _paint(line, YELLOW, color)
    return line


def _port_hints(result: DiffResult) -> List[str]:
    ports = sorted(
        {record.local_port for record in [*result.added, *result.removed] if isinstance(record, NetRecord)},
        key=lambda port: (len(port), port),
    )
    hints = [f"  {port}: {PORT_SERVICES[port]}" for port in ports if port in PORT_SERVICES]
    if not hints:
        return []
    return ["Port-service mapping:", *hints]


def format_result(result: DiffResult, *, color: bool = False) -> str:
    lines = banner(result.title, color=color)
    if result.status in {"no_baseline", "no_current"}:
        lines.append(_paint(f"ERROR: {result.message}", RED, color))
        return "\n".join(lines) + "\n"
    if result.baseline is not None:
        lines.append(f"Baseline: {result.baseline}")
    if result.status == "fallback":
        lines.append(_paint(f"WARNING: {result.message}", YELLOW, color))
    if not result.has_differences:
        lines.append(result.message if result.status == "ok" and result.message else "No changes detected")
        return "\n".join(lines) + "\n"

    if result.added:
        lines.append(_paint(f"NEW {result.title}:", BOLD, color))
        lines.extend(_paint(f"  + {render_record(record)}", GREEN, color) for record in result.added)
    if result.removed:
        lines.append(_paint(f"REMOVED {result.title}:", BOLD, color))
        lines.extend(_paint(f"  - {render_record(record)}", RED, color) for record in result.removed)
    if result.changed:
        lines.append(_paint(f"CHANGED {result.title}:", BOLD, color))
        lines.extend(f"  ~ {name}" for name in result.changed)
    if result.target == "ports":
        lines.extend(_port_hints(result))
    if result.raw_unified_diff and (result.status == "fallback" or result.target in {"configs", "files"}):
        lines.append("")
        lines.extend(_color_diff_line(line, color) for line in result.raw_unified_diff.splitlines())
    return "\n".join(lines) + "\n"


def format_results(results: Iterable[DiffResult], color: bool = False) -> str:
    results = list(results)
    text = "\n".join(format_result(result, color=color) for result in results)
    issues = [result.issue for result in results if result.issue is not None]
    if issues:
        lines = ["", _paint("Issues:", BOLD, color)]
        lines.extend(f"  - {issue.describe()}" for issue in issues)
        text += "\n".join(lines) + "\n"
    return text


__all__ = ["PORT_SERVICES", "banner", "format_result", "format_results"]
