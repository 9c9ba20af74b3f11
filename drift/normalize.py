"""Turn captured command output into canonical, tool-independent records.

Two network tools are understood. ``ss`` prints ``Netid State Recv-Q Send-Q
Local Peer`` while ``netstat`` prints ``Proto Recv-Q Send-Q Local Foreign
State``, so the local endpoint and the state sit in different columns. The
layout is detected from the header row, or from the first data row when the
header is missing, and dispatched to one parser per layout.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from snapshot.tools import is_placeholder

from .records import NameCount, NetRecord, Record, render_record


class ToolFormat(str, Enum):
    SS = "ss"
    NETSTAT = "netstat"
    UNKNOWN = "unknown"


class ProcessFormat(str, Enum):
    PROCPS = "procps"
    BUSYBOX = "busybox"
    UNKNOWN = "unknown"


NET_PROTOCOLS = {"tcp", "tcp6", "tcp4", "udp", "udp6", "udp4"}

# netstat state names onto the ss vocabulary
STATE_NAMES: Dict[str, str] = {
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
    "LISTENING": "LISTEN",
    "CLOSING": "CLOSING",
}

LISTENING_STATES = {"LISTEN", "UNCONN"}

_SS_STATES = {
    "LISTEN",
    "UNCONN",
    "ESTAB",
    "SYN-SENT",
    "SYN-RECV",
    "FIN-WAIT-1",
    "FIN-WAIT-2",
    "TIME-WAIT",
    "CLOSE-WAIT",
    "LAST-ACK",
    "CLOSING",
    "UNKNOWN",
}
_SYSV_SERVICE = re.compile(r"^\s*\[\s*([+\-?])\s*\]\s+(\S+)")
_UNIT_PREFIX = re.compile(r"^[●○*\s]+")


@dataclass(slots=True)
class NormalizedCapture:
    target: str
    format: str
    records: List[Record] = field(default_factory=list)
    only_placeholders: bool = False

    @property
    def recognized(self) -> bool:
        return self.format != ToolFormat.UNKNOWN.value and bool(self.records)

    @property
    def lines(self) -> List[str]:
        return [render_record(record) for record in self.records]


def _data_lines(text: str) -> List[str]:
    return [line for line in text.splitlines() if line.strip() and not is_placeholder(line)]


def _only_placeholders(text: str) -> bool:
    lines = [line for line in text.splitlines() if line.strip()]
    return bool(lines) and all(is_placeholder(line) for line in lines)


def _canonical(records: Iterable[Record]) -> List[Record]:
    return sorted(set(records))  # type: ignore[type-var]


# ----------------------------------------------------------------------
# network


def detect_net_format(text: str) -> ToolFormat:
    for line in _data_lines(text):
        tokens = line.split()
        head = tokens[0]
        if head == "Netid" or (head == "State" and "Recv-Q" in tokens):
            return ToolFormat.SS
        if head == "Proto":
            return ToolFormat.NETSTAT
        if head == "Active" or line.lstrip().startswith("Active Internet"):
            continue
        if len(tokens) < 5:
            continue
        if head.lower() in NET_PROTOCOLS:
            if tokens[1].isdigit():
                return ToolFormat.NETSTAT
            if tokens[1] in _SS_STATES:
                return ToolFormat.SS
        if head in _SS_STATES and tokens[1].isdigit():
            return ToolFormat.SS
        return ToolFormat.UNKNOWN
    return ToolFormat.UNKNOWN


def split_endpoint(text: str) -> Tuple[str, str]:
    """``[::1]:22``, ``:::22``, ``127.0.0.53%lo:53`` -> (address, port)."""

    text = text.strip()
    if text.startswith("["):
        address, _, rest = text[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else rest
    else:
        address, sep, port = text.rpartition(":")
        if not sep:
            address, port = text, ""
    address = address.split("%", 1)[0]
    if address.startswith("::ffff:") and "." in address:
        address = address[len("::ffff:"):]
    return address or "*", port or "*"


def _render_peer(text: str) -> str:
    address, port = split_endpoint(text)
    if port == "*" and address in {"0.0.0.0", "::", "*"}:
        return ""
    host = f"[{address}]" if ":" in address else address
    return f"{host}:{port}"


def _protocol(token: str) -> str:
    value = token.lower()
    if value.startswith("tcp"):
        return "tcp"
    if value.startswith("udp"):
        return "udp"
    return value


def _state(raw: str, protocol: str) -> str:
    state = STATE_NAMES.get(raw.upper(), raw.upper()) if raw else ""
    if not state:
        return "UNCONN" if protocol == "udp" else "UNKNOWN"
    return state


def parse_ss(text: str) -> List[NetRecord]:
    records: List[NetRecord] = []
    for line in _data_lines(text):
        tokens = line.split()
        if tokens[0] in {"Netid", "State"}:
            continue
        if tokens[0].lower() in NET_PROTOCOLS:
            if len(tokens) < 6:
                continue
            protocol = _protocol(tokens[0])
            raw_state, local, peer = tokens[1], tokens[4], tokens[5]
        elif tokens[0] in _SS_STATES:
            # single-protocol listings omit the Netid column
            if len(tokens) < 5:
                continue
            protocol = "tcp"
            raw_state, local, peer = tokens[0], tokens[3], tokens[4]
        else:
            continue
        address, port = split_endpoint(local)
        records.append(NetRecord(protocol, address, port, _state(raw_state, protocol), _render_peer(peer)))
    return records


def parse_netstat(text: str) -> List[NetRecord]:
    records: List[NetRecord] = []
    for line in _data_lines(text):
        tokens = line.split()
        if tokens[0].lower() not in NET_PROTOCOLS or len(tokens) < 5:
            continue
        protocol = _protocol(tokens[0])
        raw_state = ""
        if len(tokens) > 5 and "/" not in tokens[5] and not tokens[5].isdigit() and tokens[5] != "-":
            raw_state = tokens[5]
        address, port = split_endpoint(tokens[3])
        records.append(NetRecord(protocol, address, port, _state(raw_state, protocol), _render_peer(tokens[4])))
    return records


_NET_PARSERS: Dict[ToolFormat, Callable[[str], List[NetRecord]]] = {
    ToolFormat.SS: parse_ss,
    ToolFormat.NETSTAT: parse_netstat,
}


def parse_network(text: str) -> Tuple[ToolFormat, List[NetRecord]]:
    fmt = detect_net_format(text)
    parser = _NET_PARSERS.get(fmt)
    return fmt, parser(text) if parser else []


def normalize_ports(text: str) -> NormalizedCapture:
    """Listening sockets only; the peer column is dropped."""

    fmt, records = parse_network(text)
    listening = [
        NetRecord(record.protocol, record.local_address, record.local_port, record.state)
        for record in records
        if record.state in LISTENING_STATES
    ]
    return NormalizedCapture("ports", fmt.value, _canonical(listening), _only_placeholders(text))


def normalize_connections(text: str) -> NormalizedCapture:
    fmt, records = parse_network(text)
    return NormalizedCapture("connections", fmt.value, _canonical(records), _only_placeholders(text))


# ----------------------------------------------------------------------
# processes


def _command_column(header: str) -> Optional[int]:
    tokens = header.split()
    for name in ("COMMAND", "CMD", "ARGS"):
        if name in tokens:
            return tokens.index(name)
    return None


def detect_process_format(text: str) -> Tuple[ProcessFormat, int]:
    """Return the layout and the index of the command column."""

    for line in _data_lines(text):
        tokens = line.split()
        if tokens[0] == "USER" and "%CPU" in tokens:
            return ProcessFormat.PROCPS, _command_column(line) or 10
        if tokens[0] == "PID":
            column = _command_column(line)
            return (ProcessFormat.BUSYBOX, column) if column is not None else (ProcessFormat.UNKNOWN, 0)
        if len(tokens) >= 11 and tokens[1].isdigit():
            return ProcessFormat.PROCPS, 10
        if len(tokens) >= 4 and tokens[0].isdigit():
            return ProcessFormat.BUSYBOX, 3
        return ProcessFormat.UNKNOWN, 0
    return ProcessFormat.UNKNOWN, 0


def normalize_processes(text: str) -> NormalizedCapture:
    fmt, column = detect_process_format(text)
    counts: Dict[str, int] = {}
    if fmt is not ProcessFormat.UNKNOWN:
        for line in _data_lines(text):
            tokens = line.split(None, column)
            if len(tokens) <= column or tokens[0] in {"USER", "PID"}:
                continue
            if fmt is ProcessFormat.PROCPS and not tokens[1].isdigit():
                continue
            if fmt is ProcessFormat.BUSYBOX and not tokens[0].isdigit():
                continue
            command = tokens[column].split()
            if not command:
                continue
            counts[command[0]] = counts.get(command[0], 0) + 1
    records = [NameCount(name, count) for name, count in counts.items()]
    return NormalizedCapture("processes", fmt.value, _canonical(records), _only_placeholders(text))


# ----------------------------------------------------------------------
# services, users, mounts, packages


def normalize_services(text: str) -> NormalizedCapture:
    names: Dict[str, int] = {}
    fmt = ToolFormat.UNKNOWN.value
    for line in _data_lines(text):
        match = _SYSV_SERVICE.match(line)
        if match:
            fmt = "service"
            if match.group(1) == "+":
                names[match.group(2)] = 1
            continue
        tokens = _UNIT_PREFIX.sub("", line).split()
        if tokens and tokens[0].endswith(".service"):
            fmt = "systemctl"
            names[tokens[0][: -len(".service")]] = 1
    records = [NameCount(name, 1) for name in names]
    return NormalizedCapture("services", fmt, _canonical(records), _only_placeholders(text))


def normalize_users(text: str) -> NormalizedCapture:
    users = {line.split()[0] for line in _data_lines(text)}
    return NormalizedCapture("users", "lines" if users else ToolFormat.UNKNOWN.value, _canonical(users), _only_placeholders(text))


def normalize_mounts(text: str) -> NormalizedCapture:
    points = set()
    for line in _data_lines(text):
        tokens = line.split()
        if len(tokens) >= 3 and tokens[1] == "on":
            points.add(tokens[2])
        elif len(tokens) >= 2 and os.path.isabs(tokens[1]):
            points.add(tokens[1])
    return NormalizedCapture("mounts", "lines" if points else ToolFormat.UNKNOWN.value, _canonical(points), _only_placeholders(text))


_PACKAGE_HEADERS = ("Listing...", "WARNING:", "Desired=", "||/", "+++-")


def normalize_packages(text: str) -> NormalizedCapture:
    packages = {
        " ".join(line.split())
        for line in _data_lines(text)
        if not line.lstrip().startswith(_PACKAGE_HEADERS)
    }
    return NormalizedCapture(
        "packages", "lines" if packages else ToolFormat.UNKNOWN.value, _canonical(packages), _only_placeholders(text)
    )


NORMALIZERS: Dict[str, Callable[[str], NormalizedCapture]] = {
    "ports": normalize_ports,
    "connections": normalize_connections,
    "processes": normalize_processes,
    "services": normalize_services,
    "users": normalize_users,
    "mounts": normalize_mounts,
    "packages": normalize_packages,
}


def normalize(target: str, text: str) -> NormalizedCapture:
    try:
        normalizer = NORMALIZERS[target]
    except KeyError as exc:
        raise ValueError(f"No normalizer for target: {target}") from exc
    return normalizer(text)


__all__ = [
    "LISTENING_STATES",
    "NORMALIZERS",
    "NormalizedCapture",
    "ProcessFormat",
    "STATE_NAMES",
    "ToolFormat",
    "detect_net_format",
    "detect_process_format",
    "normalize",
    "normalize_connections",
    "normalize_mounts",
    "normalize_packages",
    "normalize_ports",
    "normalize_processes",
    "normalize_services",
    "normalize_users",
    "parse_netstat",
    "parse_network",
    "parse_ss",
    "split_endpoint",
]
