"""Command-line entry point for hostsnap backups and drift comparisons."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from core import __version__ as APP_VERSION
from core.logging_utils import configure_logging
from core.paths import resolve_working_dir
from drift.api import DriftService
from drift.engine import TARGETS, InvalidTargetError
from drift.report import banner
from snapshot.api import SnapshotService
from snapshot.errors import InvalidCategoryError, SnapshotError
from snapshot.types import BackupResult

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

LOGGER = logging.getLogger("hostsnap.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hostsnap", description="Snapshot host configuration and diff live state against it.")
    parser.add_argument("--version", action="version", version=f"hostsnap {APP_VERSION}")
    parser.add_argument("--working-dir", dest="working_dir", default=None, help="Working directory (default: $HOSTSNAP_HOME)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Create a new snapshot for a category")
    backup.add_argument("category", help="Category to back up (e.g. all, network, firewall)")
    backup.add_argument("destination", nargs="?", default=None, help="Snapshot store root")
    backup.add_argument("-x", "--exclude", action="append", default=[], help="Extra exclude glob (repeatable)")
    backup.add_argument("-n", "--dry-run", action="store_true", help="Report what would be backed up")

    diff = commands.add_parser("diff", help="Compare live state against the latest snapshot")
    diff.add_argument("target", choices=TARGETS, help="What to compare")
    diff.add_argument("-s", "--system-type", dest="category", default="all", help="Category holding the baseline")
    diff.add_argument("-f", "--file", dest="files", action="append", default=[], help="File to compare (repeatable)")
    diff.add_argument("--no-color", dest="color", action="store_false", default=None, help="Disable ANSI colors")
    diff.add_argument("--store", default=None, help="Snapshot store root")

    listing = commands.add_parser("list", help="List categories or the snapshots of one category")
    listing.add_argument("category", nargs="?", default=None)
    listing.add_argument("--store", default=None, help="Snapshot store root")

    label = commands.add_parser("label", help="Give a snapshot a stable name")
    label.add_argument("category")
    label.add_argument("label")
    label.add_argument("--ref", default="latest", help="Snapshot key or label (default: latest)")
    label.add_argument("--store", default=None, help="Snapshot store root")

    verify = commands.add_parser("verify", help="Check that a snapshot is complete")
    verify.add_argument("category")
    verify.add_argument("ref", nargs="?", default="latest")
    verify.add_argument("--store", default=None, help="Snapshot store root")

    restore = commands.add_parser("restore", help="Copy mirrored sources back from a snapshot")
    restore.add_argument("category")
    restore.add_argument("ref", nargs="?", default="latest")
    restore.add_argument("--target-root", default=None, help="Restore under this directory instead of /")
    restore.add_argument("-p", "--path", dest="paths", action="append", default=[], help="Only restore this source")
    restore.add_argument("-n", "--dry-run", action="store_true")
    restore.add_argument("--store", default=None, help="Snapshot store root")
    return parser


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def format_backup(result: BackupResult) -> str:
    title = f"BACKUP {result.category}" + (" (dry run)" if result.dry_run else "")
    lines = banner(title)
    if result.dry_run:
        lines.append(f"Store: {result.store_root}")
        lines.append(f"Previous: {result.previous or 'none'}")
        lines.append("Sources:")
        lines.extend(f"  - {source}" for source in result.sources)
    else:
        lines.append(f"Snapshot: {result.directory}")
        lines.append(f"Previous: {result.previous.name if result.previous else 'none'}")
        lines.append(f"Files copied: {result.files_copied}, hardlinked: {result.files_linked}")
        if result.capture is not None:
            lines.append(f"System info files: {len(result.capture.files)}")
    if result.issues:
        lines.append("Issues:")
        lines.extend(f"  - {issue.describe()}" for issue in result.issues)
    return "\n".join(lines) + "\n"


# ----------------------------------------------------------------------
def _cmd_backup(service: SnapshotService, args: argparse.Namespace) -> int:
    result = service.backup(
        args.category,
        destination_root=_optional_path(args.destination),
        exclude_patterns=args.exclude,
        dry_run=args.dry_run,
    )
    sys.stdout.write(format_backup(result))
    return EXIT_OK


def _cmd_diff(service: SnapshotService, args: argparse.Namespace) -> int:
    drift = DriftService(service)
    results = drift.diff(args.target, args.category, args.files, destination_root=_optional_path(args.store))
    color = args.color
    if color is None:
        color = sys.stdout.isatty() and bool(service.settings.get("diff", {}).get("color", True))
    sys.stdout.write(drift.render(results, color=color))
    if args.target != "all" and results and not any(result.completed for result in results):
        return EXIT_FAILED
    return EXIT_OK


def _cmd_list(service: SnapshotService, args: argparse.Namespace) -> int:
    store_root = _optional_path(args.store)
    if args.category is None:
        for category in service.list_categories(store_root):
            print(category)
        return EXIT_OK
    for summary in service.list_snapshots(args.category, store_root):
        flags: List[str] = []
        if summary.is_latest:
            flags.append("latest")
        if not summary.complete:
            flags.append("in-progress")
        flags.extend(summary.labels)
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"{summary.key}{suffix}")
    return EXIT_OK


def _cmd_label(service: SnapshotService, args: argparse.Namespace) -> int:
    link = service.label(args.category, args.ref, args.label, _optional_path(args.store))
    print(f"{link} -> {link.resolve().name}")
    return EXIT_OK


def _cmd_verify(service: SnapshotService, args: argparse.Namespace) -> int:
    report = service.verify(args.category, args.ref, _optional_path(args.store))
    lines = banner(f"VERIFY {args.category}/{report['snapshot']}")
    lines.append(f"Files: {report['file_count']} ({report['total_bytes']} bytes)")
    lines.append(f"System info files: {report['system_info_files']}")
    lines.append(f"Status: {report['status']}")
    print("\n".join(lines))
    return EXIT_OK


def _cmd_restore(service: SnapshotService, args: argparse.Namespace) -> int:
    report = service.restore(
        args.category,
        args.ref,
        target_root=_optional_path(args.target_root),
        paths=args.paths or None,
        dry_run=args.dry_run,
        destination_root=_optional_path(args.store),
    )
    lines = banner(f"RESTORE {args.category}/{report['snapshot']}" + (" (dry run)" if args.dry_run else ""))
    key = "planned" if args.dry_run else "restored"
    lines.extend(f"  {path}" for path in report[key])  # type: ignore[union-attr]
    if report["safety_dir"]:
        lines.append(f"Safety copies: {report['safety_dir']}")
    print("\n".join(lines))
    return EXIT_OK


_COMMANDS = {
    "backup": _cmd_backup,
    "diff": _cmd_diff,
    "list": _cmd_list,
    "label": _cmd_label,
    "verify": _cmd_verify,
    "restore": _cmd_restore,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return int(exc.code or 0)
    working_dir = Path(args.working_dir).expanduser() if args.working_dir else resolve_working_dir()
    configure_logging(working_dir, verbose=args.verbose)
    try:
        service = SnapshotService(working_dir=working_dir)
        return _COMMANDS[args.command](service, args)
    except (InvalidCategoryError, InvalidTargetError) as exc:
        LOGGER.error("%s", exc)
        return EXIT_USAGE
    except SnapshotError as exc:
        LOGGER.error("%s", exc)
        return EXIT_FAILED
    except OSError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
