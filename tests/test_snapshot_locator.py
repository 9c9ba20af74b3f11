from __future__ import annotations

from datetime import datetime
from pathlib import Path

from snapshot.locator import BackupLocator
from snapshot.store import SnapshotStore


def _snapshot(store: SnapshotStore, category: str, files: dict, *, finalize: bool = True) -> Path:
    snapshot = store.begin_snapshot(category)
    for relative, text in files.items():
        path = snapshot / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    if finalize:
        store.finalize(category, snapshot)
    return snapshot


def _locator(store: SnapshotStore) -> BackupLocator:
    return BackupLocator(store, clock=lambda: datetime(2024, 3, 1, 18, 0, 0))


def test_category_latest_wins(tmp_path: Path, clock) -> None:
    store = SnapshotStore(tmp_path, clock=clock)
    _snapshot(store, "all", {"system_info/listening_ports.txt": "all\n"})
    network = _snapshot(store, "network", {"system_info/listening_ports.txt": "network\n"})

    found = _locator(store).locate("network", "listening_ports.txt")

    assert found == (network / "system_info" / "listening_ports.txt").resolve()


def test_falls_back_to_generic_category(tmp_path: Path, clock) -> None:
    store = SnapshotStore(tmp_path, clock=clock)
    generic = _snapshot(store, "all", {"system_info/processes.txt": "ps\n"})
    _snapshot(store, "firewall", {"system_info/iptables.rules": "*filter\n"})

    found = _locator(store).locate("firewall", "processes.txt")

    assert found == (generic / "system_info" / "processes.txt").resolve()


def test_legacy_root_level_layout(tmp_path: Path) -> None:
    legacy = tmp_path / "all" / "latest"
    legacy.mkdir(parents=True)
    (legacy / "packages.list").write_text("bash install\n", encoding="utf-8")
    store = SnapshotStore(tmp_path)

    assert _locator(store).locate("web", "packages.list") == (legacy / "packages.list").resolve()


def test_todays_snapshot_is_tried_when_latest_is_missing(tmp_path: Path, clock) -> None:
    store = SnapshotStore(tmp_path, clock=clock)
    snapshot = _snapshot(store, "all", {"system_info/mounts.txt": "/ ext4\n"})
    (tmp_path / "all" / "latest").unlink()

    locator = _locator(store)

    assert snapshot in locator.candidates("all", "mounts.txt")[2].parents
    assert locator.locate("all", "mounts.txt") == (snapshot / "system_info" / "mounts.txt").resolve()


def test_store_wide_search_is_newest_first_and_skips_incomplete(tmp_path: Path, clock) -> None:
    store = SnapshotStore(tmp_path, clock=clock)
    older = _snapshot(store, "database", {"etc/mysql/my.cnf": "old\n"})
    newer = _snapshot(store, "database", {"etc/mysql/my.cnf": "new\n"})
    _snapshot(store, "database", {"etc/mysql/my.cnf": "partial\n"}, finalize=False)
    safety = tmp_path / "database" / "_safety" / "20240301-130000-x" / "my.cnf"
    safety.parent.mkdir(parents=True)
    safety.write_text("safety\n", encoding="utf-8")

    locator = _locator(store)
    matches = locator.search("my.cnf")

    assert [match.read_text(encoding="utf-8") for match in matches] == ["new\n", "old\n"]
    assert locator.locate("web", "my.cnf") == (newer / "etc" / "mysql" / "my.cnf").resolve()
    assert older.name < newer.name


def test_absent_baseline_returns_none(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "empty")
    locator = _locator(store)

    assert locator.search("listening_ports.txt") == []
    assert locator.locate("all", "listening_ports.txt") is None


def test_links_leading_out_of_the_store_are_ignored(tmp_path: Path, clock) -> None:
    outside = tmp_path / "live" / "packages.list"
    outside.parent.mkdir()
    outside.write_text("bash install\n", encoding="utf-8")
    store = SnapshotStore(tmp_path / "store", clock=clock)
    snapshot = _snapshot(store, "all", {"system_info/mounts.txt": "/ ext4\n"})
    (snapshot / "packages.list").symlink_to(outside)

    locator = _locator(store)

    assert not locator.inside_store(snapshot / "packages.list")
    assert locator.locate("all", "packages.list") is None


def test_pinned_baseline_ignores_later_snapshots(tmp_path: Path, clock) -> None:
    store = SnapshotStore(tmp_path, clock=clock)
    first = _snapshot(store, "all", {"system_info/processes.txt": "first\n", "etc/app.conf": "a\n"})
    locator = _locator(store)
    pinned = locator.pin("web")

    second = _snapshot(store, "all", {"system_info/processes.txt": "second\n", "etc/app.conf": "b\n"})

    assert pinned.latest == {"web": None, "all": first.resolve()}
    assert locator.locate("web", "processes.txt", pinned) == (first / "system_info" / "processes.txt").resolve()
    assert locator.locate("web", "app.conf", pinned) == (first / "etc" / "app.conf").resolve()
    assert locator.locate("web", "processes.txt") == (second / "system_info" / "processes.txt").resolve()
