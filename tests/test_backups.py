"""Tests for the backup catalog and the backup index."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from nbdeploy.backups import (
    BackupArchive,
    BackupCatalog,
    BackupEntryBuilder,
    BackupRegistryError,
    BackupsRegistry,
    archive_name_for,
    parse_selection,
)


def _touch_archives(root: Path, stamps: list[str]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    for stamp in stamps:
        (root / f"netbird-backup-{stamp}.tar.gz").write_bytes(b"")


def test_list_recent_returns_newest_five(tmp_path: Path) -> None:
    """Seven archives yield the five most recent, newest first."""
    root = tmp_path / "backups"
    stamps = [f"2024010{day}-120000" for day in range(1, 8)]
    _touch_archives(root, stamps)

    recent = BackupCatalog(root).list_recent()

    assert [archive.stamp for archive in recent] == [
        "20240107-120000",
        "20240106-120000",
        "20240105-120000",
        "20240104-120000",
        "20240103-120000",
    ]


def test_list_recent_ignores_foreign_files(tmp_path: Path) -> None:
    """Sidecars, malformed names and impossible dates are skipped."""
    root = tmp_path / "backups"
    _touch_archives(root, ["20240101-120000"])
    (root / "netbird-backup-20240101-120000.tar.gz.sha256").write_text("x", encoding="utf-8")
    (root / "netbird-backup-latest.tar.gz").write_bytes(b"")
    (root / "netbird-backup-20241399-250000.tar.gz").write_bytes(b"")
    (root / "backups.json").write_text("{}", encoding="utf-8")

    recent = BackupCatalog(root).list_recent()

    assert [archive.name for archive in recent] == ["netbird-backup-20240101-120000.tar.gz"]


def test_list_recent_missing_root_is_empty(tmp_path: Path) -> None:
    """A missing backup root is not an error."""
    assert BackupCatalog(tmp_path / "absent").list_recent() == []


def test_archive_created_at_parses_filename(tmp_path: Path) -> None:
    """The creation time comes from the embedded timestamp."""
    archive = BackupArchive.from_path(tmp_path / "netbird-backup-20240315-081530.tar.gz")

    assert archive is not None
    assert archive.created_at == datetime(2024, 3, 15, 8, 15, 30)
    assert archive_name_for(archive.created_at) == archive.name


def test_resolve_selection_maps_one_based_index(tmp_path: Path) -> None:
    """Choice N selects the Nth most recent archive."""
    root = tmp_path / "backups"
    _touch_archives(root, ["20240101-120000", "20240102-120000"])
    catalog = BackupCatalog(root)
    candidates = catalog.list_recent()

    assert catalog.resolve_selection(1, candidates) == candidates[0]
    assert catalog.resolve_selection("2", candidates) == candidates[1]


@pytest.mark.parametrize("choice", [0, "0", "", None])
def test_resolve_selection_zero_or_empty_means_none(tmp_path: Path, choice: object) -> None:
    """Zero and empty input both mean deploy fresh, without a warning."""
    root = tmp_path / "backups"
    _touch_archives(root, ["20240101-120000"])
    catalog = BackupCatalog(root)
    warnings: list[str] = []

    assert catalog.resolve_selection(choice, catalog.list_recent(), warnings=warnings) is None  # type: ignore[arg-type]
    assert warnings == []


@pytest.mark.parametrize("choice", [7, -1, "abc", "1.5", "\u00b2", "\u0663"])
def test_resolve_selection_invalid_defaults_to_none(tmp_path: Path, choice: object) -> None:
    """Out-of-range and non-numeric input fall back to none with a warning."""
    root = tmp_path / "backups"
    _touch_archives(root, ["20240101-120000", "20240102-120000"])
    catalog = BackupCatalog(root)
    warnings: list[str] = []

    assert catalog.resolve_selection(choice, catalog.list_recent(), warnings=warnings) is None  # type: ignore[arg-type]
    assert len(warnings) == 1
    assert "defaulting to 0" in warnings[0]


def test_resolve_selection_without_candidates(tmp_path: Path) -> None:
    """No candidates never selects anything."""
    assert BackupCatalog(tmp_path).resolve_selection(1, []) is None


def test_parse_selection_reports_range() -> None:
    """Out-of-range warnings name the valid range."""
    index, problem = parse_selection(9, 5)

    assert index == 0
    assert problem is not None and "0-5" in problem


def test_backups_registry_append_and_read(tmp_path: Path) -> None:
    """Append persists entries in backups.json."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")
    registry.ensure_root()

    entry = BackupEntryBuilder(
        archive_path=tmp_path / "backups" / "netbird-backup-20240101-120000.tar.gz",
        checksum="deadbeef",
        size_bytes=1234,
        included=["step-ca-data"],
        missing=["management/data"],
    ).build()

    registry.append(entry)

    data = registry.read()
    assert data["backups"][0]["name"] == "netbird-backup-20240101-120000.tar.gz"  # type: ignore[index]
    assert data["backups"][0]["checksum"] == {"algorithm": "sha256", "value": "deadbeef"}  # type: ignore[index]
    assert registry.find_by_name("netbird-backup-20240101-120000.tar.gz")["missing"] == [  # type: ignore[index]
        "management/data"
    ]
    assert registry.find_by_name("netbird-backup-20990101-120000.tar.gz") is None


def test_backups_registry_corrupt_index(tmp_path: Path) -> None:
    """A corrupt index raises BackupRegistryError."""
    root = tmp_path / "backups"
    root.mkdir()
    index = root / "backups.json"
    index.write_text("{not json", encoding="utf-8")

    with pytest.raises(BackupRegistryError, match="corrupted"):
        BackupsRegistry(root, index).list_entries()


def test_backups_registry_missing_index_is_empty(tmp_path: Path) -> None:
    """A missing index reads as an empty list."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    assert registry.list_entries() == []
