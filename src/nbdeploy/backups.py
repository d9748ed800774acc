"""Backup archive catalog and the JSON backup index."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

ARCHIVE_PREFIX = "netbird-backup-"
ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
_ARCHIVE_NAME = re.compile(r"^netbird-backup-(?P<stamp>\d{8}-\d{6})\.tar\.gz$")


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def archive_name_for(moment: datetime) -> str:
    """Return the archive filename embedding *moment*."""
    return f"{ARCHIVE_PREFIX}{moment:{TIMESTAMP_FORMAT}}{ARCHIVE_SUFFIX}"


@dataclass(frozen=True, slots=True)
class BackupArchive:
    """A timestamped snapshot on disk. Archives are never mutated."""

    path: Path
    stamp: str

    @property
    def name(self) -> str:
        """Return the archive filename."""
        return self.path.name

    @property
    def created_at(self) -> datetime:
        """Return the creation time encoded in the filename."""
        return datetime.strptime(self.stamp, TIMESTAMP_FORMAT)

    @classmethod
    def from_path(cls, path: Path) -> BackupArchive | None:
        """Return an archive for *path*, or ``None`` when the name does not parse."""
        match = _ARCHIVE_NAME.match(path.name)
        if match is None:
            return None
        stamp = match.group("stamp")
        try:
            datetime.strptime(stamp, TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return cls(path=path, stamp=stamp)


class BackupCatalog:
    """Enumerate archives under the backup root and resolve operator choices."""

    def __init__(self, root: Path, *, recent_limit: int = 5) -> None:
        """Record the backup root and how many archives count as recent."""
        self.root = Path(root)
        self.recent_limit = recent_limit

    def discover(self) -> list[BackupArchive]:
        """Return every parseable archive, newest first."""
        if not self.root.is_dir():
            return []
        archives: list[BackupArchive] = []
        for path in self.root.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"):
            if not path.is_file():
                continue
            archive = BackupArchive.from_path(path)
            if archive is None:
                LOGGER.debug("Ignoring unrecognised archive name %s", path.name)
                continue
            archives.append(archive)
        # Fixed-width zero-padded stamps sort chronologically as strings.
        archives.sort(key=lambda item: item.stamp, reverse=True)
        return archives

    def list_recent(self) -> list[BackupArchive]:
        """Return up to ``recent_limit`` archives, most recent first."""
        return self.discover()[: self.recent_limit]

    def resolve_selection(
        self,
        choice: int | str | None,
        candidates: Sequence[BackupArchive],
        *,
        warnings: list[str] | None = None,
    ) -> BackupArchive | None:
        """Map a 1-based *choice* onto *candidates*; 0 or invalid input means none."""
        if not candidates:
            return None
        index, problem = parse_selection(choice, len(candidates))
        if problem is not None:
            LOGGER.warning(problem)
            if warnings is not None:
                warnings.append(problem)
        if index == 0:
            return None
        return candidates[index - 1]


def parse_selection(choice: int | str | None, count: int) -> tuple[int, str | None]:
    """Return ``(index, warning)`` for an operator selection among *count* entries."""
    if choice is None:
        return 0, None
    if isinstance(choice, bool):
        return 0, f"Invalid selection {choice!r}; defaulting to 0 (skip restore)."
    if isinstance(choice, int):
        value = choice
    else:
        text = choice.strip()
        if not text:
            return 0, None
        if not (text.isascii() and text.isdigit()):
            return 0, f"Invalid selection {choice!r}; defaulting to 0 (skip restore)."
        value = int(text)
    if value < 0 or value > count:
        return 0, f"Selection {value} is out of range 0-{count}; defaulting to 0 (skip restore)."
    return value, None


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries: list[object] = list(self.list_entries())
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_name(self, name: str) -> dict[str, object] | None:
        """Return the entry recorded for archive *name* if present."""
        normalized = name.strip()
        if not normalized:
            raise BackupRegistryError("Archive name must be a non-empty string.")
        for entry in self.list_entries():
            if str(entry.get("name", "")).strip() == normalized:
                return entry
        return None


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    archive_path: Path
    checksum: str
    size_bytes: int
    included: Iterable[str] = ()
    missing: Iterable[str] = ()
    setup_dir: Path | None = None
    actor: Mapping[str, object] | None = None

    def build(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "name": self.archive_path.name,
            "created_at": _now_iso(),
            "path": str(self.archive_path),
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "included": list(self.included),
            "missing": list(self.missing),
        }
        if self.setup_dir is not None:
            entry["setup_dir"] = str(self.setup_dir)
        if self.actor:
            entry["created_by"] = dict(self.actor)
        return entry


__all__ = [
    "ARCHIVE_PREFIX",
    "ARCHIVE_SUFFIX",
    "BackupArchive",
    "BackupCatalog",
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "archive_name_for",
    "parse_selection",
]
