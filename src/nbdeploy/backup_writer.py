"""Create timestamped backup archives of the deployment state."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .archive import compute_checksum, create_archive, write_checksum_file
from .backups import BackupEntryBuilder, BackupError, BackupsRegistry, archive_name_for

LOGGER = logging.getLogger(__name__)

BACKUP_SOURCES: tuple[str, ...] = (
    "step-ca-data",
    "management/nb_auth_secret",
    "management/datastore_encryption_key",
    "management/data",
)
BACKUP_EXCLUDES: tuple[str, ...] = (
    "step-ca-data/db",
    "step-ca-data/templates",
)


@dataclass(slots=True)
class BackupWriteResult:
    """Details about an archive written by :class:`BackupWriter`."""

    archive: Path
    checksum: str
    checksum_path: Path
    size_bytes: int
    included: list[str]
    missing: list[str]
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "archive": str(self.archive),
            "checksum": self.checksum,
            "checksum_path": str(self.checksum_path),
            "size_bytes": self.size_bytes,
            "included": list(self.included),
            "missing": list(self.missing),
            "warnings": list(self.warnings),
        }


class BackupWriter:
    """Snapshot the CA state, secrets and coordination data into an archive."""

    def __init__(
        self,
        registry: BackupsRegistry,
        *,
        compression_level: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry = registry
        self.compression_level = compression_level
        self._clock = clock

    def create_backup(
        self,
        base_dir: Path,
        *,
        actor: Mapping[str, object] | None = None,
    ) -> BackupWriteResult:
        """Archive the state under *base_dir* and record it in the index."""
        base_dir = Path(base_dir)
        included: list[str] = []
        missing: list[str] = []
        warnings: list[str] = []
        for source in BACKUP_SOURCES:
            if (base_dir / source).exists():
                included.append(source)
            else:
                missing.append(source)
                message = f"Backup source {source} not found under {base_dir}; skipping."
                LOGGER.warning(message)
                warnings.append(message)
        if not included:
            raise BackupError(f"Nothing to back up: none of the expected sources exist under {base_dir}.")

        self.registry.ensure_root()
        archive_path = self.registry.root / archive_name_for(self._clock())
        if archive_path.exists():
            raise BackupError(f"Backup archive {archive_path} already exists; retry in a moment.")

        create_archive(
            base_dir,
            included,
            archive_path,
            exclude=BACKUP_EXCLUDES,
            compression_level=self.compression_level,
        )
        checksum = compute_checksum(archive_path)
        checksum_path = write_checksum_file(archive_path, checksum)
        size_bytes = archive_path.stat().st_size

        entry = BackupEntryBuilder(
            archive_path=archive_path,
            checksum=checksum,
            size_bytes=size_bytes,
            included=included,
            missing=missing,
            setup_dir=base_dir,
            actor=actor,
        ).build()
        self.registry.append(entry)
        LOGGER.info("Backup written to %s", archive_path)

        return BackupWriteResult(
            archive=archive_path,
            checksum=checksum,
            checksum_path=checksum_path,
            size_bytes=size_bytes,
            included=included,
            missing=missing,
            warnings=warnings,
        )


__all__ = ["BACKUP_EXCLUDES", "BACKUP_SOURCES", "BackupWriteResult", "BackupWriter"]
