"""Archive helpers shared by the backup writer and restore workflows."""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .backups import BackupError

LOGGER = logging.getLogger(__name__)


def _normalise_member(name: str) -> str:
    cleaned = name.strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.rstrip("/")


def _normalise_prefix(prefix: str) -> str:
    return _normalise_member(prefix).strip("/")


def member_matches(member: str, prefix: str) -> bool:
    """Return ``True`` when *member* is *prefix* or lives underneath it."""
    target = _normalise_prefix(prefix)
    if not target:
        return False
    return member == target or member.startswith(target + "/")


@dataclass(frozen=True, slots=True)
class ExtractOutcome:
    """Result of a best-effort extraction."""

    ok: bool
    message: str | None = None


@dataclass(slots=True)
class _Listing:
    members: tuple[str, ...]
    dot_prefixed: bool
    error: str | None


class ArchiveInspector:
    """List and selectively extract gzip tar archives.

    Listings are computed once per archive path and cached for the lifetime of
    the inspector, so every component of a run sees the same manifest.
    """

    def __init__(self, tar_bin: str | None = None) -> None:
        self._tar_bin = tar_bin
        self._listings: dict[Path, _Listing] = {}

    def _tar(self) -> str | None:
        return self._tar_bin or shutil.which("tar")

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603, S607 - controlled command execution
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )

    def _listing(self, archive: Path) -> _Listing:
        key = Path(archive)
        cached = self._listings.get(key)
        if cached is not None:
            return cached

        tar_bin = self._tar()
        if tar_bin is None:
            listing = _Listing((), False, "The 'tar' command is required to read archives.")
        else:
            result = self._run_command([tar_bin, "-tzf", str(key)])
            if result.returncode != 0:
                detail = (result.stderr or result.stdout or "tar listing failed").strip()
                listing = _Listing((), False, f"Unable to list {key.name}: {detail}")
            else:
                raw = [line for line in result.stdout.splitlines() if line.strip()]
                members = tuple(
                    member for member in (_normalise_member(line) for line in raw) if member and member != "."
                )
                dot_prefixed = any(line.startswith("./") for line in raw)
                listing = _Listing(members, dot_prefixed, None)
        if listing.error is not None:
            LOGGER.warning(listing.error)
        self._listings[key] = listing
        return listing

    def manifest(self, archive: Path) -> tuple[str, ...]:
        """Return the normalised member names of *archive* (empty when unreadable)."""
        return self._listing(archive).members

    def listing_error(self, archive: Path) -> str | None:
        """Return the reason *archive* could not be listed, if any."""
        return self._listing(archive).error

    def manifest_contains(self, archive: Path, prefix: str) -> bool:
        """Return ``True`` when any member of *archive* falls under *prefix*."""
        return any(member_matches(member, prefix) for member in self.manifest(archive))

    def extract(
        self,
        archive: Path,
        prefixes: Iterable[str],
        destination: Path,
        *,
        exclude: Iterable[str] = (),
    ) -> ExtractOutcome:
        """Extract *prefixes* from *archive* into *destination*.

        Failures are reported in the returned outcome rather than raised; the
        caller checks which files actually landed.
        """
        wanted = [_normalise_prefix(prefix) for prefix in prefixes]
        wanted = [prefix for prefix in wanted if prefix]
        if not wanted:
            return ExtractOutcome(ok=True, message="Nothing to extract.")

        tar_bin = self._tar()
        if tar_bin is None:
            message = "The 'tar' command is required to extract archives."
            LOGGER.warning(message)
            return ExtractOutcome(ok=False, message=message)

        listing = self._listing(archive)
        lead = "./" if listing.dot_prefixed else ""
        cmd = [tar_bin, "-xzf", str(archive), "-C", str(destination)]
        for pattern in exclude:
            cmd.append(f"--exclude={lead}{_normalise_prefix(pattern)}")
        cmd.extend(f"{lead}{prefix}" for prefix in wanted)

        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            message = f"Unable to prepare {destination}: {exc}"
            LOGGER.warning(message)
            return ExtractOutcome(ok=False, message=message)

        result = self._run_command(cmd)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "tar extraction failed").strip()
            message = f"Extraction of {', '.join(wanted)} from {Path(archive).name} failed: {detail}"
            LOGGER.warning(message)
            return ExtractOutcome(ok=False, message=message)
        return ExtractOutcome(ok=True)


def create_archive(
    base_dir: Path,
    members: Sequence[str],
    archive_path: Path,
    *,
    exclude: Iterable[str] = (),
    compression_level: int | None = None,
) -> None:
    """Create a gzip archive of *members* (relative to *base_dir*) at *archive_path*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required to create archives.")
    if not members:
        raise BackupError("No members given for archive creation.")

    if compression_level is not None:
        cmd: list[str] = [tar_bin, "-I", f"gzip -{compression_level}", "-cf", str(archive_path)]
    else:
        cmd = [tar_bin, "-czf", str(archive_path)]
    cmd.extend(f"--exclude={pattern}" for pattern in exclude)
    cmd.extend(["-C", str(base_dir)])
    cmd.extend(members)

    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        archive_path.unlink(missing_ok=True)
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write a ``sha256sum``-compatible sidecar next to *archive_path*."""
    checksum_path = archive_path.with_name(archive_path.name + ".sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


__all__ = [
    "ArchiveInspector",
    "ExtractOutcome",
    "compute_checksum",
    "create_archive",
    "member_matches",
    "write_checksum_file",
]
