"""The immutable per-run deployment selection."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .backups import BackupArchive


class DeploymentMode(str, Enum):
    """Which compose variant to render."""

    DEV = "dev"
    PROD = "prod"

    @property
    def compose_template(self) -> str:
        """Return the compose template for this mode."""
        return f"netbird/docker-compose-{self.value}.yml.j2"


@dataclass(frozen=True, slots=True)
class DeploymentSelection:
    """Operator choices for one reconciliation run.

    Built once before any phase runs and passed explicitly to every component
    so restore-or-fresh decisions all see the same archive.
    """

    domain: str
    setup_dir: Path
    mode: DeploymentMode = DeploymentMode.DEV
    backup: BackupArchive | None = None
    cert_name: str = "Sentry Vault"

    def with_backup(self, backup: BackupArchive | None) -> DeploymentSelection:
        """Return a copy bound to *backup*."""
        return DeploymentSelection(
            domain=self.domain,
            setup_dir=self.setup_dir,
            mode=self.mode,
            backup=backup,
            cert_name=self.cert_name,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "domain": self.domain,
            "setup_dir": str(self.setup_dir),
            "mode": self.mode.value,
            "backup": str(self.backup.path) if self.backup is not None else None,
            "cert_name": self.cert_name,
        }


__all__ = ["DeploymentMode", "DeploymentSelection"]
