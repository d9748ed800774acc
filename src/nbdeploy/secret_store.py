"""Filesystem adapter for the secret category files."""
from __future__ import annotations

import base64
import logging
import os
import secrets
from enum import Enum
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class SecretGenerationError(RuntimeError):
    """Raised when a secret cannot be generated or written."""


class SecretCategory(str, Enum):
    """Secrets the control plane needs, keyed by their path in the setup directory."""

    AUTH_SECRET = "management/nb_auth_secret"
    DATASTORE_ENCRYPTION_KEY = "management/datastore_encryption_key"
    CA_PASSWORD = "step-ca-data/password"

    @property
    def relative_path(self) -> str:
        """Return the category path relative to the setup directory."""
        return self.value


GENERATED_MODE = 0o600
RESTORED_MODE = 0o640


class SecretStore:
    """Read, test and create secret files under a setup directory."""

    def __init__(self, base_dir: Path, *, byte_length: int = 32) -> None:
        self.base_dir = Path(base_dir)
        self.byte_length = byte_length

    def path_for(self, category: SecretCategory) -> Path:
        """Return the absolute path of *category*."""
        return self.base_dir / category.relative_path

    def exists(self, category: SecretCategory) -> bool:
        """Return ``True`` when the category file is present."""
        return self.path_for(category).is_file()

    def read(self, category: SecretCategory) -> str:
        """Return the secret value without its trailing line ending."""
        try:
            text = self.path_for(category).read_text(encoding="utf-8")
        except OSError as exc:
            raise SecretGenerationError(f"Unable to read {category.relative_path}: {exc}") from exc
        return text.rstrip("\r\n")

    def generate(self, category: SecretCategory) -> str:
        """Create the category file with fresh random content.

        Existing files are left alone; the caller decides when generation is
        appropriate. A failing random source is fatal and never replaced with
        a weaker fallback.
        """
        path = self.path_for(category)
        if path.exists():
            return self.read(category)
        try:
            raw = secrets.token_bytes(self.byte_length)
        except (OSError, NotImplementedError) as exc:
            raise SecretGenerationError(f"Random source unavailable for {category.relative_path}: {exc}") from exc
        value = base64.b64encode(raw).decode("ascii")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, GENERATED_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value + "\n")
            os.chmod(path, GENERATED_MODE)
        except OSError as exc:
            raise SecretGenerationError(f"Failed to write {path}: {exc}") from exc
        return value

    def discard(self, category: SecretCategory) -> None:
        """Remove the category file if present."""
        self.path_for(category).unlink(missing_ok=True)

    def mark_restored(self, category: SecretCategory) -> str | None:
        """Apply the restored-file mode to *category*; return a warning on failure."""
        path = self.path_for(category)
        try:
            os.chmod(path, RESTORED_MODE)
        except OSError as exc:
            message = f"Unable to set mode {RESTORED_MODE:o} on restored {category.relative_path}: {exc}"
            LOGGER.warning(message)
            return message
        return None


__all__ = [
    "GENERATED_MODE",
    "RESTORED_MODE",
    "SecretCategory",
    "SecretGenerationError",
    "SecretStore",
]
