"""Refresh container images and restart an existing deployment."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .providers.compose import ComposeError, ComposeProvider

LOGGER = logging.getLogger(__name__)

COMPOSE_FILE = "docker-compose.yml"


class ComposeFileMissingError(RuntimeError):
    """Raised when the setup directory has no rendered compose file."""


@dataclass(slots=True)
class UpdateResult:
    """Summary of an update run."""

    removed_containers: int = 0
    pulled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "removed_containers": self.removed_containers,
            "pulled": list(self.pulled),
            "failed": list(self.failed),
            "warnings": list(self.warnings),
        }


class UpdateRunner:
    """Stop the running services, pull fresh images and start them again."""

    def __init__(
        self,
        compose: ComposeProvider,
        images: Sequence[str],
        *,
        settle_seconds: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.compose = compose
        self.images = tuple(images)
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    def run(self, setup_dir: Path) -> UpdateResult:
        """Update the deployment rooted at *setup_dir*."""
        compose_file = Path(setup_dir) / COMPOSE_FILE
        if not compose_file.is_file():
            raise ComposeFileMissingError(
                f"{compose_file} not found; run 'nbdeploy deploy' before updating."
            )

        result = UpdateResult()
        containers = self.compose.list_containers()
        if containers:
            self.compose.stop_containers(containers)
            self.compose.remove_containers(containers)
        result.removed_containers = len(containers)

        for image in self.images:
            try:
                self.compose.pull(image)
            except ComposeError as exc:
                message = f"Failed to pull {image}; using the local copy if present. ({exc})"
                LOGGER.warning(message)
                result.failed.append(image)
                result.warnings.append(message)
            else:
                result.pulled.append(image)

        self.compose.up()
        self._sleep(self.settle_seconds)
        return result


__all__ = ["COMPOSE_FILE", "ComposeFileMissingError", "UpdateResult", "UpdateRunner"]
