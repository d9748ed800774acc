"""Generate-or-restore decisions for the deployment secrets.

Each secret category is resolved independently: files already on disk are
never touched, categories present in the selected archive are restored, and
whatever is still missing afterwards is generated fresh. The outcome is
reported per category so operators can see which values changed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .archive import ArchiveInspector
from .config import PARTIAL_RESTORE_POLICIES
from .secret_store import SecretCategory, SecretStore
from .selection import DeploymentSelection

LOGGER = logging.getLogger(__name__)

FILL_MISSING = "fill-missing"
REGENERATE_ALL = "regenerate-all"


class SecretSource(str, Enum):
    """Where a secret value came from during a run."""

    EXISTING = "existing"
    RESTORED = "restored"
    GENERATED = "generated"


@dataclass(slots=True)
class SecretReconcileResult:
    """Values and provenance of every secret category after reconciliation."""

    values: dict[SecretCategory, str]
    sources: dict[SecretCategory, SecretSource]
    warnings: list[str] = field(default_factory=list)

    def value(self, category: SecretCategory) -> str:
        """Return the value for *category*."""
        return self.values[category]

    def to_dict(self) -> dict[str, object]:
        """Return provenance without secret values."""
        return {
            "sources": {category.relative_path: source.value for category, source in self.sources.items()},
            "warnings": list(self.warnings),
        }


class SecretLifecycleManager:
    """Ensure every secret category exists exactly once per setup directory."""

    def __init__(
        self,
        inspector: ArchiveInspector,
        *,
        byte_length: int = 32,
        partial_restore: str = FILL_MISSING,
    ) -> None:
        if partial_restore not in PARTIAL_RESTORE_POLICIES:
            raise ValueError(f"Unknown partial restore policy: {partial_restore}")
        self.inspector = inspector
        self.byte_length = byte_length
        self.partial_restore = partial_restore

    def reconcile(self, selection: DeploymentSelection) -> SecretReconcileResult:
        """Resolve all secret categories for *selection*."""
        store = SecretStore(selection.setup_dir, byte_length=self.byte_length)
        warnings: list[str] = []
        sources: dict[SecretCategory, SecretSource] = {}

        pre_existing = {category for category in SecretCategory if store.exists(category)}
        for category in pre_existing:
            sources[category] = SecretSource.EXISTING

        restored: set[SecretCategory] = set()
        if selection.backup is not None:
            restored = self._restore(store, selection, pre_existing, warnings)
            outstanding = [
                category
                for category in SecretCategory
                if category not in pre_existing and category not in restored
            ]
            if restored and outstanding and self.partial_restore == REGENERATE_ALL:
                self._warn(
                    warnings,
                    "Backup restored only some secrets; discarding them and regenerating "
                    "every secret that was not already present.",
                )
                for category in restored:
                    store.discard(category)
                restored = set()
            for category in restored:
                problem = store.mark_restored(category)
                if problem is not None:
                    warnings.append(problem)
                sources[category] = SecretSource.RESTORED

        for category in SecretCategory:
            if store.exists(category):
                continue
            store.generate(category)
            sources[category] = SecretSource.GENERATED
            if selection.backup is not None:
                self._warn(warnings, f"Secret {category.relative_path} was not restored; generated a fresh value.")
            else:
                LOGGER.info("Generated %s", category.relative_path)

        values = {category: store.read(category) for category in SecretCategory}
        ordered = {category: sources[category] for category in SecretCategory}
        return SecretReconcileResult(values=values, sources=ordered, warnings=warnings)

    def _restore(
        self,
        store: SecretStore,
        selection: DeploymentSelection,
        pre_existing: set[SecretCategory],
        warnings: list[str],
    ) -> set[SecretCategory]:
        backup = selection.backup
        if backup is None:
            return set()
        available = [
            category
            for category in SecretCategory
            if self.inspector.manifest_contains(backup.path, category.relative_path)
        ]
        if not available:
            reason = self.inspector.listing_error(backup.path)
            if reason:
                self._warn(warnings, f"Backup {backup.name} is unreadable ({reason}); generating fresh secrets.")
            else:
                self._warn(warnings, f"Backup {backup.name} contains no secrets; generating fresh secrets.")
            return set()

        wanted = [category for category in available if category not in pre_existing]
        if not wanted:
            return set()
        outcome = self.inspector.extract(
            backup.path,
            [category.relative_path for category in wanted],
            selection.setup_dir,
        )
        if not outcome.ok and outcome.message:
            warnings.append(outcome.message)
        return {category for category in wanted if store.exists(category)}

    @staticmethod
    def _warn(warnings: list[str], message: str) -> None:
        LOGGER.warning(message)
        warnings.append(message)


__all__ = [
    "FILL_MISSING",
    "REGENERATE_ALL",
    "SecretLifecycleManager",
    "SecretReconcileResult",
    "SecretSource",
]
