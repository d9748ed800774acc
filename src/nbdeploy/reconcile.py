"""End-to-end reconciliation of a NetBird control plane deployment.

A run walks a fixed sequence of phases. Each phase either completes (possibly
with warnings) or raises one of the fatal errors in :data:`FATAL_ERRORS`, in
which case the run stops and the report records where and why. Nothing is
retried.
"""
from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable, Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .archive import ArchiveInspector
from .backups import BackupArchive, BackupCatalog, BackupError
from .ca import CABootstrap, CABootstrapError, CABootstrapResult, CAHealthTimeoutError
from .config import AppConfig, ConfigError
from .exit_codes import ExitCode
from .lifecycle import SecretLifecycleManager, SecretReconcileResult
from .locking import LockManager, LockTimeoutError
from .providers.compose import ComposeError, ComposeProvider
from .secret_store import SecretCategory, SecretGenerationError
from .selection import DeploymentMode, DeploymentSelection
from .templates import TemplateEngine, TemplateError
from .updates import ComposeFileMissingError

LOGGER = logging.getLogger(__name__)

COORDINATION_DATA = "management/data"
MANAGED_ARTEFACTS: tuple[str, ...] = (
    "relay.env",
    "management",
    "step-ca-data",
    "dashboard.env",
    "docker-compose.yml",
    "secrets",
)


class CleanupError(RuntimeError):
    """Raised when existing deployment files cannot be removed."""


FATAL_ERRORS: tuple[tuple[type[BaseException], ExitCode], ...] = (
    (ConfigError, ExitCode.VALIDATION),
    (TemplateError, ExitCode.VALIDATION),
    (SecretGenerationError, ExitCode.ENVIRONMENT),
    (LockTimeoutError, ExitCode.ENVIRONMENT),
    (ComposeFileMissingError, ExitCode.ENVIRONMENT),
    (CleanupError, ExitCode.ENVIRONMENT),
    (CAHealthTimeoutError, ExitCode.PROVIDER),
    (CABootstrapError, ExitCode.PROVIDER),
    (ComposeError, ExitCode.PROVIDER),
    (BackupError, ExitCode.PROVIDER),
)
_FATAL_TYPES = tuple(error_type for error_type, _ in FATAL_ERRORS)


def exit_code_for(exc: BaseException) -> ExitCode | None:
    """Return the exit code for a fatal *exc*, or ``None`` when it is not fatal."""
    for error_type, code in FATAL_ERRORS:
        if isinstance(exc, error_type):
            return code
    return None


class Phase(str, Enum):
    """Reconciliation phases in execution order."""

    CLEANUP = "cleanup"
    BACKUP_SELECTION = "backup_selection"
    SECRETS = "secrets"
    RENDER = "render"
    CA_BOOTSTRAP = "ca_bootstrap"
    COORDINATION_DATA = "coordination_data"
    ACTIVATION = "activation"


class PhaseStatus(str, Enum):
    """How a phase ended."""

    OK = "ok"
    WARNING = "warning"
    DECLINED = "declined"
    FAILED = "failed"


class Outcome(str, Enum):
    """How the whole run ended."""

    SUCCESS = "success"
    DECLINED = "declined"
    FAILED = "failed"


@dataclass(slots=True)
class PhaseResult:
    """Result recorded for a single phase."""

    phase: Phase
    status: PhaseStatus
    message: str
    warnings: list[str] = field(default_factory=list)
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "message": self.message,
            "warnings": list(self.warnings),
            "detail": self.detail,
        }


@dataclass(slots=True)
class ReconcileReport:
    """Everything a reconciliation run decided and did."""

    outcome: Outcome
    phases: list[PhaseResult]
    selection: DeploymentSelection
    secrets: SecretReconcileResult | None = None
    ca: CABootstrapResult | None = None
    warnings: list[str] = field(default_factory=list)
    error: BaseException | None = None
    exit_code: ExitCode = ExitCode.OK
    lock_wait_ms: int | None = None

    @property
    def failed_phase(self) -> Phase | None:
        """Return the phase that failed, if any."""
        for result in self.phases:
            if result.status is PhaseStatus.FAILED:
                return result.phase
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation without secret values."""
        return {
            "outcome": self.outcome.value,
            "exit_code": int(self.exit_code),
            "selection": self.selection.to_dict(),
            "phases": [result.to_dict() for result in self.phases],
            "secrets": self.secrets.to_dict() if self.secrets is not None else None,
            "ca": self.ca.to_dict() if self.ca is not None else None,
            "warnings": list(self.warnings),
            "error": str(self.error) if self.error is not None else None,
        }


Confirm = Callable[[str, bool], bool]
Chooser = Callable[[Sequence[BackupArchive]], int | str | None]


def _default_confirm(_prompt: str, default: bool) -> bool:
    return default


class DeploymentReconciler:
    """Drive a setup directory to the state described by a selection."""

    def __init__(
        self,
        config: AppConfig,
        *,
        templates: TemplateEngine | None = None,
        locks: LockManager | None = None,
        inspector: ArchiveInspector | None = None,
        catalog: BackupCatalog | None = None,
        compose_factory: Callable[[Path], ComposeProvider] | None = None,
        confirm: Confirm | None = None,
        chooser: Chooser | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        self.locks = locks
        self.inspector = inspector or ArchiveInspector()
        self.catalog = catalog or BackupCatalog(config.backups.root, recent_limit=config.backups.recent_limit)
        self._compose_factory = compose_factory or (
            lambda setup_dir: ComposeProvider(project_dir=setup_dir, docker_bin=config.docker_bin)
        )
        self._confirm = confirm or _default_confirm
        self._chooser = chooser
        self._sleep = sleep

    def run(
        self,
        selection: DeploymentSelection,
        *,
        backup_choice: int | str | None = None,
    ) -> ReconcileReport:
        """Reconcile *selection* and return the report.

        *backup_choice* pre-selects a catalog entry (1-based, 0 for none) and
        bypasses the chooser callback.
        """
        report = ReconcileReport(outcome=Outcome.SUCCESS, phases=[], selection=selection)
        if self.locks is not None:
            guard = self.locks.deployment_lock(selection.setup_dir, timeout=self.config.lock_timeout)
        else:
            guard = nullcontext(None)
        try:
            with guard as handle:
                if handle is not None:
                    report.lock_wait_ms = handle.wait_ms
                self._run_phases(report, backup_choice)
        except LockTimeoutError as exc:
            self._fail(report, None, exc)
        return report

    # ------------------------------------------------------------------
    def _run_phases(self, report: ReconcileReport, backup_choice: int | str | None) -> None:
        compose = self._compose_factory(report.selection.setup_dir)
        steps: list[tuple[Phase, Callable[[ReconcileReport, ComposeProvider], PhaseResult]]] = [
            (Phase.CLEANUP, self._cleanup),
            (Phase.BACKUP_SELECTION, lambda rep, _compose: self._select_backup(rep, backup_choice)),
            (Phase.SECRETS, self._secrets),
            (Phase.RENDER, self._render),
            (Phase.CA_BOOTSTRAP, self._ca_bootstrap),
            (Phase.COORDINATION_DATA, self._coordination_data),
            (Phase.ACTIVATION, self._activate),
        ]
        for phase, step in steps:
            LOGGER.info("Phase %s", phase.value)
            try:
                result = step(report, compose)
            except _FATAL_TYPES as exc:
                self._fail(report, phase, exc)
                return
            report.phases.append(result)
            report.warnings.extend(result.warnings)
            if result.status is PhaseStatus.DECLINED:
                report.outcome = Outcome.DECLINED
                return

    def _fail(self, report: ReconcileReport, phase: Phase | None, exc: BaseException) -> None:
        LOGGER.error("Reconciliation failed%s: %s", f" in {phase.value}" if phase else "", exc)
        if phase is not None:
            detail = exc.logs if isinstance(exc, CAHealthTimeoutError) else None
            report.phases.append(PhaseResult(phase, PhaseStatus.FAILED, str(exc), detail=detail))
        report.outcome = Outcome.FAILED
        report.error = exc
        report.exit_code = exit_code_for(exc) or ExitCode.PROVIDER

    @staticmethod
    def _result(phase: Phase, message: str, warnings: list[str]) -> PhaseResult:
        status = PhaseStatus.WARNING if warnings else PhaseStatus.OK
        return PhaseResult(phase, status, message, list(warnings))

    def _cleanup(self, report: ReconcileReport, compose: ComposeProvider) -> PhaseResult:
        warnings: list[str] = []
        setup_dir = report.selection.setup_dir

        def attempt(label: str, action: Callable[[], object]) -> None:
            try:
                action()
            except ComposeError as exc:
                message = f"{label} failed: {exc}"
                LOGGER.warning(message)
                warnings.append(message)

        containers: list[str] = []
        volumes: list[str] = []
        attempt("Listing containers", lambda: containers.extend(compose.list_containers()))
        attempt("Listing volumes", lambda: volumes.extend(compose.list_volumes()))
        present = [setup_dir / name for name in MANAGED_ARTEFACTS if (setup_dir / name).exists()]

        doomed: list[str] = []
        if containers:
            doomed.append(f"{len(containers)} container(s)")
        if volumes:
            doomed.append(f"{len(volumes)} volume(s)")
        if present:
            doomed.append(", ".join(path.name for path in present))
        if doomed and not self._confirm(
            f"Remove the existing deployment in {setup_dir} ({'; '.join(doomed)})?", True
        ):
            return PhaseResult(Phase.CLEANUP, PhaseStatus.DECLINED, "Operator kept the existing deployment.",
                               warnings)

        if containers:
            attempt("Stopping containers", lambda: compose.stop_containers(containers))
            attempt("Removing containers", lambda: compose.remove_containers(containers))
        attempt("Pruning networks", compose.prune_networks)
        if volumes:
            attempt("Removing volumes", lambda: compose.remove_volumes(volumes))
        for path in present:
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as exc:
                raise CleanupError(f"Unable to remove {path}: {exc}") from exc
        try:
            setup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CleanupError(f"Unable to create {setup_dir}: {exc}") from exc
        removed = f"removed {len(present)} existing artefact(s)" if present else "no existing artefacts"
        return self._result(Phase.CLEANUP, f"Containers cleared; {removed}.", warnings)

    def _select_backup(self, report: ReconcileReport, backup_choice: int | str | None) -> PhaseResult:
        warnings: list[str] = []
        candidates = self.catalog.list_recent()
        if not candidates:
            return self._result(Phase.BACKUP_SELECTION, "No backups found; deploying fresh.", warnings)
        if backup_choice is not None:
            choice = backup_choice
        elif self._chooser is not None:
            choice = self._chooser(candidates)
        else:
            choice = 0
        archive = self.catalog.resolve_selection(choice, candidates, warnings=warnings)
        report.selection = report.selection.with_backup(archive)
        if archive is None:
            return self._result(Phase.BACKUP_SELECTION, "No backup selected; deploying fresh.", warnings)
        return self._result(Phase.BACKUP_SELECTION, f"Restoring from {archive.name}.", warnings)

    def _secrets(self, report: ReconcileReport, _compose: ComposeProvider) -> PhaseResult:
        manager = SecretLifecycleManager(
            self.inspector,
            byte_length=self.config.secrets.byte_length,
            partial_restore=self.config.secrets.partial_restore,
        )
        result = manager.reconcile(report.selection)
        report.secrets = result
        summary = ", ".join(f"{category.relative_path}={source.value}" for category, source in result.sources.items())
        return self._result(Phase.SECRETS, f"Secrets ready ({summary}).", result.warnings)

    def _render(self, report: ReconcileReport, _compose: ComposeProvider) -> PhaseResult:
        selection = report.selection
        secrets = report.secrets
        if secrets is None:
            raise TemplateError("Secrets must be resolved before rendering.")
        context = {
            "domain": selection.domain,
            "cert_name": selection.cert_name,
            "mode": selection.mode.value,
            "auth_secret": secrets.value(SecretCategory.AUTH_SECRET),
            "datastore_key": secrets.value(SecretCategory.DATASTORE_ENCRYPTION_KEY),
        }
        targets: list[tuple[str, Path, int]] = [
            ("netbird/relay.env.j2", selection.setup_dir / "relay.env", 0o640),
            ("netbird/dashboard.env.j2", selection.setup_dir / "dashboard.env", 0o644),
            ("netbird/management.json.j2", selection.setup_dir / "management" / "config.json", 0o644),
            (selection.mode.compose_template, selection.setup_dir / "docker-compose.yml", 0o644),
        ]
        changed = 0
        for template, destination, mode in targets:
            if self.templates.render_to_path(template, destination, context, mode=mode):
                changed += 1
        return self._result(Phase.RENDER, f"Rendered {len(targets)} files ({changed} changed).", [])

    def _ca_bootstrap(self, report: ReconcileReport, compose: ComposeProvider) -> PhaseResult:
        bootstrap = CABootstrap(compose, self.inspector, self.config.ca, sleep=self._sleep)
        result = bootstrap.run(report.selection)
        report.ca = result
        return self._result(Phase.CA_BOOTSTRAP, f"CA {result.state.value}.", result.warnings)

    def _coordination_data(self, report: ReconcileReport, _compose: ComposeProvider) -> PhaseResult:
        selection = report.selection
        warnings: list[str] = []
        backup = selection.backup
        if backup is None:
            return self._result(Phase.COORDINATION_DATA, "No backup selected; nothing to restore.", warnings)
        if not self.inspector.manifest_contains(backup.path, COORDINATION_DATA):
            message = f"Backup {backup.name} has no management data; leaving {COORDINATION_DATA} untouched."
            LOGGER.warning(message)
            warnings.append(message)
            return self._result(Phase.COORDINATION_DATA, "Management data not restored.", warnings)

        outcome = self.inspector.extract(backup.path, [COORDINATION_DATA], selection.setup_dir)
        if not outcome.ok:
            warnings.append(outcome.message or f"Restoring {COORDINATION_DATA} failed.")
            return self._result(Phase.COORDINATION_DATA, "Management data restore incomplete.", warnings)
        try:
            _normalise_modes(selection.setup_dir / COORDINATION_DATA)
        except OSError as exc:
            message = f"Unable to normalise permissions under {COORDINATION_DATA}: {exc}"
            LOGGER.warning(message)
            warnings.append(message)
        return self._result(Phase.COORDINATION_DATA, f"Restored {COORDINATION_DATA} from {backup.name}.", warnings)

    def _activate(self, report: ReconcileReport, compose: ComposeProvider) -> PhaseResult:
        compose.up()
        self._sleep(self.config.activation_settle_seconds)
        return self._result(Phase.ACTIVATION, "Services started.", [])


def _normalise_modes(root: Path) -> None:
    os.chmod(root, 0o755)
    for current, dirs, files in os.walk(root):
        for name in [*dirs, *files]:
            os.chmod(os.path.join(current, name), 0o755)


__all__ = [
    "CleanupError",
    "DeploymentMode",
    "DeploymentReconciler",
    "DeploymentSelection",
    "FATAL_ERRORS",
    "MANAGED_ARTEFACTS",
    "Outcome",
    "Phase",
    "PhaseResult",
    "PhaseStatus",
    "ReconcileReport",
    "exit_code_for",
]
