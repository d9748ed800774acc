"""Bring-up of the step-ca certificate authority.

The bootstrap is a small state machine. A fresh CA is started, polled until
its healthcheck reports healthy, and then given an ACME provisioner unless one
already exists. When the selected backup carries CA state the directory is
restored verbatim instead and the CA is trusted as-is.
"""
from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .archive import ArchiveInspector, member_matches
from .config import CAConfig
from .providers.compose import ComposeError, ComposeProvider, ProvisionerStatus, ServiceHealth
from .secret_store import SecretCategory
from .selection import DeploymentSelection

LOGGER = logging.getLogger(__name__)

CA_STATE_DIR = "step-ca-data"
ROOT_CERT_RELATIVE = "certs/root_ca.crt"
RESTORE_EXCLUDES: tuple[str, ...] = (
    SecretCategory.CA_PASSWORD.relative_path,
    f"{CA_STATE_DIR}/db",
    f"{CA_STATE_DIR}/templates",
)


class CABootstrapError(RuntimeError):
    """Raised when the certificate authority cannot be brought up."""


class CAHealthTimeoutError(CABootstrapError):
    """Raised when the CA never reports healthy within the timeout."""

    def __init__(self, message: str, *, logs: str = "") -> None:
        super().__init__(message)
        self.logs = logs


class CAState(str, Enum):
    """States visited while bootstrapping the CA."""

    UNINITIALIZED = "uninitialized"
    DIRECTORY_PREPARED = "directory_prepared"
    STARTING = "starting"
    HEALTH_POLLING = "health_polling"
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    PROVISIONER_CHECKED = "provisioner_checked"
    PROVISIONER_PRESENT = "provisioner_present"
    PROVISIONER_ADDED = "provisioner_added"
    RESTORED = "restored"


@dataclass(slots=True)
class CABootstrapResult:
    """Terminal state of a bootstrap run."""

    state: CAState
    history: list[CAState]
    fingerprint: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "state": self.state.value,
            "history": [item.value for item in self.history],
            "fingerprint": self.fingerprint,
            "warnings": list(self.warnings),
        }


def root_fingerprint(path: Path) -> str:
    """Return the SHA-256 fingerprint of the certificate at *path* as hex."""
    data = path.read_bytes()
    try:
        cert = x509.load_pem_x509_certificate(data)
    except ValueError:
        cert = x509.load_der_x509_certificate(data)
    return cert.fingerprint(hashes.SHA256()).hex()


class CABootstrap:
    """Restore or start the CA for a deployment selection."""

    def __init__(
        self,
        compose: ComposeProvider,
        inspector: ArchiveInspector,
        config: CAConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.compose = compose
        self.inspector = inspector
        self.config = config
        self._sleep = sleep
        self._history: list[CAState] = []
        self._warnings: list[str] = []

    def run(self, selection: DeploymentSelection) -> CABootstrapResult:
        """Drive the CA to a terminal state for *selection*."""
        self._history = [CAState.UNINITIALIZED]
        self._warnings = []
        state_dir = selection.setup_dir / CA_STATE_DIR

        if selection.backup is not None and self._archive_has_ca_state(selection.backup.path):
            if self._restore(selection, state_dir):
                self._enter(CAState.RESTORED)
                return self._finish(CAState.RESTORED, selection)

        self._prepare_directory(state_dir)
        self._enter(CAState.DIRECTORY_PREPARED)

        self.compose.up(self.config.service)
        self._enter(CAState.STARTING)

        self._poll_health()

        status = self.compose.provisioners(self.config.service)
        self._enter(CAState.PROVISIONER_CHECKED)
        if status is ProvisionerStatus.PRESENT:
            LOGGER.info("ACME provisioner already present; leaving CA unchanged.")
            self._enter(CAState.PROVISIONER_PRESENT)
            return self._finish(CAState.PROVISIONER_PRESENT, selection)

        self.compose.add_provisioner(self.config.service, self.config.provisioner_name)
        self.compose.restart(self.config.service)
        self._sleep(self.config.settle_seconds)
        self._enter(CAState.PROVISIONER_ADDED)
        return self._finish(CAState.PROVISIONER_ADDED, selection)

    # ------------------------------------------------------------------
    def _enter(self, state: CAState) -> None:
        LOGGER.debug("CA state -> %s", state.value)
        self._history.append(state)

    def _warn(self, message: str) -> None:
        LOGGER.warning(message)
        self._warnings.append(message)

    def _archive_has_ca_state(self, archive: Path) -> bool:
        password = SecretCategory.CA_PASSWORD.relative_path
        for member in self.inspector.manifest(archive):
            if member == CA_STATE_DIR or member_matches(member, password):
                continue
            if member_matches(member, CA_STATE_DIR):
                return True
        return False

    def _restore(self, selection: DeploymentSelection, state_dir: Path) -> bool:
        backup = selection.backup
        if backup is None:
            return False
        outcome = self.inspector.extract(
            backup.path,
            [CA_STATE_DIR],
            selection.setup_dir,
            exclude=RESTORE_EXCLUDES,
        )
        if not outcome.ok:
            self._warn(f"CA state restore from {backup.name} failed; starting a fresh CA. {outcome.message or ''}".strip())
            self._discard_partial_state(state_dir)
            return False
        if not (state_dir / "config").exists():
            self._warn(f"Backup {backup.name} holds no usable CA configuration; starting a fresh CA.")
            self._discard_partial_state(state_dir)
            return False
        self._chown_tree(state_dir)
        LOGGER.info("Restored CA state from %s", backup.name)
        return True

    def _discard_partial_state(self, state_dir: Path) -> None:
        """Remove whatever a failed restore left under *state_dir*, keeping the CA password."""
        if not state_dir.is_dir():
            return
        password = Path(SecretCategory.CA_PASSWORD.relative_path).name
        for entry in state_dir.iterdir():
            if entry.name == password:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                raise CABootstrapError(f"Unable to discard partially restored {entry}: {exc}") from exc
        LOGGER.info("Discarded partially restored CA state under %s", state_dir)

    def _prepare_directory(self, state_dir: Path) -> None:
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CABootstrapError(f"Unable to create {state_dir}: {exc}") from exc
        self._chown_tree(state_dir)

    def _chown_tree(self, root: Path) -> None:
        uid, gid = self.config.uid, self.config.gid
        try:
            os.chown(root, uid, gid)
            for current, dirs, files in os.walk(root):
                for name in [*dirs, *files]:
                    os.chown(os.path.join(current, name), uid, gid, follow_symlinks=False)
        except OSError as exc:
            raise CABootstrapError(f"Unable to set ownership {uid}:{gid} on {root}: {exc}") from exc

    def _poll_health(self) -> None:
        self._enter(CAState.HEALTH_POLLING)
        interval = self.config.health_interval
        timeout = self.config.health_timeout
        elapsed = 0.0
        last = ServiceHealth.UNKNOWN
        while elapsed < timeout:
            last = self.compose.health(self.config.service)
            if last is ServiceHealth.HEALTHY:
                self._enter(CAState.HEALTHY)
                return
            self._sleep(interval)
            elapsed += interval

        self._enter(CAState.TIMED_OUT)
        logs = self.compose.logs(self.config.service, tail=self.config.log_tail)
        raise CAHealthTimeoutError(
            f"CA service '{self.config.service}' did not become healthy within "
            f"{timeout:g}s (last status: {last.value}).",
            logs=logs,
        )

    def _finish(self, state: CAState, selection: DeploymentSelection) -> CABootstrapResult:
        fingerprint = self._fingerprint(selection.setup_dir / CA_STATE_DIR / ROOT_CERT_RELATIVE)
        return CABootstrapResult(
            state=state,
            history=list(self._history),
            fingerprint=fingerprint,
            warnings=list(self._warnings),
        )

    def _fingerprint(self, local_cert: Path) -> str | None:
        if local_cert.is_file():
            try:
                return root_fingerprint(local_cert)
            except (OSError, ValueError) as exc:
                LOGGER.debug("Local fingerprint of %s failed: %s", local_cert, exc)
        try:
            result = self.compose.exec(
                self.config.service,
                ["step", "certificate", "fingerprint", self.config.root_cert_container_path],
                check=False,
            )
        except ComposeError as exc:
            self._warn(f"Unable to read the CA root fingerprint: {exc}")
            return None
        value = (result.stdout or "").strip()
        if result.returncode != 0 or not value:
            self._warn("Unable to read the CA root fingerprint.")
            return None
        return value


__all__ = [
    "CABootstrap",
    "CABootstrapError",
    "CABootstrapResult",
    "CAHealthTimeoutError",
    "CAState",
    "RESTORE_EXCLUDES",
    "root_fingerprint",
]
