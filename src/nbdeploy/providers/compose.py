"""Docker Compose provider for the control plane services."""
from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ComposeError(RuntimeError):
    """Raised when docker or docker compose operations fail."""


class ServiceHealth(str, Enum):
    """Health of a compose service as reported by its healthcheck."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    UNKNOWN = "unknown"


class ProvisionerStatus(str, Enum):
    """Whether the CA already carries the requested provisioner type."""

    PRESENT = "present"
    ABSENT = "absent"


_HEALTH_TEXT = re.compile(r"\((healthy|unhealthy|health: starting)\)")
_PROVISIONER_TYPE_TEXT = re.compile(r'"type"\s*:\s*"(?P<type>[^"]+)"')


def parse_health(output: str) -> ServiceHealth:
    """Return the service health described by ``docker compose ps`` *output*."""
    text = output.strip()
    if not text:
        return ServiceHealth.UNKNOWN

    records: list[object] = []
    try:
        loaded = json.loads(text)
    except json.JSONDecodeError:
        for line in text.splitlines():
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                records = []
                break
    else:
        records = loaded if isinstance(loaded, list) else [loaded]

    if records:
        for record in records:
            if not isinstance(record, dict):
                continue
            health = str(record.get("Health", "")).strip().lower()
            if health:
                try:
                    return ServiceHealth(health)
                except ValueError:
                    return ServiceHealth.UNKNOWN
        return ServiceHealth.UNKNOWN

    match = _HEALTH_TEXT.search(text)
    if match is None:
        return ServiceHealth.UNKNOWN
    label = match.group(1)
    if label == "health: starting":
        return ServiceHealth.STARTING
    return ServiceHealth(label)


def parse_provisioners(output: str, provisioner_type: str = "ACME") -> ProvisionerStatus:
    """Return whether ``step ca provisioner list`` *output* includes *provisioner_type*."""
    wanted = provisioner_type.upper()
    text = output.strip()
    if not text:
        return ProvisionerStatus.ABSENT
    try:
        loaded = json.loads(text)
    except json.JSONDecodeError:
        types = [match.group("type") for match in _PROVISIONER_TYPE_TEXT.finditer(text)]
    else:
        entries = loaded if isinstance(loaded, list) else [loaded]
        types = [str(entry.get("type", "")) for entry in entries if isinstance(entry, dict)]
    if any(item.upper() == wanted for item in types):
        return ProvisionerStatus.PRESENT
    return ProvisionerStatus.ABSENT


@dataclass(slots=True)
class ComposeProvider:
    """Drive docker and docker compose for a deployment directory."""

    project_dir: Path
    docker_bin: str = "docker"

    # compose-level operations -------------------------------------------
    def up(self, service: str | None = None) -> subprocess.CompletedProcess[str]:
        """Start all services, or only *service*, in the background."""
        args = ["up", "-d"]
        if service is not None:
            args.append(service)
        return self._compose(args)

    def ps(self, service: str | None = None) -> subprocess.CompletedProcess[str]:
        """Return ``docker compose ps`` output."""
        args = ["ps"]
        if service is not None:
            args.append(service)
        return self._compose(args, check=False)

    def health(self, service: str) -> ServiceHealth:
        """Return the current health of *service*."""
        result = self._compose(["ps", "--format", "json", service], check=False)
        if result.returncode == 0:
            state = parse_health(result.stdout or "")
            if state is not ServiceHealth.UNKNOWN:
                return state
        fallback = self.ps(service)
        return parse_health(fallback.stdout or "")

    def exec(self, service: str, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run *args* inside the running *service* container."""
        return self._compose(["exec", "-T", service, *args], check=check)

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart *service*."""
        return self._compose(["restart", service])

    def logs(self, service: str, *, tail: int | None = None) -> str:
        """Return recent log output for *service*."""
        args = ["logs", "--no-color"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(service)
        result = self._compose(args, check=False)
        return ((result.stdout or "") + (result.stderr or "")).strip()

    def provisioners(self, service: str, provisioner_type: str = "ACME") -> ProvisionerStatus:
        """Return whether the CA in *service* has a provisioner of *provisioner_type*."""
        result = self.exec(service, ["step", "ca", "provisioner", "list"])
        return parse_provisioners(result.stdout or "", provisioner_type)

    def add_provisioner(self, service: str, name: str, provisioner_type: str = "ACME") -> None:
        """Add a provisioner called *name* to the CA in *service*."""
        self.exec(service, ["step", "ca", "provisioner", "add", name, "--type", provisioner_type])

    # docker-level operations --------------------------------------------
    def list_containers(self) -> list[str]:
        """Return the ids of every container on the host."""
        result = self._docker(["ps", "-aq"])
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def stop_containers(self, ids: Sequence[str]) -> None:
        """Stop the containers in *ids*."""
        if ids:
            self._docker(["stop", *ids])

    def remove_containers(self, ids: Sequence[str]) -> None:
        """Remove the containers in *ids*."""
        if ids:
            self._docker(["rm", *ids])

    def prune_networks(self) -> None:
        """Remove unused networks."""
        self._docker(["network", "prune", "-f"])

    def list_volumes(self) -> list[str]:
        """Return the names of every volume on the host."""
        result = self._docker(["volume", "ls", "-q"])
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def remove_volumes(self, names: Sequence[str]) -> None:
        """Remove the volumes in *names*."""
        if names:
            self._docker(["volume", "rm", *names])

    def pull(self, image: str) -> None:
        """Pull *image* from its registry."""
        self._docker(["pull", image])

    # ------------------------------------------------------------------
    def _compose(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, "compose", *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=" ".join([self.docker_bin, "compose", *args[:2]]),
            cwd=self.project_dir,
        )

    def _docker(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=" ".join([self.docker_bin, *args[:2]]),
            cwd=None,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        cwd: Path | None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise ComposeError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ComposeError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ProvisionerStatus",
    "ServiceHealth",
    "parse_health",
    "parse_provisioners",
]
