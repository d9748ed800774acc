"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import subprocess
import tarfile
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path

import pytest

from nbdeploy.config import AppConfig, load_config
from nbdeploy.providers.compose import ComposeError, ProvisionerStatus, ServiceHealth


class FakeCompose:
    """In-memory stand-in for :class:`nbdeploy.providers.compose.ComposeProvider`."""

    def __init__(
        self,
        *,
        health: Sequence[ServiceHealth] = (ServiceHealth.HEALTHY,),
        provisioner_present: bool = False,
        containers: Iterable[str] = (),
        volumes: Iterable[str] = (),
        failing_images: Iterable[str] = (),
        fingerprint: str | None = None,
    ) -> None:
        """Configure the scripted responses."""
        self._health = list(health)
        self.provisioner_present = provisioner_present
        self.containers = list(containers)
        self.volumes = list(volumes)
        self.failing_images = set(failing_images)
        self.fingerprint = fingerprint
        self.calls: list[tuple[object, ...]] = []
        self.provisioners_added = 0

    def calls_named(self, name: str) -> list[tuple[object, ...]]:
        """Return recorded calls for *name*."""
        return [call for call in self.calls if call[0] == name]

    def up(self, service: str | None = None) -> None:
        self.calls.append(("up", service))

    def ps(self, service: str | None = None) -> None:
        self.calls.append(("ps", service))

    def health(self, service: str) -> ServiceHealth:
        self.calls.append(("health", service))
        if len(self._health) > 1:
            return self._health.pop(0)
        return self._health[0] if self._health else ServiceHealth.UNKNOWN

    def exec(self, service: str, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        self.calls.append(("exec", service, tuple(args)))
        if list(args[:3]) == ["step", "certificate", "fingerprint"] and self.fingerprint:
            return subprocess.CompletedProcess(list(args), 0, stdout=f"{self.fingerprint}\n", stderr="")
        return subprocess.CompletedProcess(list(args), 1, stdout="", stderr="not available")

    def restart(self, service: str) -> None:
        self.calls.append(("restart", service))

    def logs(self, service: str, *, tail: int | None = None) -> str:
        self.calls.append(("logs", service, tail))
        return "step-ca: waiting for database"

    def provisioners(self, service: str, provisioner_type: str = "ACME") -> ProvisionerStatus:
        self.calls.append(("provisioners", service))
        return ProvisionerStatus.PRESENT if self.provisioner_present else ProvisionerStatus.ABSENT

    def add_provisioner(self, service: str, name: str, provisioner_type: str = "ACME") -> None:
        self.calls.append(("add_provisioner", service, name))
        self.provisioners_added += 1
        self.provisioner_present = True

    def list_containers(self) -> list[str]:
        self.calls.append(("list_containers",))
        return list(self.containers)

    def stop_containers(self, ids: Sequence[str]) -> None:
        self.calls.append(("stop_containers", tuple(ids)))

    def remove_containers(self, ids: Sequence[str]) -> None:
        self.calls.append(("remove_containers", tuple(ids)))
        self.containers = [item for item in self.containers if item not in ids]

    def prune_networks(self) -> None:
        self.calls.append(("prune_networks",))

    def list_volumes(self) -> list[str]:
        self.calls.append(("list_volumes",))
        return list(self.volumes)

    def remove_volumes(self, names: Sequence[str]) -> None:
        self.calls.append(("remove_volumes", tuple(names)))

    def pull(self, image: str) -> None:
        self.calls.append(("pull", image))
        if image in self.failing_images:
            raise ComposeError(f"docker pull failed (exit 1): manifest for {image} not found")


def write_archive(path: Path, files: Mapping[str, str | bytes]) -> Path:
    """Write a gzip tarball at *path* holding *files* (member name -> content)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    directories: set[str] = set()
    for name in files:
        parts = name.split("/")[:-1]
        for index in range(1, len(parts) + 1):
            directories.add("/".join(parts[:index]))
    with tarfile.open(path, "w:gz") as archive:
        for directory in sorted(directories):
            info = tarfile.TarInfo(directory)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            archive.addfile(info)
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o600
            archive.addfile(info, io.BytesIO(data))
    return path


SECRET_FILES: dict[str, str] = {
    "management/nb_auth_secret": "restored-auth\n",
    "management/datastore_encryption_key": "restored-datastore\n",
    "step-ca-data/password": "restored-ca-password\n",
}

CA_FILES: dict[str, str] = {
    "step-ca-data/config/ca.json": '{"root": "/home/step/certs/root_ca.crt"}\n',
    "step-ca-data/certs/intermediate_ca.crt": "intermediate\n",
    "step-ca-data/secrets/root_ca_key": "key\n",
}


@pytest.fixture
def fake_compose() -> FakeCompose:
    """Return a compose double whose CA is immediately healthy."""
    return FakeCompose()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building configs rooted under ``tmp_path``."""

    def factory(**overrides: object) -> AppConfig:
        base: dict[str, object] = {
            "setup_dir": str(tmp_path / "setup"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 1.0,
            "activation_settle_seconds": 0.0,
            "backups": {"root": str(tmp_path / "backups")},
            "ca": {"uid": os.getuid(), "gid": os.getgid()},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                merged = dict(base[key])  # type: ignore[arg-type]
                merged.update(value)
                base[key] = merged
            else:
                base[key] = value
        return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=base)

    return factory

