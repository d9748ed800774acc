"""Configuration loader for nbdeploy.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/nbdeploy/config.yml`` (or an override path).
3. Environment variables prefixed with ``NBDEPLOY_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NBDEPLOY_CA__HEALTH_TIMEOUT=30
    export NBDEPLOY_BACKUPS__ROOT=/srv/backups

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in packaging
    raise RuntimeError(
        "PyYAML is required to load nbdeploy configuration. Install with "
        "`pip install nbdeploy` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NBDEPLOY_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

PARTIAL_RESTORE_POLICIES = {"fill-missing", "regenerate-all"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path
    recent_limit: int = 5
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "recent_limit": self.recent_limit,
            "compression_level": self.compression_level,
        }


@dataclass(frozen=True)
class CAConfig:
    """Certificate authority bring-up settings."""

    service: str = "step-ca"
    uid: int = 1000
    gid: int = 1000
    health_interval: float = 2.0
    health_timeout: float = 10.0
    settle_seconds: float = 5.0
    provisioner_name: str = "acme"
    root_cert_container_path: str = "/home/step/certs/root_ca.crt"
    log_tail: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "uid": self.uid,
            "gid": self.gid,
            "health_interval": self.health_interval,
            "health_timeout": self.health_timeout,
            "settle_seconds": self.settle_seconds,
            "provisioner_name": self.provisioner_name,
            "root_cert_container_path": self.root_cert_container_path,
            "log_tail": self.log_tail,
        }


@dataclass(frozen=True)
class SecretsConfig:
    """Secret generation and restore policy."""

    byte_length: int = 32
    partial_restore: str = "fill-missing"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"byte_length": self.byte_length, "partial_restore": self.partial_restore}


@dataclass(frozen=True)
class UpdateConfig:
    """Images refreshed by ``nbdeploy update``."""

    images: tuple[str, ...] = ()
    settle_seconds: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"images": list(self.images), "settle_seconds": self.settle_seconds}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nbdeploy."""

    config_file: Path
    setup_dir: Path
    default_domain: str
    cert_name: str
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    docker_bin: str
    activation_settle_seconds: float
    backups: BackupConfig
    ca: CAConfig
    secrets: SecretsConfig
    update: UpdateConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "setup_dir": str(self.setup_dir),
            "default_domain": self.default_domain,
            "cert_name": self.cert_name,
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "docker_bin": self.docker_bin,
            "activation_settle_seconds": self.activation_settle_seconds,
            "backups": self.backups.to_dict(),
            "ca": self.ca.to_dict(),
            "secrets": self.secrets.to_dict(),
            "update": self.update.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nbdeploy/config.yml",
    "setup_dir": "/root",
    "default_domain": "mylocaldomain.dev",
    "cert_name": "Sentry Vault",
    "logs_dir": "/var/log/nbdeploy",
    "runtime_dir": "/run/nbdeploy",
    "templates_dir": "/etc/nbdeploy/templates",
    "lock_timeout": 30.0,
    "docker_bin": "docker",
    "activation_settle_seconds": 3.0,
    "backups": {
        "root": "/backups",
        "index": None,
        "recent_limit": 5,
        "compression_level": None,
    },
    "ca": {
        "service": "step-ca",
        "uid": 1000,
        "gid": 1000,
        "health_interval": 2.0,
        "health_timeout": 10.0,
        "settle_seconds": 5.0,
        "provisioner_name": "acme",
        "root_cert_container_path": "/home/step/certs/root_ca.crt",
        "log_tail": 50,
    },
    "secrets": {
        "byte_length": 32,
        "partial_restore": "fill-missing",
    },
    "update": {
        "images": [
            "smallstep/step-ca:latest",
            "traefik:latest",
            "netbirdio/dashboard:latest",
            "netbirdio/signal:latest",
            "netbirdio/relay:latest",
            "netbirdio/management:latest",
        ],
        "settle_seconds": 3.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("backups", "ca", "secrets", "update")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    domain = raw.get("default_domain")
    if not isinstance(domain, str) or not domain.strip():
        raise ConfigError("default_domain must be a non-empty string.")

    secrets_map = _as_dict(raw.get("secrets"), "secrets")
    policy = str(secrets_map.get("partial_restore", "fill-missing"))
    if policy not in PARTIAL_RESTORE_POLICIES:
        allowed = ", ".join(sorted(PARTIAL_RESTORE_POLICIES))
        raise ConfigError(
            f"Unsupported secrets.partial_restore policy '{policy}'. Allowed: {allowed}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/backups"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    recent_limit = _expect_int(backups_mapping.get("recent_limit"), "backups.recent_limit", default=5)
    if recent_limit <= 0:
        raise ConfigError("backups.recent_limit must be greater than zero.")
    compression_level: int | None = None
    compression_level_raw = backups_mapping.get("compression_level")
    if compression_level_raw is not None:
        compression_level = _expect_int(
            compression_level_raw, "backups.compression_level", default=6
        )
        if not 1 <= compression_level <= 9:
            raise ConfigError("backups.compression_level must be between 1 and 9.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        recent_limit=recent_limit,
        compression_level=compression_level,
    )

    ca_mapping = _as_dict(raw.get("ca"), "ca")
    default_ca = CAConfig()
    ca = CAConfig(
        service=str(ca_mapping.get("service", default_ca.service)),
        uid=_expect_int(ca_mapping.get("uid"), "ca.uid", default=default_ca.uid),
        gid=_expect_int(ca_mapping.get("gid"), "ca.gid", default=default_ca.gid),
        health_interval=_expect_positive_float(
            ca_mapping.get("health_interval"), "ca.health_interval", default=2.0
        ),
        health_timeout=_expect_positive_float(
            ca_mapping.get("health_timeout"), "ca.health_timeout", default=10.0
        ),
        settle_seconds=_expect_non_negative_float(
            ca_mapping.get("settle_seconds"), "ca.settle_seconds", default=5.0
        ),
        provisioner_name=str(ca_mapping.get("provisioner_name", default_ca.provisioner_name)),
        root_cert_container_path=str(
            ca_mapping.get("root_cert_container_path", default_ca.root_cert_container_path)
        ),
        log_tail=_expect_int(ca_mapping.get("log_tail"), "ca.log_tail", default=50),
    )

    secrets_mapping = _as_dict(raw.get("secrets"), "secrets")
    byte_length = _expect_int(secrets_mapping.get("byte_length"), "secrets.byte_length", default=32)
    if byte_length < 16:
        raise ConfigError("secrets.byte_length must be at least 16 bytes.")
    secrets = SecretsConfig(
        byte_length=byte_length,
        partial_restore=str(secrets_mapping.get("partial_restore", "fill-missing")),
    )

    update_mapping = _as_dict(raw.get("update"), "update")
    update = UpdateConfig(
        images=_as_string_tuple(update_mapping.get("images"), "update.images"),
        settle_seconds=_expect_non_negative_float(
            update_mapping.get("settle_seconds"), "update.settle_seconds", default=3.0
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        setup_dir=_to_path(raw.get("setup_dir")),
        default_domain=str(raw.get("default_domain")).strip(),
        cert_name=str(raw.get("cert_name", "Sentry Vault")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        docker_bin=str(raw.get("docker_bin", "docker")),
        activation_settle_seconds=_expect_non_negative_float(
            raw.get("activation_settle_seconds"), "activation_settle_seconds", default=3.0
        ),
        backups=backups,
        ca=ca,
        secrets=secrets,
        update=update,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_string_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        items.append(item.strip())
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CAConfig",
    "ConfigError",
    "PARTIAL_RESTORE_POLICIES",
    "SecretsConfig",
    "UpdateConfig",
    "load_config",
]
