"""Structured operation logging for nbdeploy commands.

Each CLI invocation opens an :class:`OperationScope` via
:meth:`StructuredLogger.operation`. Steps and the final result are collected in
memory and flushed as a single JSON line to ``operations.jsonl`` when the scope
exits. Logging is best-effort: when the log directory cannot be created or a
write fails the logger disables itself rather than failing the command.
"""
from __future__ import annotations

import getpass
import json
import os
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[str]:
    if values is None:
        return []
    return [str(item) for item in values]


@dataclass(slots=True)
class OperationStep:
    """Single step recorded during an operation."""

    name: str
    status: str
    detail: str | None
    at: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status, "detail": self.detail, "at": self.at}


@dataclass(slots=True)
class OperationScope:
    """Collect steps and the final result for one logged operation."""

    logger: StructuredLogger
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    started_at: str = field(default_factory=_now_iso)
    steps: list[OperationStep] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None
    _started: float = field(default_factory=time.monotonic)

    @property
    def actor(self) -> Mapping[str, object]:
        """Return a description of the invoking user."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):  # pragma: no cover - depends on passwd entries
            user = "unknown"
        return {"user": user, "uid": os.getuid(), "pid": os.getpid()}

    def add_step(self, name: str, *, status: str = "info", detail: str | None = None) -> None:
        """Record an intermediate step."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail, at=_now_iso()))

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, warnings=warnings,
                         backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result("warning", message, changed=changed, warnings=warnings,
                         errors=errors, backups=backups, context=context)

    def error(
        self,
        message: str,
        *,
        errors: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        error_list = _as_list(errors) or [message]
        self._set_result("error", message, errors=error_list, rc=rc, context=context)

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "backups": _as_list(backups),
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record flushed to the operations log."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "ts": self.started_at,
            "command": self.command,
            "args": _sanitise(dict(self.args)),
            "target": _sanitise(dict(self.target)) if self.target is not None else None,
            "actor": _sanitise(dict(self.actor)),
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "steps": [step.to_dict() for step in self.steps],
            "result": self.result,
        }

    def __enter__(self) -> OperationScope:
        """Enter the scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Record an error result for unhandled exceptions and flush the record."""
        if self.result is None:
            if exc is not None and not _is_clean_exit(exc):
                self.error(f"Unhandled exception: {exc}", errors=[repr(exc)])
            else:
                self.success("Operation completed.")
        self.logger.write(self.to_record())


def _is_clean_exit(exc: BaseException) -> bool:
    code = getattr(exc, "exit_code", getattr(exc, "code", None))
    return type(exc).__name__ == "Exit" and code in (0, None)


class StructuredLogger:
    """Append JSON operation records under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging when unavailable."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines log."""
        return self._operations_log_path

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records *command* when it exits."""
        return OperationScope(logger=self, command=command, args=dict(args or {}), target=target)

    def write(self, record: Mapping[str, object]) -> None:
        """Append *record* to the operations log when enabled."""
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
