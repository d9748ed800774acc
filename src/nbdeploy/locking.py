"""Advisory file locks guarding reconciliation runs.

A deployment run assumes it is the only writer of its setup directory. The
:class:`LockManager` turns that assumption into an enforced invariant with an
``fcntl`` lock per setup directory under the runtime directory. Lock files are
left in place after release so operators can inspect the last holder.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


def _slug(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in value)
    return cleaned.strip("-") or "root"


class LockManager:
    """Hand out advisory locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Record the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path_for(self, setup_dir: Path) -> Path:
        """Return the lock file guarding *setup_dir*."""
        resolved = Path(setup_dir).expanduser().resolve()
        return self.runtime_dir / f"deploy-{_slug(str(resolved))}.lock"

    @contextmanager
    def deployment_lock(
        self,
        setup_dir: Path,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *setup_dir* for the duration of the block."""
        path = self.lock_path_for(setup_dir)
        with self._acquire(path, self.default_timeout if timeout is None else timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= timeout:
                        raise LockTimeoutError(
                            f"Timed out after {timeout:.1f}s waiting for lock {path}. "
                            "Another nbdeploy run may be in progress."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.pwrite(fd, json.dumps(metadata).encode("utf-8"), 0)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
