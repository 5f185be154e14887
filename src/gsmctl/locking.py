"""Advisory file locks serialising mutations of gsmctl instances.

Locks are ``fcntl.flock`` locks on small JSON files under the runtime
directory. A global lock guards instance creation and identifier allocation;
its file, ``.gsmctl.lock``, uses a name no instance can take. Per-instance
locks guard install, update, backup and uninstall flows. Lock files persist
after release so operators can see who last held them.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .instances import validate_instance_name

GLOBAL_LOCK_NAME = ".gsmctl"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire global and per-instance locks under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, *, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global gsmctl lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance.

        *name* is validated first so it can never point outside ``runtime_dir``.
        """
        validate_instance_name(name, operation="lock.instance")
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.write(fd, metadata.encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
