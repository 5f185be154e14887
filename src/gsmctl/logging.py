"""Structured operation log for gsmctl commands.

Each CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps, the lock wait time and a final result, then appends a single
JSON line to ``<logs_dir>/operations.jsonl`` when it closes. Logging problems
never break the command: the logger disables itself on the first failure.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _actor() -> dict[str, object]:
    return {
        "user": os.environ.get("SUDO_USER") or os.environ.get("USER") or "unknown",
        "uid": os.getuid(),
    }


@dataclass
class OperationScope:
    """Mutable record of a single command invocation."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started: float = field(default_factory=time.monotonic)
    actor: dict[str, object] = field(default_factory=_actor)
    lock_wait_ms: int | None = None
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    rc: int = 0

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        self.steps.append({"name": name, "status": status, "detail": detail})

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Remember how long the command waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors if errors is not None else [message],
            backups=backups,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int,
    ) -> None:
        self.rc = rc
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _json_safe(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON line representation of this scope."""
        return {
            "ts": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "actor": self.actor,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "steps": self.steps,
            "result": self.result,
            "rc": self.rc,
        }


class StructuredLogger:
    """Append operation records to a JSON lines file."""

    def __init__(self, logs_dir: Path, *, enabled: bool = True) -> None:
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._enabled = enabled
        if not enabled:
            return
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a command inside a logged operation scope."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
