"""Start, stop and talk to running instances.

Process state is owned by the operating system: nothing here caches whether
an instance runs. Standalone instances are found through their pid file,
systemd managed instances through ``systemctl is-active``.
"""
from __future__ import annotations

import os
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .control import ChannelWrite, write_command
from .errors import (
    ConfigurationError,
    GsmError,
    NotFoundError,
    NotRunningError,
    ValidationError,
)
from .instances import Instance
from .providers.systemd import SystemdProvider

DEFAULT_LOG_LINES = 100
POLL_INTERVAL = 1.0


class LifecycleError(GsmError):
    """Raised when the management script or service manager reports failure."""


def process_alive(pid: int) -> bool:
    """Return True when *pid* exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        state = stat_path.read_text(encoding="utf-8").rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


@dataclass(slots=True)
class LifecycleResult:
    """What a start or stop call did."""

    action: str
    changed: bool
    active: bool
    writes: list[ChannelWrite] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "action": self.action,
            "changed": self.changed,
            "active": self.active,
            "writes": [item.to_dict() for item in self.writes],
            "notes": list(self.notes),
        }


class LifecycleController:
    """Drive instances through the Stopped and Running states."""

    def __init__(
        self,
        systemd: SystemdProvider | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        alive: Callable[[int], bool] = process_alive,
        poll_interval: float = POLL_INTERVAL,
        start_timeout: float = 5.0,
    ) -> None:
        self.systemd = systemd
        self._sleep = sleep
        self._alive = alive
        self.poll_interval = poll_interval
        self.start_timeout = start_timeout

    # ------------------------------------------------------------------
    def is_active(self, instance: Instance) -> bool:
        """Query the OS for the current state of *instance*."""
        if instance.lifecycle_manager == "systemd":
            return self._require_systemd(instance).is_active(instance.name)
        pid = self._read_pid(instance)
        return pid is not None and self._alive(pid)

    def start(self, instance: Instance, *, wait: bool = True) -> LifecycleResult:
        """Start *instance* unless it is already running."""
        self._require_native(instance)
        if not instance.management_file.is_file():
            raise NotFoundError(
                f"Management script {instance.management_file} is missing; reinstall the instance.",
                operation="start",
                target=instance.management_file,
            )
        if self.is_active(instance):
            return LifecycleResult("start", changed=False, active=True, notes=["already running"])

        if instance.lifecycle_manager == "systemd":
            self._require_systemd(instance).start(instance.name)
        else:
            self._run_script(instance, "--start", "--background", operation="start")

        active = self.is_active(instance)
        waited = 0.0
        while wait and not active and waited < self.start_timeout:
            self._sleep(self.poll_interval)
            waited += self.poll_interval
            active = self.is_active(instance)
        return LifecycleResult("start", changed=True, active=active)

    def stop(self, instance: Instance) -> LifecycleResult:
        """Save, wait, then stop *instance*.

        Standalone instances receive the save command, a pause of
        ``save_command_timeout`` seconds, then the stop command. Instances
        still alive after ``stop_command_timeout`` seconds get SIGTERM, then
        SIGKILL. Systemd instances delegate the same sequence to the unit's
        ``ExecStop``.
        """
        self._require_native(instance)
        if not self.is_active(instance):
            return LifecycleResult("stop", changed=False, active=False, notes=["not running"])

        if instance.lifecycle_manager == "systemd":
            self._require_systemd(instance).stop(instance.name)
            return LifecycleResult("stop", changed=True, active=self.is_active(instance))

        result = LifecycleResult("stop", changed=True, active=True)
        if instance.save_command:
            try:
                result.writes.append(write_command(instance.control_file, instance.save_command))
            except NotRunningError as exc:
                result.notes.append(f"save skipped: {exc.message}")
            self._sleep(instance.save_command_timeout)

        if instance.stop_command:
            try:
                result.writes.append(write_command(instance.control_file, instance.stop_command))
            except NotRunningError as exc:
                result.notes.append(f"stop command skipped: {exc.message}")
            else:
                self._wait_for_exit(instance, instance.stop_command_timeout)

        pid = self._read_pid(instance)
        if pid is not None and self._alive(pid):
            self._signal(pid, signal.SIGTERM)
            result.notes.append("sent SIGTERM")
            if not self._wait_for_exit(instance, instance.stop_command_timeout):
                self._signal(pid, signal.SIGKILL)
                result.notes.append("sent SIGKILL")

        result.active = self.is_active(instance)
        if not result.active:
            instance.pid_file.unlink(missing_ok=True)
        return result

    def restart(self, instance: Instance) -> LifecycleResult:
        """Stop then start *instance*."""
        stopped = self.stop(instance)
        started = self.start(instance)
        started.action = "restart"
        started.writes = stopped.writes + started.writes
        started.notes = stopped.notes + started.notes
        return started

    def save(self, instance: Instance) -> ChannelWrite:
        """Write the blueprint save command to the control channel."""
        if not instance.save_command:
            raise ValidationError(
                f"Instance '{instance.name}' has no save command.",
                operation="save",
                target=instance.name,
            )
        return write_command(instance.control_file, instance.save_command)

    def send_input(self, instance: Instance, text: str) -> ChannelWrite:
        """Write arbitrary *text* to the control channel."""
        return write_command(instance.control_file, text)

    def logs(self, instance: Instance, *, lines: int = DEFAULT_LOG_LINES) -> str:
        """Return the most recent log lines of *instance*."""
        if instance.lifecycle_manager == "systemd":
            result = self._require_systemd(instance).logs(instance.name, lines=lines)
            return result.stdout or ""
        log_file = self.log_file(instance)
        if not log_file.is_file():
            raise NotFoundError(
                f"No log file at {log_file}.", operation="logs", target=log_file
            )
        with log_file.open(encoding="utf-8", errors="replace") as handle:
            tail = handle.readlines()[-lines:] if lines > 0 else []
        return "".join(tail)

    def follow_logs(self, instance: Instance) -> int:
        """Stream logs to the terminal until interrupted; returns the exit status."""
        if instance.lifecycle_manager == "systemd":
            return self._require_systemd(instance).logs(instance.name, follow=True).returncode
        command = ["tail", "-n", str(DEFAULT_LOG_LINES), "-F", str(self.log_file(instance))]
        return subprocess.run(command, check=False).returncode  # noqa: S603, S607

    @staticmethod
    def log_file(instance: Instance) -> Path:
        """Log file written by the standalone management script."""
        return instance.logs_dir / f"{instance.name}.log"

    # ------------------------------------------------------------------
    def _wait_for_exit(self, instance: Instance, timeout: float) -> bool:
        waited = 0.0
        while self.is_active(instance):
            if waited >= timeout:
                return False
            self._sleep(self.poll_interval)
            waited += self.poll_interval
        return True

    @staticmethod
    def _read_pid(instance: Instance) -> int | None:
        try:
            text = instance.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            return None

    @staticmethod
    def _signal(pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            return

    def _require_systemd(self, instance: Instance) -> SystemdProvider:
        if self.systemd is None:
            raise ConfigurationError(
                f"Instance '{instance.name}' is managed by systemd but systemd support is disabled.",
                operation="lifecycle",
                target=instance.name,
            )
        return self.systemd

    @staticmethod
    def _require_native(instance: Instance) -> None:
        if instance.runtime != "native":
            raise ConfigurationError(
                f"Runtime '{instance.runtime}' is not supported for '{instance.name}'.",
                operation="lifecycle",
                target=instance.name,
            )

    @staticmethod
    def _run_script(instance: Instance, *args: str, operation: str) -> None:
        command = [str(instance.management_file), *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(instance.working_dir),
            )
        except OSError as exc:
            raise LifecycleError(
                f"Unable to run {instance.management_file}: {exc}",
                operation=operation,
                target=instance.management_file,
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise LifecycleError(
                f"{instance.management_file.name} {' '.join(args)} failed "
                f"(exit {result.returncode}): {message}",
                operation=operation,
                target=instance.management_file,
            )


__all__ = ["LifecycleController", "LifecycleError", "LifecycleResult", "process_alive"]
