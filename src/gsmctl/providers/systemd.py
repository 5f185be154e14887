"""Systemd provider for game server instance units.

Every instance managed by systemd gets two units: ``<name>.service`` runs the
management script in the foreground and ``<name>.socket`` exposes the
instance control FIFO as the service's standard input.
"""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import GsmError
from ..templates import TemplateEngine


class SystemdError(GsmError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd units for gsmctl instances."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def unit_name(self, instance: str) -> str:
        """Return the systemd service unit name for *instance*."""
        safe = instance.replace("/", "-")
        return f"{safe}.service"

    def socket_name(self, instance: str) -> str:
        """Return the systemd socket unit name for *instance*."""
        safe = instance.replace("/", "-")
        return f"{safe}.socket"

    def unit_path(self, instance: str) -> Path:
        """Return the full path for the instance service unit."""
        return self.systemd_dir / self.unit_name(instance)

    def socket_path(self, instance: str) -> Path:
        """Return the full path for the instance socket unit."""
        return self.systemd_dir / self.socket_name(instance)

    def render_units(self, instance: str, context: Mapping[str, object]) -> bool:
        """Render the service and socket units for *instance* using *context*."""
        full_context = {
            "service_unit": self.unit_name(instance),
            "socket_unit": self.socket_name(instance),
            **context,
        }
        changed = self.templates.render_to_path(
            "systemd/service.j2", self.unit_path(instance), full_context, mode=0o644
        )
        changed |= self.templates.render_to_path(
            "systemd/socket.j2", self.socket_path(instance), full_context, mode=0o644
        )
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Enable the instance unit."""
        return self._systemctl("enable", self.unit_name(instance))

    def disable(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Disable the instance unit."""
        return self._systemctl("disable", self.unit_name(instance))

    def start(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Start the instance unit."""
        return self._systemctl("start", self.unit_name(instance))

    def stop(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Stop the instance unit."""
        return self._systemctl("stop", self.unit_name(instance))

    def restart(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Restart the instance unit."""
        return self._systemctl("restart", self.unit_name(instance))

    def is_active(self, instance: str) -> bool:
        """Return True when systemd reports the unit active."""
        try:
            result = self._systemctl("is-active", self.unit_name(instance), check=False)
        except SystemdError:
            return False
        return result.returncode == 0

    def logs(
        self,
        instance: str,
        *,
        lines: int | None = None,
        since: str | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", self.unit_name(instance), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    def remove(self, instance: str) -> bool:
        """Remove both unit files for *instance*. Returns True when anything was removed."""
        removed = False
        for path in (self.unit_path(instance), self.socket_path(instance)):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed = True
        if removed:
            self._reload_daemon()
        return removed

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(
                f"{args[0]} not found: {exc}", operation=error_prefix, target=args[-1]
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                operation=error_prefix,
                target=args[-1],
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
