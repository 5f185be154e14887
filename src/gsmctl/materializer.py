"""Create and remove the on-disk footprint of an instance."""
from __future__ import annotations

import math
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .errors import FilesystemError, GsmError
from .instances import Instance
from .ports import parse_port_spec
from .providers.firewall import FirewallProvider
from .providers.systemd import SystemdProvider
from .templates import TemplateEngine

MANAGE_TEMPLATE = "manage/native.sh.j2"


@dataclass(slots=True)
class MaterializeResult:
    """Steps performed while materializing or removing an instance."""

    steps: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(self, name: str, detail: str) -> None:
        """Record a completed step."""
        self.steps.append((name, detail))


class Materializer:
    """Render per-instance directories, the management script and optional units."""

    def __init__(
        self,
        templates: TemplateEngine,
        *,
        systemd: SystemdProvider | None = None,
        firewall: FirewallProvider | None = None,
        service_user: str | None = None,
        shortcuts_dir: Path | None = None,
    ) -> None:
        self.templates = templates
        self.systemd = systemd
        self.firewall = firewall
        self.service_user = service_user
        self.shortcuts_dir = shortcuts_dir

    def directories(self, instance: Instance) -> list[Path]:
        """Directories owned by *instance*, parents first."""
        return [
            instance.working_dir,
            instance.install_dir,
            instance.saves_dir,
            instance.backups_dir,
            instance.temp_dir,
            instance.logs_dir,
        ]

    def create_directories(self, instance: Instance, result: MaterializeResult) -> None:
        """Create every instance directory; existing directories are kept."""
        for path in self.directories(instance):
            try:
                path.mkdir(parents=True, exist_ok=True)
                os.chmod(path, 0o750)
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to create {path}: {exc}", operation="mkdir", target=path
                ) from exc
            result.add("filesystem.mkdir", str(path))

    def management_context(self, instance: Instance) -> dict[str, object]:
        """Template context for the management script."""
        return {
            "instance_name": instance.name,
            "working_dir": str(instance.working_dir),
            "executable_dir": str(instance.executable_dir),
            "logs_dir": str(instance.logs_dir),
            "control_file": str(instance.control_file),
            "pid_file": str(instance.pid_file),
            "version_file": str(instance.version_file),
            "stop_command": instance.stop_command,
            "save_command": instance.save_command,
            "save_command_timeout": _whole_seconds(instance.save_command_timeout),
            "stop_command_timeout": _whole_seconds(instance.stop_command_timeout),
            "launch_command": instance.launch_command,
            "arguments": instance.resolved_arguments(),
            "upnp_ports": upnp_ports(instance),
        }

    def render_management_script(self, instance: Instance) -> bool:
        """Render ``<name>.manage.sh``; returns True when the file changed."""
        try:
            return self.templates.render_to_path(
                MANAGE_TEMPLATE,
                instance.management_file,
                self.management_context(instance),
                mode=0o755,
            )
        except OSError as exc:
            raise FilesystemError(
                f"Unable to write {instance.management_file}: {exc}",
                operation="render",
                target=instance.management_file,
            ) from exc

    def systemd_context(self, instance: Instance) -> dict[str, object]:
        """Template context for the service and socket units."""
        return {
            "instance_name": instance.name,
            "service_user": self.service_user,
            "working_dir": str(instance.working_dir),
            "management_file": str(instance.management_file),
            "control_file": str(instance.control_file),
            # Give the script room for its own save and stop waits.
            "stop_timeout_sec": _whole_seconds(
                instance.save_command_timeout + instance.stop_command_timeout + 10
            ),
        }

    def materialize(self, instance: Instance, *, blueprint_ports: str = "") -> MaterializeResult:
        """Create directories, the management script and any enabled artifacts.

        Artifact paths are written back onto *instance*; the caller persists
        the record.
        """
        result = MaterializeResult()
        self.create_directories(instance, result)
        changed = self.render_management_script(instance)
        result.add("render.manage", f"{instance.management_file} changed={changed}")

        if instance.lifecycle_manager == "systemd":
            if self.systemd is None:
                result.warnings.append("systemd lifecycle requested but systemd support is disabled")
            else:
                units_changed = self.systemd.render_units(
                    instance.name, self.systemd_context(instance)
                )
                instance.systemd_service_file = str(self.systemd.unit_path(instance.name))
                instance.systemd_socket_file = str(self.systemd.socket_path(instance.name))
                result.add("systemd.render_units", f"changed={units_changed}")
                self.systemd.enable(instance.name)
                result.add("systemd.enable", self.systemd.unit_name(instance.name))

        if instance.firewall_managed and self.firewall is not None:
            ports = blueprint_ports or instance.ports
            if ports:
                path = self.firewall.install(
                    instance.name, blueprint=instance.blueprint, ports=ports
                )
                instance.firewall_rule_file = str(path)
                result.add("firewall.install", str(path))
            else:
                result.warnings.append("firewall enabled but the blueprint declares no ports")

        if self.shortcuts_dir is not None:
            try:
                link = self.link_shortcut(instance, self.shortcuts_dir)
            except FilesystemError as exc:
                result.warnings.append(f"command shortcut skipped: {exc.message}")
            else:
                instance.command_shortcut_file = str(link)
                result.add("shortcut.link", f"{link} -> {instance.management_file}")
        return result

    def link_shortcut(self, instance: Instance, directory: Path) -> Path:
        """Symlink the management script as ``<directory>/<name>``.

        A stale symlink is replaced; any other existing file is left alone.
        """
        link = directory / instance.name
        if not directory.is_dir():
            raise FilesystemError(
                f"Command shortcuts directory {directory} does not exist.",
                operation="shortcut.link",
                target=directory,
            )
        try:
            if link.is_symlink():
                link.unlink()
            link.symlink_to(instance.management_file)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to link {link}: {exc}", operation="shortcut.link", target=link
            ) from exc
        return link

    def dematerialize(self, instance: Instance) -> MaterializeResult:
        """Remove units, firewall profile, shortcut and working directory of *instance*.

        Failures removing external artifacts are collected as warnings so the
        directories are still removed.
        """
        result = MaterializeResult()
        if instance.systemd_service_file and self.systemd is not None:
            try:
                removed = self.systemd.remove(instance.name)
                result.add("systemd.remove", f"removed={removed}")
            except GsmError as exc:
                result.warnings.append(f"systemd cleanup failed: {exc.message}")
        if instance.firewall_rule_file and self.firewall is not None:
            try:
                removed = self.firewall.uninstall(instance.name)
                result.add("firewall.uninstall", f"removed={removed}")
            except GsmError as exc:
                result.warnings.append(f"firewall cleanup failed: {exc.message}")
        if instance.command_shortcut_file:
            link = Path(instance.command_shortcut_file)
            try:
                if link.is_symlink():
                    link.unlink()
                    result.add("shortcut.unlink", str(link))
            except OSError as exc:
                result.warnings.append(f"command shortcut cleanup failed: {exc}")

        working_dir = instance.working_dir
        if working_dir.exists():
            try:
                shutil.rmtree(working_dir)
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to remove {working_dir}: {exc}", operation="rm", target=working_dir
                ) from exc
            result.add("filesystem.rmtree", str(working_dir))
        # Directories configured outside the working directory.
        for path in self.directories(instance)[1:]:
            if path.exists():
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    raise FilesystemError(
                        f"Unable to remove {path}: {exc}", operation="rm", target=path
                    ) from exc
                result.add("filesystem.rmtree", str(path))
        return result


def upnp_ports(instance: Instance) -> list[str]:
    """Flatten the instance ports into ``upnpc -r`` port and protocol pairs.

    Empty unless the instance forwards ports through UPnP.
    """
    if not instance.use_upnp:
        return []
    pairs: list[str] = []
    for item in parse_port_spec(instance.ports):
        for port, protocol in item.expand():
            pairs.extend((str(port), protocol))
    return pairs


def _whole_seconds(value: float) -> int:
    return max(0, math.ceil(value))


__all__ = ["MANAGE_TEMPLATE", "MaterializeResult", "Materializer", "upnp_ports"]
