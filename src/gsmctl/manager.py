"""Orchestration of multi-step instance operations.

:class:`GameServerManager` chains the components in the order the tool
promises: resolve blueprint, create record, materialize, download, deploy and
record the installed version. Mutating sequences run under the instance lock.
Event delivery problems and failed pre-update backups become warnings on the
returned :class:`ManagerReport`; every other failure propagates.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .backups import Backup, BackupManager
from .blueprints import Blueprint, BlueprintResolver
from .config import AppConfig
from .control import ChannelWrite
from .errors import GsmError, ValidationError
from .events import (
    INSTANCE_BACKUP_CREATED,
    INSTANCE_BACKUP_RESTORED,
    INSTANCE_CREATED,
    INSTANCE_INSTALLED,
    INSTANCE_STARTED,
    INSTANCE_STOPPED,
    INSTANCE_UNINSTALLED,
    INSTANCE_UPDATED,
    EventBroadcaster,
    EventDeliveryError,
    WebhookSender,
)
from .hooks import HookServices
from .instances import Instance, InstanceManager
from .lifecycle import LifecycleController, LifecycleResult
from .locking import LockManager
from .materializer import MaterializeResult, Materializer
from .pipeline import DeployPipeline
from .providers.downloads import HttpClient
from .providers.firewall import FirewallProvider
from .providers.steamcmd import SteamCmd
from .providers.systemd import SystemdProvider
from .templates import TemplateEngine
from .versions import UpdateCheck, VersionResolver


@dataclass(slots=True)
class ManagerReport:
    """Steps and warnings collected while running an operation."""

    steps: list[tuple[str, str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    lock_wait_ms: int = 0

    def step(self, name: str, detail: str = "", *, status: str = "success") -> None:
        """Record a step."""
        self.steps.append((name, status, detail))

    def warn(self, message: str) -> None:
        """Record a non-fatal problem."""
        self.warnings.append(message)

    def absorb(self, result: MaterializeResult) -> None:
        """Copy the steps and warnings of a materializer run."""
        for name, detail in result.steps:
            self.step(name, detail)
        self.warnings.extend(result.warnings)


@dataclass(slots=True)
class UpdateResult:
    """Outcome of an update run."""

    name: str
    previous: str
    latest: str
    updated: bool
    backup: Backup | None = None
    restarted: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "previous": self.previous,
            "latest": self.latest,
            "updated": self.updated,
            "backup": self.backup.to_dict() if self.backup else None,
            "restarted": self.restarted,
        }


class GameServerManager:
    """Drive instances through install, update, run and uninstall."""

    def __init__(
        self,
        config: AppConfig,
        *,
        blueprints: BlueprintResolver,
        instances: InstanceManager,
        versions: VersionResolver,
        pipeline: DeployPipeline,
        materializer: Materializer,
        lifecycle: LifecycleController,
        backups: BackupManager,
        events: EventBroadcaster,
        locks: LockManager,
    ) -> None:
        self.config = config
        self.blueprints = blueprints
        self.instances = instances
        self.versions = versions
        self.pipeline = pipeline
        self.materializer = materializer
        self.lifecycle = lifecycle
        self.backups = backups
        self.events = events
        self.locks = locks

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        templates: TemplateEngine | None = None,
        locks: LockManager | None = None,
        http: HttpClient | None = None,
        steamcmd: SteamCmd | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> GameServerManager:
        """Wire every component from *config*."""
        templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        services = HookServices(
            http=http or HttpClient(timeout=config.http.timeout),
            steamcmd=steamcmd
            or SteamCmd(
                steamcmd_bin=config.steam.steamcmd_bin,
                username=config.steam.username,
                password=config.steam.password,
            ),
        )
        systemd = SystemdProvider(
            templates=templates,
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
        )
        firewall = FirewallProvider(
            templates=templates,
            rules_dir=config.firewall.rules_dir,
            ufw_bin=config.firewall.ufw_bin,
        )
        instances = InstanceManager(config)
        versions = VersionResolver(services, instances)
        return cls(
            config,
            blueprints=BlueprintResolver(
                config.blueprints.default_dir, config.blueprints.custom_dir
            ),
            instances=instances,
            versions=versions,
            pipeline=DeployPipeline(services),
            materializer=Materializer(
                templates,
                systemd=systemd,
                firewall=firewall,
                service_user=config.systemd.service_user,
                shortcuts_dir=(
                    config.command_shortcuts.directory
                    if config.command_shortcuts.enabled
                    else None
                ),
            ),
            lifecycle=LifecycleController(systemd, sleep=sleep),
            backups=BackupManager(versions),
            events=EventBroadcaster(
                config.events.socket_path,
                enabled=config.events.enabled,
                webhooks=WebhookSender(
                    config.events.webhook_urls,
                    timeout=config.events.webhook_timeout,
                    retries=config.events.webhook_retries,
                    secret=config.events.webhook_secret,
                    sleep=sleep,
                ),
            ),
            locks=locks or LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
        )

    # Records -----------------------------------------------------------
    def blueprint_for(self, instance: Instance) -> Blueprint:
        """Return the blueprint *instance* was created from."""
        if instance.blueprint_file.is_file():
            return self.blueprints.resolve(instance.blueprint_file)
        return self.blueprints.resolve(instance.blueprint)

    def create(
        self,
        blueprint: str | Path,
        *,
        install_dir: Path | None = None,
        name: str | None = None,
        report: ManagerReport | None = None,
    ) -> tuple[Instance, ManagerReport]:
        """Create the record and on-disk layout of a new instance."""
        report = report or ManagerReport()
        resolved = self.blueprints.resolve(blueprint)
        report.step("blueprint.resolve", str(resolved.path))
        with self._claim(resolved, install_dir=install_dir, name=name, report=report) as instance:
            self._materialize(instance, resolved, report)
        self._emit(report, INSTANCE_CREATED, instance.name, Blueprint=resolved.name)
        return instance, report

    def install(
        self,
        blueprint: str | Path,
        *,
        install_dir: Path | None = None,
        name: str | None = None,
        version: str | None = None,
    ) -> tuple[Instance, ManagerReport]:
        """Create an instance and install the latest (or given) version.

        The instance lock is held from record creation until the installed
        version is recorded. When a step after record creation fails the
        instance is kept so the failure can be inspected; ``uninstall``
        removes it.
        """
        report = ManagerReport()
        resolved = self.blueprints.resolve(blueprint)
        report.step("blueprint.resolve", str(resolved.path))
        if version is not None:
            self._require_pinnable(resolved, version)
        with self._claim(resolved, install_dir=install_dir, name=name, report=report) as instance:
            self._materialize(instance, resolved, report)
            self._emit(report, INSTANCE_CREATED, instance.name, Blueprint=resolved.name)
            target = version or self.versions.latest_version(resolved)
            report.step("version.latest", target)
            self._deploy(instance, resolved, target, report)
        self._emit(report, INSTANCE_INSTALLED, instance.name, Version=target)
        return instance, report

    def check_update(self, name: str) -> UpdateCheck:
        """Compare the installed and latest versions of *name*."""
        instance = self.instances.get(name)
        return self.versions.check(instance, self.blueprint_for(instance))

    def update(
        self,
        name: str,
        *,
        force: bool = False,
        version: str | None = None,
    ) -> tuple[UpdateResult, ManagerReport]:
        """Update *name* when a different version is available."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            instance = self.instances.get(name)
            result = self._update_locked(instance, force=force, version=version, report=report)
        if result.updated:
            self._emit(
                report, INSTANCE_UPDATED, name, OldVersion=result.previous, NewVersion=result.latest
            )
        return result, report

    def uninstall(self, name: str) -> ManagerReport:
        """Stop *name* and remove its artifacts, directories and record."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            instance = self.instances.get(name)
            if self.lifecycle.is_active(instance):
                self.lifecycle.stop(instance)
                report.step("lifecycle.stop", name)
            report.absorb(self.materializer.dematerialize(instance))
            path = self.instances.remove(name)
            report.step("instance.remove", str(path))
        self._emit(report, INSTANCE_UNINSTALLED, name)
        return report

    # Lifecycle ---------------------------------------------------------
    def start(self, name: str) -> tuple[LifecycleResult, ManagerReport]:
        """Start *name*, updating it first when the instance asks for it."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            instance = self.instances.get(name)
            if instance.auto_update and not self.lifecycle.is_active(instance):
                try:
                    self._update_locked(instance, force=False, version=None, report=report)
                except GsmError as exc:
                    report.warn(f"auto-update skipped: {exc.describe()}")
            result = self.lifecycle.start(instance)
            report.step("lifecycle.start", f"changed={result.changed} active={result.active}")
        if result.changed:
            self._emit(report, INSTANCE_STARTED, name)
        return result, report

    def stop(self, name: str) -> tuple[LifecycleResult, ManagerReport]:
        """Stop *name*."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            result = self.lifecycle.stop(self.instances.get(name))
            report.step("lifecycle.stop", f"changed={result.changed} active={result.active}")
        if result.changed:
            self._emit(report, INSTANCE_STOPPED, name)
        return result, report

    def restart(self, name: str) -> tuple[LifecycleResult, ManagerReport]:
        """Stop and start *name*."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            result = self.lifecycle.restart(self.instances.get(name))
            report.step("lifecycle.restart", f"active={result.active}")
        self._emit(report, INSTANCE_STOPPED, name)
        self._emit(report, INSTANCE_STARTED, name)
        return result, report

    def status(self, name: str) -> dict[str, object]:
        """Return the record summary and live state of *name*."""
        instance = self.instances.get(name)
        return {
            "name": instance.name,
            "blueprint": instance.blueprint,
            "active": self.lifecycle.is_active(instance),
            "installed_version": self.versions.installed_version(instance),
            "lifecycle_manager": instance.lifecycle_manager,
            "working_dir": str(instance.working_dir),
            "install_dir": str(instance.install_dir),
            "management_file": str(instance.management_file),
            "control_file": str(instance.control_file),
        }

    def save(self, name: str) -> ChannelWrite:
        """Write the save command of *name* to its control channel."""
        return self.lifecycle.save(self.instances.get(name))

    def send_input(self, name: str, text: str) -> ChannelWrite:
        """Write *text* to the control channel of *name*."""
        return self.lifecycle.send_input(self.instances.get(name), text)

    # Backups -----------------------------------------------------------
    def backup(self, name: str) -> tuple[Backup, ManagerReport]:
        """Back up the install directory of *name*."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            backup = self.backups.create(self.instances.get(name))
            report.step("backup.create", str(backup.path))
        self._emit(report, INSTANCE_BACKUP_CREATED, name, Backup=backup.name)
        return backup, report

    def list_backups(self, name: str) -> list[Backup]:
        """Return the backups of *name*, oldest first."""
        return self.backups.list(self.instances.get(name))

    def restore(
        self, name: str, backup: str, *, force: bool = False
    ) -> tuple[Backup, ManagerReport]:
        """Restore *backup* into the install directory of a stopped instance."""
        report = ManagerReport()
        with self.locks.instance_lock(name) as handle:
            report.lock_wait_ms += handle.wait_ms
            instance = self.instances.get(name)
            if self.lifecycle.is_active(instance):
                raise ValidationError(
                    f"Instance '{name}' is running; stop it before restoring.",
                    operation="backup.restore",
                    target=name,
                )
            restored = self.backups.restore(instance, backup, force=force)
            report.step("backup.restore", str(restored.path))
        self._emit(report, INSTANCE_BACKUP_RESTORED, name, Backup=restored.name)
        return restored, report

    # Internals ---------------------------------------------------------
    @contextmanager
    def _claim(
        self,
        blueprint: Blueprint,
        *,
        install_dir: Path | None,
        name: str | None,
        report: ManagerReport,
    ) -> Iterator[Instance]:
        """Create the record under the global lock and keep its instance lock.

        The instance lock is taken before the global lock is released so no
        other command can act on the half-built instance.
        """
        with ExitStack() as held:
            with self.locks.global_lock() as handle:
                report.lock_wait_ms += handle.wait_ms
                instance = self.instances.create(blueprint, install_dir=install_dir, name=name)
                claimed = held.enter_context(self.locks.instance_lock(instance.name))
                report.lock_wait_ms += claimed.wait_ms
            report.step("instance.create", instance.name)
            yield instance

    def _materialize(self, instance: Instance, blueprint: Blueprint, report: ManagerReport) -> None:
        report.absorb(self.materializer.materialize(instance, blueprint_ports=blueprint.ports_spec))
        self.instances.update(instance)
        report.step("instance.update", "artifact paths recorded")

    def _require_pinnable(self, blueprint: Blueprint, version: str) -> None:
        if not self.pipeline.pins_versions(blueprint):
            raise ValidationError(
                f"Blueprint '{blueprint.name}' installs through SteamCMD, which always fetches "
                f"the latest public build; version '{version}' cannot be requested.",
                operation="version.pin",
                target=blueprint.name,
            )

    def _deploy(
        self, instance: Instance, blueprint: Blueprint, version: str, report: ManagerReport
    ) -> None:
        downloaded = self.pipeline.download(blueprint, version, instance.temp_dir)
        report.step(
            "pipeline.download",
            "collapsed into deploy" if downloaded.collapsed else str(downloaded.staging_dir),
        )
        deployed = self.pipeline.deploy(
            blueprint, downloaded.staging_dir, instance.install_dir, version=version
        )
        report.step("pipeline.deploy", str(deployed.install_dir))
        if not deployed.staging_cleaned:
            report.warn(f"staging directory {instance.temp_dir} was not cleaned; remove it by hand")
        self.versions.save_installed_version(instance, version)
        report.step("version.save", version)

    def _update_locked(
        self,
        instance: Instance,
        *,
        force: bool,
        version: str | None,
        report: ManagerReport,
    ) -> UpdateResult:
        blueprint = self.blueprint_for(instance)
        previous = self.versions.installed_version(instance)
        if version is None:
            check = self.versions.check(instance, blueprint)
            if check.error is not None:
                raise check.error
            target = check.latest or ""
            available = check.update_available
        else:
            self._require_pinnable(blueprint, version)
            target = version
            available = previous != version
        report.step("version.check", f"installed={previous or '-'} latest={target}")
        if not available and not force:
            return UpdateResult(instance.name, previous, target, updated=False)

        downloaded = self.pipeline.download(blueprint, target, instance.temp_dir)
        report.step(
            "pipeline.download",
            "collapsed into deploy" if downloaded.collapsed else str(downloaded.staging_dir),
        )

        was_running = self.lifecycle.is_active(instance)
        if was_running:
            self.lifecycle.stop(instance)
            report.step("lifecycle.stop", instance.name)

        backup: Backup | None = None
        if previous and instance.install_dir.is_dir():
            try:
                backup = self.backups.create(instance)
                report.step("backup.create", str(backup.path))
            except GsmError as exc:
                report.warn(f"pre-update backup failed: {exc.describe()}")

        deployed = self.pipeline.deploy(
            blueprint, downloaded.staging_dir, instance.install_dir, version=target
        )
        report.step("pipeline.deploy", str(deployed.install_dir))
        if not deployed.staging_cleaned:
            report.warn(f"staging directory {instance.temp_dir} was not cleaned; remove it by hand")
        self.versions.save_installed_version(instance, target)
        report.step("version.save", target)

        restarted = False
        if was_running:
            self.lifecycle.start(instance)
            report.step("lifecycle.start", instance.name)
            restarted = True
        return UpdateResult(
            instance.name, previous, target, updated=True, backup=backup, restarted=restarted
        )

    def _emit(self, report: ManagerReport, event: str, name: str, **data: object) -> None:
        try:
            if self.events.emit(event, name, **data):
                report.step("events.emit", event)
        except EventDeliveryError as exc:
            report.warn(exc.message)


__all__ = ["GameServerManager", "ManagerReport", "UpdateResult"]
