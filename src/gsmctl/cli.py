"""Typer-powered command line interface for ``gsmctl``.

Every command runs inside a structured operation scope so the operations log
records its arguments, steps, lock wait and outcome. Component failures are
typed (:mod:`gsmctl.errors`) and mapped onto :class:`~gsmctl.exit_codes.ExitCode`
values here and nowhere else.
"""
from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .blueprints import BLUEPRINT_SUFFIX, Blueprint
from .config import AppConfig, ConfigError, load_config
from .errors import (
    AlreadyExistsError,
    ConfigurationError,
    GsmError,
    NotFoundError,
    ValidationError,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import GameServerManager, ManagerReport
from .ports import parse_port_spec
from .templates import TemplateEngine

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(help="Install, update and run dedicated game servers.")
blueprint_app = typer.Typer(help="Inspect and author blueprints.")
instance_app = typer.Typer(help="Manage game server instances.")
backup_app = typer.Typer(help="Create and restore instance backups.")
config_app = typer.Typer(help="Inspect gsmctl configuration.")

app.add_typer(blueprint_app, name="blueprint")
app.add_typer(instance_app, name="instance")
app.add_typer(backup_app, name="backup")
app.add_typer(config_app, name="config")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to gsmctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine readable JSON instead of a table.",
)
NAME_ARGUMENT = typer.Argument(..., help="Instance name.")
INSTALL_DIR_OPTION = typer.Option(
    None,
    "--install-dir",
    file_okay=False,
    help="Parent directory for the instance (defaults to default_install_dir).",
)
INSTANCE_NAME_OPTION = typer.Option(
    None,
    "--name",
    help="Explicit instance name (generated from the blueprint when omitted).",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    manager: GameServerManager


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    locks = LockManager(config.runtime_dir, default_timeout=config.lock_timeout)
    logger = StructuredLogger(config.logs_dir, enabled=config.logging.enabled)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    manager = GameServerManager.from_config(config, templates=templates, locks=locks)
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        manager=manager,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the gsmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"gsmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: Exception) -> int:
    if isinstance(exc, (ValidationError, NotFoundError, AlreadyExistsError)):
        return int(ExitCode.VALIDATION)
    if isinstance(exc, (ConfigurationError, LockTimeoutError)):
        return int(ExitCode.ENVIRONMENT)
    return int(ExitCode.PROVIDER)


@contextmanager
def _failures(op: OperationScope) -> Iterator[None]:
    """Turn component failures into a logged error and a non-zero exit."""
    try:
        yield
    except GsmError as exc:
        _command_error(op, exc.describe(), rc=_exit_code_for(exc))
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=_exit_code_for(exc))


def _apply_report(op: OperationScope, report: ManagerReport) -> list[str]:
    """Copy manager steps onto *op* and print warnings."""
    op.set_lock_wait_ms(report.lock_wait_ms)
    for name, status, detail in report.steps:
        op.add_step(name, status=status, detail=detail or None)
    for warning in report.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")
    return list(report.warnings)


def _finish(
    op: OperationScope,
    message: str,
    *,
    changed: int,
    warnings: Sequence[str],
) -> None:
    if warnings:
        op.warning(message, warnings=warnings, changed=changed)
    else:
        op.success(message, changed=changed)


def _render_mapping(data: dict[str, object]) -> None:
    table = Table(show_header=False)
    for key, value in data.items():
        if value in (None, ""):
            continue
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


# Blueprints --------------------------------------------------------------
@blueprint_app.command("list")
def blueprint_list(
    ctx: typer.Context,
    source: str | None = typer.Option(
        None,
        "--source",
        help="Limit to 'default' or 'custom' blueprints.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List available blueprints."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "blueprint list",
        args={"source": source, "json": json_output},
        target={"kind": "blueprint", "scope": "all"},
    ) as op:
        if source not in (None, "default", "custom"):
            _command_error(op, "--source must be 'default' or 'custom'.", rc=2)
        sources = runtime.manager.blueprints.list_sources(source=source)
        entries = [{"name": name, "source": sources[name]} for name in sorted(sources)]
        if json_output:
            console.print_json(data={"blueprints": entries})
            op.success("Reported blueprint list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Source")
        if not entries:
            table.add_row("(none)", "")
        for entry in entries:
            table.add_row(entry["name"], entry["source"])
        console.print(table)
        op.success("Reported blueprint list.", changed=0)


@blueprint_app.command("show")
def blueprint_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Blueprint name or path to a .bp file."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a resolved blueprint."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "blueprint show",
        args={"name": name, "json": json_output},
        target={"kind": "blueprint", "name": name},
    ) as op:
        with _failures(op):
            blueprint = runtime.manager.blueprints.resolve(name)
        data = blueprint.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping(data)
        op.success("Displayed blueprint.", changed=0)


@blueprint_app.command("create")
def blueprint_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new blueprint."),
    executable_file: str = typer.Option(
        ..., "--executable-file", help="Server executable, relative to its subdirectory."
    ),
    ports: str = typer.Option("", "--ports", help="Ports in ufw syntax, e.g. '2456:2458/udp'."),
    steam_app_id: int = typer.Option(0, "--steam-app-id", min=0, help="Steam app id (0: none)."),
    account_required: bool = typer.Option(
        False, "--account-required", help="SteamCMD needs a real account for this app."
    ),
    platform: str = typer.Option("linux", "--platform", help="Target platform."),
    level_name: str = typer.Option("default", "--level-name", help="Default world/level name."),
    executable_subdirectory: str = typer.Option(
        "", "--executable-subdirectory", help="Subdirectory of the install holding the executable."
    ),
    executable_arguments: str = typer.Option(
        "", "--executable-arguments", help="Launch arguments; may reference $instance_* variables."
    ),
    stop_command: str | None = typer.Option(None, "--stop-command", help="Console stop command."),
    save_command: str | None = typer.Option(None, "--save-command", help="Console save command."),
    download_url: str | None = typer.Option(
        None, "--download-url", help="HTTP download URL; '{version}' is substituted."
    ),
    version_url: str | None = typer.Option(
        None, "--version-url", help="URL queried for the latest version."
    ),
    version_json_path: str | None = typer.Option(
        None, "--version-json-path", help="Dotted JSON path to the version in the response."
    ),
    version_pattern: str | None = typer.Option(
        None, "--version-pattern", help="Regex whose first group is the version."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing custom blueprint."),
) -> None:
    """Write a new blueprint into the custom blueprint directory."""
    runtime = _get_runtime(ctx)
    resolver = runtime.manager.blueprints
    with runtime.logger.operation(
        "blueprint create",
        args={"name": name, "force": force},
        target={"kind": "blueprint", "name": name},
    ) as op:
        with _failures(op):
            blueprint = Blueprint(
                name=name,
                executable_file=executable_file,
                path=resolver.custom_dir / f"{name}{BLUEPRINT_SUFFIX}",
                ports=tuple(parse_port_spec(ports)),
                steam_app_id=steam_app_id,
                is_steam_account_required=account_required,
                platform=platform,
                level_name=level_name,
                executable_subdirectory=executable_subdirectory,
                executable_arguments=executable_arguments,
                stop_command=stop_command,
                save_command=save_command,
                download_url=download_url,
                version_url=version_url,
                version_json_path=version_json_path,
                version_pattern=version_pattern,
            )
            path = resolver.create_custom(blueprint, overwrite=force)
        op.add_step("blueprint.write", detail=str(path))
        console.print(f"[green]Blueprint '{name}' written to {path}.[/green]")
        op.success("Blueprint created.", changed=1)


# Instances ---------------------------------------------------------------
@instance_app.command("create")
def instance_create(
    ctx: typer.Context,
    blueprint: str = typer.Argument(..., help="Blueprint name or path."),
    name: str | None = INSTANCE_NAME_OPTION,
    install_dir: Path | None = INSTALL_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Create an instance record and its directories without downloading."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"blueprint": blueprint, "name": name, "install_dir": install_dir},
        target={"kind": "instance", "blueprint": blueprint},
    ) as op:
        with _failures(op):
            instance, report = runtime.manager.create(
                blueprint, install_dir=install_dir, name=name
            )
        warnings = _apply_report(op, report)
        if json_output:
            console.print_json(data=instance.to_dict())
        else:
            console.print(f"[green]Instance '{instance.name}' created.[/green]")
        _finish(op, "Instance created.", changed=len(report.steps), warnings=warnings)


@instance_app.command("install")
def instance_install(
    ctx: typer.Context,
    blueprint: str = typer.Argument(..., help="Blueprint name or path."),
    name: str | None = INSTANCE_NAME_OPTION,
    install_dir: Path | None = INSTALL_DIR_OPTION,
    version: str | None = typer.Option(
        None, "--version", help="Install this version instead of the latest."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create an instance and install the game server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance install",
        args={
            "blueprint": blueprint,
            "name": name,
            "install_dir": install_dir,
            "version": version,
        },
        target={"kind": "instance", "blueprint": blueprint},
    ) as op:
        with _failures(op):
            instance, report = runtime.manager.install(
                blueprint, install_dir=install_dir, name=name, version=version
            )
        warnings = _apply_report(op, report)
        if json_output:
            console.print_json(data=instance.to_dict())
        else:
            console.print(
                f"[green]Instance '{instance.name}' installed "
                f"(version {instance.installed_version}).[/green]"
            )
        _finish(op, "Instance installed.", changed=len(report.steps), warnings=warnings)


@instance_app.command("update")
def instance_update(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    force: bool = typer.Option(
        False, "--force", help="Reinstall even when the installed version is current."
    ),
    version: str | None = typer.Option(
        None, "--version", help="Install this version instead of the latest."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Update an instance to the latest version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance update",
        args={"name": name, "force": force, "version": version},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            result, report = runtime.manager.update(name, force=force, version=version)
        warnings = _apply_report(op, report)
        if json_output:
            console.print_json(data=result.to_dict())
        elif result.updated:
            console.print(
                f"[green]Instance '{name}' updated from {result.previous or '-'} "
                f"to {result.latest}.[/green]"
            )
        else:
            console.print(f"Instance '{name}' is up to date ({result.previous}).")
        _finish(
            op,
            "Instance updated." if result.updated else "Instance already current.",
            changed=1 if result.updated else 0,
            warnings=warnings,
        )


@instance_app.command("check-update")
def instance_check_update(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a newer version is available."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance check-update",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            check = runtime.manager.check_update(name)
        if json_output:
            console.print_json(data={"name": name, **check.to_dict()})
        if check.error is not None:
            _command_error(
                op,
                f"Version lookup failed: {check.error.describe()}",
                rc=_exit_code_for(check.error),
            )
        if not json_output:
            if check.update_available:
                console.print(
                    f"[yellow]Update available[/yellow]: {check.installed or '-'} -> {check.latest}"
                )
            else:
                console.print(f"Instance '{name}' is up to date ({check.installed}).")
        op.success("Checked for updates.", changed=0, context=check.to_dict())


@instance_app.command("uninstall")
def instance_uninstall(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Stop an instance and remove its files, units and record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance uninstall",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        if not yes and not typer.confirm(f"Remove instance '{name}' and all of its files?"):
            op.add_step("confirm", status="skipped", detail="declined")
            console.print("Aborted.")
            op.success("Uninstall aborted.", changed=0)
            return
        with _failures(op):
            report = runtime.manager.uninstall(name)
        warnings = _apply_report(op, report)
        console.print(f"[yellow]Instance '{name}' removed.[/yellow]")
        _finish(op, "Instance uninstalled.", changed=len(report.steps), warnings=warnings)


@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        with _failures(op):
            instances = runtime.manager.instances.list()
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in instances]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Blueprint")
        table.add_column("Version")
        table.add_column("Manager")
        table.add_column("Directory")
        if not instances:
            table.add_row("(none)", "", "", "", "")
        for item in instances:
            table.add_row(
                item.name,
                item.blueprint,
                item.installed_version or "-",
                item.lifecycle_manager,
                str(item.working_dir),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instance_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the stored record of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            data = runtime.manager.instances.get(name).to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping(data)
        op.success("Displayed instance details.", changed=0)


@instance_app.command("status")
def instance_status(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether an instance is running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            data = runtime.manager.status(name)
        if json_output:
            console.print_json(data=data)
        else:
            state = "[green]running[/green]" if data["active"] else "[yellow]stopped[/yellow]"
            console.print(f"Instance '{name}' is {state}.")
            _render_mapping(data)
        op.success("Reported instance status.", changed=0, context={"active": data["active"]})


@instance_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
) -> None:
    """Start an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance start",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            result, report = runtime.manager.start(name)
        warnings = _apply_report(op, report)
        if not result.changed:
            console.print(f"Instance '{name}' is already running.")
        elif result.active:
            console.print(f"[green]Instance '{name}' started.[/green]")
        else:
            warnings.append("start command succeeded but the process is not running yet")
            err_console.print(f"[yellow]Instance '{name}' was started but is not active yet.[/yellow]")
        _finish(op, "Instance started.", changed=int(result.changed), warnings=warnings)


@instance_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
) -> None:
    """Save and stop an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            result, report = runtime.manager.stop(name)
        warnings = _apply_report(op, report)
        for note in result.notes:
            op.add_step("lifecycle.note", detail=note)
        if result.changed:
            console.print(f"[yellow]Instance '{name}' stopped.[/yellow]")
        else:
            console.print(f"Instance '{name}' is not running.")
        if result.active:
            _command_error(op, f"Instance '{name}' is still running after stop.", rc=4)
        _finish(op, "Instance stopped.", changed=int(result.changed), warnings=warnings)


@instance_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
) -> None:
    """Stop and start an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance restart",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            result, report = runtime.manager.restart(name)
        warnings = _apply_report(op, report)
        console.print(f"[green]Instance '{name}' restarted.[/green]")
        _finish(op, "Instance restarted.", changed=2, warnings=warnings)


@instance_app.command("save")
def instance_save(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
) -> None:
    """Send the save command to a running instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance save",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            write = runtime.manager.save(name)
        op.add_step("control.write", detail=write.command)
        console.print(f"Save command written to {write.channel}.")
        op.success("Save command written.", changed=0, context=write.to_dict())


@instance_app.command("input")
def instance_input(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    text: str = typer.Argument(..., help="Console command to send."),
) -> None:
    """Send a console command to a running instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance input",
        args={"name": name, "text": text},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            write = runtime.manager.send_input(name, text)
        op.add_step("control.write", detail=write.command)
        console.print(f"Command written to {write.channel}.")
        op.success("Command written.", changed=0, context=write.to_dict())


@instance_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    lines: int = typer.Option(100, "--lines", "-n", min=1, help="Number of lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new lines."),
) -> None:
    """Show the server log of an instance."""
    runtime = _get_runtime(ctx)
    manager = runtime.manager
    with runtime.logger.operation(
        "instance logs",
        args={"name": name, "lines": lines, "follow": follow},
        target={"kind": "instance", "name": name},
    ) as op:
        with _failures(op):
            instance = manager.instances.get(name)
            if follow:
                rc = manager.lifecycle.follow_logs(instance)
                op.success("Followed logs.", changed=0, context={"rc": rc})
                return
            text = manager.lifecycle.logs(instance, lines=lines)
        console.out(text, end="", highlight=False)
        op.success("Displayed logs.", changed=0)


# Backups -----------------------------------------------------------------
@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up the install directory of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"name": name},
        target={"kind": "backup", "instance": name},
    ) as op:
        with _failures(op):
            backup, report = runtime.manager.backup(name)
        warnings = _apply_report(op, report)
        if json_output:
            console.print_json(data=backup.to_dict())
        else:
            console.print(f"[green]Backup written to {backup.path}.[/green]")
        op.success("Backup created.", changed=1, warnings=warnings, backups=[str(backup.path)])


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """List backups of an instance, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "instance": name},
    ) as op:
        with _failures(op):
            backups = runtime.manager.list_backups(name)
        if json_output:
            console.print_json(data={"backups": [item.to_dict() for item in backups]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        table.add_column("Version")
        table.add_column("Created")
        table.add_column("Compressed")
        if not backups:
            table.add_row("(none)", "", "", "")
        for item in backups:
            table.add_row(item.name, item.version, item.stamp, "yes" if item.compressed else "no")
        console.print(table)
        op.success("Reported backups.", changed=0)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    backup: str = typer.Argument("latest", help="Backup name, path or 'latest'."),
    force: bool = typer.Option(
        False, "--force", help="Replace a non-empty install directory."
    ),
) -> None:
    """Restore a backup into a stopped instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"name": name, "backup": backup, "force": force},
        target={"kind": "backup", "instance": name},
    ) as op:
        with _failures(op):
            restored, report = runtime.manager.restore(name, backup, force=force)
        warnings = _apply_report(op, report)
        console.print(f"[green]Restored {restored.name} into instance '{name}'.[/green]")
        op.success(
            "Backup restored.", changed=1, warnings=warnings, backups=[str(restored.path)]
        )


# Config ------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Entry point for console_scripts."""
    app()


__all__ = ["app", "main"]
