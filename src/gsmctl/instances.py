"""Instance records and their lifecycle on disk.

An instance is one installed copy of a game server created from a blueprint.
Its record is a flat ``key=value`` file managed through
:class:`~gsmctl.state.registry.InstanceRegistry`. Every directory and file the
instance owns is derived from its working directory when the record is
created, then stored explicitly so later operations never guess.
"""
from __future__ import annotations

import random
import re
from dataclasses import MISSING, dataclass, fields
from datetime import UTC, datetime
from pathlib import Path

from .blueprints import Blueprint
from .config import AppConfig
from .errors import AlreadyExistsError, ParseError, ValidationError
from .records import parse_bool
from .state.registry import InstanceRegistry

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
LIFECYCLE_MANAGERS = ("standalone", "systemd")
RUNTIMES = ("native", "container")
GLOBAL_EXECUTABLES = {"java", "docker", "wine"}
MAX_ID_ATTEMPTS = 1000


@dataclass
class Instance:
    """Mutable record describing one installed game server."""

    name: str
    blueprint: str
    blueprint_file: Path
    working_dir: Path
    install_dir: Path
    saves_dir: Path
    backups_dir: Path
    temp_dir: Path
    logs_dir: Path
    management_file: Path
    control_file: Path
    pid_file: Path
    version_file: Path
    executable_subdirectory: str = ""
    executable_file: str = ""
    executable_arguments: str = ""
    stop_command: str = ""
    save_command: str = ""
    ports: str = ""
    platform: str = "linux"
    level_name: str = "default"
    steam_app_id: int = 0
    is_steam_account_required: bool = False
    installed_version: str = ""
    lifecycle_manager: str = "standalone"
    runtime: str = "native"
    save_command_timeout: float = 5.0
    stop_command_timeout: float = 30.0
    auto_update: bool = False
    compress_backups: bool = False
    use_upnp: bool = False
    firewall_managed: bool = False
    systemd_service_file: str = ""
    systemd_socket_file: str = ""
    firewall_rule_file: str = ""
    command_shortcut_file: str = ""
    created_at: str = ""

    @property
    def executable_dir(self) -> Path:
        """Directory the server process is launched from."""
        subdir = self.executable_subdirectory.strip("/")
        return self.install_dir / subdir if subdir else self.install_dir

    @property
    def executable_path(self) -> Path:
        """Absolute path of the server executable inside the install directory."""
        return self.executable_dir / self.executable_file

    @property
    def launch_command(self) -> str:
        """Executable as invoked from :attr:`executable_dir`."""
        if self.executable_file in GLOBAL_EXECUTABLES:
            return self.executable_file
        return f"./{self.executable_file}"

    def path_variables(self) -> dict[str, str]:
        """Variables that blueprint argument templates may reference."""
        return {
            "instance_name": self.name,
            "instance_working_dir": str(self.working_dir),
            "instance_install_dir": str(self.install_dir),
            "instance_saves_dir": str(self.saves_dir),
            "instance_backups_dir": str(self.backups_dir),
            "instance_temp_dir": str(self.temp_dir),
            "instance_logs_dir": str(self.logs_dir),
            "instance_level_name": self.level_name,
        }

    def resolved_arguments(self) -> str:
        """Substitute ``$var``, ``${var}`` and ``{var}`` references in the arguments."""
        variables = self.path_variables()

        def _replace(match: re.Match[str]) -> str:
            key = match.group("a") or match.group("b") or match.group("c")
            return variables.get(key, match.group(0))

        return _ARGUMENT_VARIABLE.sub(_replace, self.executable_arguments)

    def to_record(self) -> dict[str, object]:
        """Return the ``key=value`` mapping persisted on disk."""
        record: dict[str, object] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            record[item.name] = str(value) if isinstance(value, Path) else value
        return record

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return self.to_record()

    @classmethod
    def from_record(cls, values: dict[str, str], *, source: str = "<record>") -> Instance:
        """Build an instance from a parsed record, failing fast on bad values."""
        kwargs: dict[str, object] = {}
        for item in fields(cls):
            if item.name not in values:
                continue
            raw = values[item.name]
            kind = str(item.type)
            try:
                if kind == "Path":
                    kwargs[item.name] = Path(raw)
                elif kind == "bool":
                    kwargs[item.name] = parse_bool(raw)
                elif kind == "int":
                    kwargs[item.name] = int(raw or 0)
                elif kind == "float":
                    kwargs[item.name] = float(raw)
                else:
                    kwargs[item.name] = raw
            except ValueError as exc:
                raise ParseError(
                    f"{source}: invalid value for {item.name}: {raw!r}",
                    operation="instance.load",
                    target=source,
                ) from exc
        required = [
            item.name
            for item in fields(cls)
            if item.name not in kwargs
            and item.default is MISSING
            and item.default_factory is MISSING
        ]
        if required:
            raise ParseError(
                f"{source}: missing required keys: {', '.join(required)}",
                operation="instance.load",
                target=source,
            )
        instance = cls(**kwargs)  # type: ignore[arg-type]
        if instance.lifecycle_manager not in LIFECYCLE_MANAGERS:
            raise ParseError(
                f"{source}: unknown lifecycle_manager {instance.lifecycle_manager!r}",
                operation="instance.load",
                target=source,
            )
        if instance.runtime not in RUNTIMES:
            raise ParseError(
                f"{source}: unknown runtime {instance.runtime!r}",
                operation="instance.load",
                target=source,
            )
        return instance


_ARGUMENT_VARIABLE = re.compile(
    r"\$\{(?P<a>instance_[a-z_]+)\}|\$(?P<b>instance_[a-z_]+)|\{(?P<c>instance_[a-z_]+)\}"
)


def validate_instance_name(name: str, *, operation: str = "instance.create") -> str:
    """Return *name* when it is a valid instance identifier."""
    if not NAME_PATTERN.fullmatch(name or ""):
        raise ValidationError(
            f"Invalid instance name '{name}'. Use lowercase letters, digits, '.', '_' or '-'.",
            operation=operation,
            target=name,
        )
    return name


class InstanceManager:
    """Create, look up, update and remove instance records."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: InstanceRegistry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or InstanceRegistry(config.instances_dir)
        self._rng = rng or random.SystemRandom()

    def generate_id(self, blueprint: Blueprint | str) -> str:
        """Return a fresh instance name for *blueprint*.

        The bare blueprint name is used when free; otherwise a random numeric
        suffix of ``instance_suffix_length`` digits is appended until the name
        is unique across all instances.
        """
        base = blueprint.name if isinstance(blueprint, Blueprint) else blueprint
        taken = self.registry.names()
        if base not in taken:
            return base
        length = self.config.instance_suffix_length
        for _ in range(MAX_ID_ATTEMPTS):
            suffix = "".join(str(self._rng.randint(0, 9)) for _ in range(length))
            candidate = f"{base}-{suffix}"
            if candidate not in taken:
                return candidate
        raise AlreadyExistsError(
            f"Could not allocate a unique name for '{base}' after {MAX_ID_ATTEMPTS} attempts; "
            "increase instance_suffix_length.",
            operation="instance.generate_id",
            target=base,
        )

    def build(
        self,
        blueprint: Blueprint,
        *,
        name: str,
        install_dir: Path | None = None,
    ) -> Instance:
        """Return an in-memory instance for *blueprint* without persisting it."""
        working_dir = Path(install_dir or self.config.default_install_dir) / name
        lifecycle = self.config.lifecycle
        return Instance(
            name=name,
            blueprint=blueprint.name,
            blueprint_file=blueprint.path,
            working_dir=working_dir,
            install_dir=working_dir / "install",
            saves_dir=working_dir / "saves",
            backups_dir=working_dir / "backups",
            temp_dir=working_dir / "temp",
            logs_dir=working_dir / "logs",
            management_file=working_dir / f"{name}.manage.sh",
            control_file=working_dir / f".{name}.stdin",
            pid_file=working_dir / f".{name}.pid",
            version_file=working_dir / f".{name}.version",
            executable_subdirectory=blueprint.executable_subdirectory,
            executable_file=blueprint.executable_file,
            executable_arguments=blueprint.executable_arguments,
            stop_command=blueprint.stop_command or "",
            save_command=blueprint.save_command or "",
            ports=blueprint.ports_spec,
            platform=blueprint.platform,
            level_name=blueprint.level_name,
            steam_app_id=blueprint.steam_app_id,
            is_steam_account_required=blueprint.is_steam_account_required,
            lifecycle_manager="systemd" if self.config.systemd.enabled else "standalone",
            runtime="native",
            save_command_timeout=lifecycle.save_command_timeout,
            stop_command_timeout=lifecycle.stop_command_timeout,
            auto_update=lifecycle.auto_update_before_start,
            compress_backups=self.config.backups.compression,
            use_upnp=self.config.port_forwarding and bool(blueprint.ports),
            firewall_managed=self.config.firewall.enabled,
            created_at=datetime.now(UTC).isoformat(timespec="seconds"),
        )

    def create(
        self,
        blueprint: Blueprint,
        *,
        install_dir: Path | None = None,
        name: str | None = None,
    ) -> Instance:
        """Create and persist a new instance record.

        Callers serialise concurrent creation through the global lock.
        """
        if name is None:
            name = self.generate_id(blueprint)
        validate_instance_name(name)
        if self.registry.exists(name):
            raise AlreadyExistsError(
                f"Instance '{name}' already exists.", operation="instance.create", target=name
            )
        instance = self.build(blueprint, name=name, install_dir=install_dir)
        self.registry.ensure_root()
        self.registry.write(instance.blueprint, instance.name, instance.to_record())
        return instance

    def find(self, name: str) -> Path:
        """Return the record path for *name*."""
        return self.registry.find(name)

    def get(self, name: str) -> Instance:
        """Load the instance named *name*."""
        path = self.registry.find(name)
        values = self.registry.read(name)
        return Instance.from_record(values, source=str(path))

    def update(self, instance: Instance) -> Path:
        """Persist changes to an existing instance."""
        self.registry.find(instance.name)
        return self.registry.write(instance.blueprint, instance.name, instance.to_record())

    def remove(self, name: str) -> Path:
        """Delete the record for *name*."""
        return self.registry.remove(name)

    def names(self) -> list[str]:
        """Return every registered instance name."""
        return sorted(self.registry.names())

    def list(self) -> list[Instance]:
        """Return every registered instance sorted by name."""
        return [self.get(path.stem) for path in self.registry.iter_paths()]


__all__ = [
    "Instance",
    "InstanceManager",
    "validate_instance_name",
]
