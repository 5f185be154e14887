"""Blueprint files and the resolver that locates them.

A blueprint is a read-only ``<name>.bp`` file in ``key=value`` format that
describes how to obtain and run one kind of game server. Blueprints live in
two search directories: the bundled *default* directory and an operator
managed *custom* directory. A custom blueprint shadows a default one with the
same name.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import AlreadyExistsError, NotFoundError, ParseError, ValidationError
from .ports import PortRange, format_port_spec, parse_port_spec
from .records import parse_bool, read_records, write_records

BLUEPRINT_SUFFIX = ".bp"
REQUIRED_KEYS = ("name", "executable_file")
KNOWN_KEYS = {
    "name",
    "ports",
    "steam_app_id",
    "is_steam_account_required",
    "platform",
    "level_name",
    "executable_subdirectory",
    "executable_file",
    "executable_arguments",
    "stop_command",
    "save_command",
    "download_url",
    "version_url",
    "version_json_path",
    "version_pattern",
}
NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


@dataclass(frozen=True)
class Blueprint:
    """Immutable description of a game server."""

    name: str
    executable_file: str
    path: Path
    ports: tuple[PortRange, ...] = ()
    steam_app_id: int = 0
    is_steam_account_required: bool = False
    platform: str = "linux"
    level_name: str = "default"
    executable_subdirectory: str = ""
    executable_arguments: str = ""
    stop_command: str | None = None
    save_command: str | None = None
    download_url: str | None = None
    version_url: str | None = None
    version_json_path: str | None = None
    version_pattern: str | None = None
    extra: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_steam(self) -> bool:
        """Return True when the server is distributed through Steam."""
        return self.steam_app_id != 0

    @property
    def ports_spec(self) -> str:
        """Return the ports in UFW syntax."""
        return format_port_spec(list(self.ports))

    def executable_relpath(self) -> Path:
        """Return the executable path relative to the install directory."""
        subdir = self.executable_subdirectory.strip("/")
        return Path(subdir) / self.executable_file if subdir else Path(self.executable_file)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "ports": self.ports_spec,
            "steam_app_id": self.steam_app_id,
            "is_steam_account_required": self.is_steam_account_required,
            "platform": self.platform,
            "level_name": self.level_name,
            "executable_subdirectory": self.executable_subdirectory,
            "executable_file": self.executable_file,
            "executable_arguments": self.executable_arguments,
            "stop_command": self.stop_command,
            "save_command": self.save_command,
            "download_url": self.download_url,
            "version_url": self.version_url,
            "version_json_path": self.version_json_path,
            "version_pattern": self.version_pattern,
        }

    def to_records(self) -> dict[str, object]:
        """Return the ``key=value`` form written to ``.bp`` files."""
        values = self.to_dict()
        values.pop("path")
        records = {key: value for key, value in values.items() if value not in (None, "")}
        records.update(self.extra)
        return records


def load_blueprint(path: Path) -> Blueprint:
    """Parse the blueprint file at *path*.

    Raises :class:`ParseError` when the file is malformed or misses required
    keys.
    """
    path = Path(path)
    values = read_records(path)
    missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing and values.get("name") is None:
        values["name"] = path.name.removesuffix(BLUEPRINT_SUFFIX)
        missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing:
        raise ParseError(
            f"Blueprint {path} is missing required keys: {', '.join(missing)}",
            operation="blueprint.load",
            target=path,
        )

    try:
        ports = tuple(parse_port_spec(values.get("ports", "")))
    except ValidationError as exc:
        raise ParseError(
            f"Blueprint {path}: {exc.message}", operation="blueprint.load", target=path
        ) from exc

    app_id_raw = values.get("steam_app_id", "0") or "0"
    try:
        steam_app_id = int(app_id_raw)
    except ValueError as exc:
        raise ParseError(
            f"Blueprint {path}: steam_app_id must be an integer, got {app_id_raw!r}",
            operation="blueprint.load",
            target=path,
        ) from exc

    return Blueprint(
        name=values["name"],
        executable_file=values["executable_file"],
        path=path,
        ports=ports,
        steam_app_id=steam_app_id,
        is_steam_account_required=parse_bool(values.get("is_steam_account_required")),
        platform=values.get("platform") or "linux",
        level_name=values.get("level_name") or "default",
        executable_subdirectory=values.get("executable_subdirectory", ""),
        executable_arguments=values.get("executable_arguments", ""),
        stop_command=values.get("stop_command") or None,
        save_command=values.get("save_command") or None,
        download_url=values.get("download_url") or None,
        version_url=values.get("version_url") or None,
        version_json_path=values.get("version_json_path") or None,
        version_pattern=values.get("version_pattern") or None,
        extra={key: value for key, value in values.items() if key not in KNOWN_KEYS},
    )


@dataclass(frozen=True, slots=True)
class BlueprintResolver:
    """Locate blueprints across the default and custom directories."""

    default_dir: Path
    custom_dir: Path

    def _search_dirs(self) -> tuple[Path, Path]:
        return (self.custom_dir, self.default_dir)

    def find(self, name_or_path: str | Path) -> Path:
        """Return the absolute path of a blueprint.

        Accepts a bare name (``factorio``), a file name (``factorio.bp``) or an
        explicit path to an existing ``.bp`` file.
        """
        text = str(name_or_path).strip()
        if not text:
            raise NotFoundError("Blueprint name must not be empty.", operation="blueprint.find")

        candidate = Path(text).expanduser()
        if ("/" in text or candidate.suffix == BLUEPRINT_SUFFIX) and candidate.is_file():
            return candidate.resolve()

        filename = text if text.endswith(BLUEPRINT_SUFFIX) else f"{text}{BLUEPRINT_SUFFIX}"
        for directory in self._search_dirs():
            path = directory / filename
            if path.is_file():
                return path.resolve()
        raise NotFoundError(
            f"Blueprint '{text}' not found in {self.custom_dir} or {self.default_dir}",
            operation="blueprint.find",
            target=text,
        )

    def resolve(self, name_or_path: str | Path) -> Blueprint:
        """Find and load a blueprint."""
        return load_blueprint(self.find(name_or_path))

    def list_names(self, *, source: str | None = None) -> list[str]:
        """Return blueprint names, optionally limited to ``default`` or ``custom``."""
        return sorted(self.list_sources(source=source))

    def list_sources(self, *, source: str | None = None) -> dict[str, str]:
        """Map blueprint names to the directory kind that provides them."""
        found: dict[str, str] = {}
        for kind, directory in (("default", self.default_dir), ("custom", self.custom_dir)):
            if source is not None and kind != source:
                continue
            if not directory.is_dir():
                continue
            for path in directory.glob(f"*{BLUEPRINT_SUFFIX}"):
                found[path.name.removesuffix(BLUEPRINT_SUFFIX)] = kind
        return found

    def load_all(self) -> list[Blueprint]:
        """Load every visible blueprint, custom entries shadowing defaults."""
        return [self.resolve(name) for name in self.list_names()]

    def create_custom(self, blueprint: Blueprint, *, overwrite: bool = False) -> Path:
        """Write *blueprint* into the custom directory and return its path."""
        if not NAME_PATTERN.match(blueprint.name):
            raise ValidationError(
                f"Invalid blueprint name '{blueprint.name}'.",
                operation="blueprint.create",
                target=blueprint.name,
            )
        destination = self.custom_dir / f"{blueprint.name}{BLUEPRINT_SUFFIX}"
        if destination.exists() and not overwrite:
            raise AlreadyExistsError(
                f"Custom blueprint '{blueprint.name}' already exists at {destination}.",
                operation="blueprint.create",
                target=destination,
            )
        write_records(destination, blueprint.to_records(), mode=0o644)
        return destination


__all__ = [
    "BLUEPRINT_SUFFIX",
    "Blueprint",
    "BlueprintResolver",
    "load_blueprint",
]
