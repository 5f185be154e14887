"""Configuration loader for gsmctl.

Values are merged from the following sources, later sources winning:

1. Built-in defaults.
2. ``/etc/gsmctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``GSMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GSMCTL_STEAM__USERNAME=builder
    export GSMCTL_SYSTEMD__ENABLED=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed explicitly to every component that needs it.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "GSMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

BUNDLED_BLUEPRINTS_DIR = Path(__file__).resolve().parent / "data" / "blueprints"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BlueprintsConfig:
    """Blueprint search directories (custom shadows default)."""

    default_dir: Path = BUNDLED_BLUEPRINTS_DIR
    custom_dir: Path = Path("/etc/gsmctl/blueprints")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"default_dir": str(self.default_dir), "custom_dir": str(self.custom_dir)}


@dataclass(frozen=True)
class SteamConfig:
    """SteamCMD binary and account credentials."""

    username: str | None = None
    password: str | None = None
    steamcmd_bin: str = "steamcmd"

    @property
    def has_credentials(self) -> bool:
        """Return True when a Steam account username is configured."""
        return bool(self.username)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "username": self.username,
            "password": "********" if self.password else None,
            "steamcmd_bin": self.steamcmd_bin,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    enabled: bool = False
    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    service_user: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "service_user": self.service_user,
        }


@dataclass(frozen=True)
class FirewallConfig:
    """UFW application profile management."""

    enabled: bool = False
    rules_dir: Path = Path("/etc/ufw/applications.d")
    ufw_bin: str = "ufw"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "rules_dir": str(self.rules_dir),
            "ufw_bin": self.ufw_bin,
        }


@dataclass(frozen=True)
class LifecycleConfig:
    """Defaults copied into new instance records."""

    save_command_timeout: float = 5.0
    stop_command_timeout: float = 30.0
    auto_update_before_start: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "save_command_timeout": self.save_command_timeout,
            "stop_command_timeout": self.stop_command_timeout,
            "auto_update_before_start": self.auto_update_before_start,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup defaults."""

    compression: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"compression": self.compression}


@dataclass(frozen=True)
class LoggingConfig:
    """Structured operations log toggle."""

    enabled: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled}


@dataclass(frozen=True)
class EventsConfig:
    """Event broadcasting over a Unix stream socket and HTTP webhooks."""

    enabled: bool = False
    socket_path: Path = Path("/run/gsmctl/events.sock")
    webhook_urls: tuple[str, ...] = ()
    webhook_timeout: float = 10.0
    webhook_retries: int = 2
    webhook_secret: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secret redacted)."""
        return {
            "enabled": self.enabled,
            "socket_path": str(self.socket_path),
            "webhook_urls": list(self.webhook_urls),
            "webhook_timeout": self.webhook_timeout,
            "webhook_retries": self.webhook_retries,
            "webhook_secret": "********" if self.webhook_secret else None,
        }


@dataclass(frozen=True)
class CommandShortcutsConfig:
    """Symlinks to management scripts placed in a directory on ``PATH``."""

    enabled: bool = False
    directory: Path = Path("/usr/local/bin")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "directory": str(self.directory)}


@dataclass(frozen=True)
class HttpConfig:
    """HTTP client settings."""

    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for gsmctl."""

    config_file: Path
    instances_dir: Path
    default_install_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    instance_suffix_length: int
    port_forwarding: bool
    blueprints: BlueprintsConfig
    steam: SteamConfig
    systemd: SystemdConfig
    firewall: FirewallConfig
    lifecycle: LifecycleConfig
    backups: BackupConfig
    logging: LoggingConfig
    events: EventsConfig
    command_shortcuts: CommandShortcutsConfig
    http: HttpConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_dir": str(self.instances_dir),
            "default_install_dir": str(self.default_install_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "instance_suffix_length": self.instance_suffix_length,
            "port_forwarding": self.port_forwarding,
            "blueprints": self.blueprints.to_dict(),
            "steam": self.steam.to_dict(),
            "systemd": self.systemd.to_dict(),
            "firewall": self.firewall.to_dict(),
            "lifecycle": self.lifecycle.to_dict(),
            "backups": self.backups.to_dict(),
            "logging": self.logging.to_dict(),
            "events": self.events.to_dict(),
            "command_shortcuts": self.command_shortcuts.to_dict(),
            "http": self.http.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/gsmctl/config.yml",
    "instances_dir": "/var/lib/gsmctl/instances",
    "default_install_dir": "/opt/gsmctl",
    "logs_dir": "/var/log/gsmctl",
    "runtime_dir": "/run/gsmctl",
    "templates_dir": "/etc/gsmctl/templates",
    "lock_timeout": 30.0,
    "instance_suffix_length": 2,
    "port_forwarding": False,
    "blueprints": {
        "default_dir": None,  # bundled blueprints when absent
        "custom_dir": "/etc/gsmctl/blueprints",
    },
    "steam": {
        "username": None,
        "password": None,
        "steamcmd_bin": "steamcmd",
    },
    "systemd": {
        "enabled": False,
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "service_user": None,
    },
    "firewall": {
        "enabled": False,
        "rules_dir": "/etc/ufw/applications.d",
        "ufw_bin": "ufw",
    },
    "lifecycle": {
        "save_command_timeout": 5.0,
        "stop_command_timeout": 30.0,
        "auto_update_before_start": False,
    },
    "backups": {
        "compression": False,
    },
    "logging": {
        "enabled": True,
    },
    "events": {
        "enabled": False,
        "socket_path": "/run/gsmctl/events.sock",
        "webhook_urls": [],
        "webhook_timeout": 10.0,
        "webhook_retries": 2,
        "webhook_secret": None,
    },
    "command_shortcuts": {
        "enabled": False,
        "directory": "/usr/local/bin",
    },
    "http": {
        "timeout": 30.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
MAX_SUFFIX_LENGTH = 9


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    suffix = _expect_int(raw.get("instance_suffix_length"), "instance_suffix_length", default=2)
    if suffix < 1 or suffix > MAX_SUFFIX_LENGTH:
        raise ConfigError(
            f"instance_suffix_length must be between 1 and {MAX_SUFFIX_LENGTH}. Got {suffix}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    blueprints_mapping = _as_dict(raw.get("blueprints"), "blueprints")
    default_dir_value = blueprints_mapping.get("default_dir")
    blueprints = BlueprintsConfig(
        default_dir=_to_path(default_dir_value) if default_dir_value else BUNDLED_BLUEPRINTS_DIR,
        custom_dir=_to_path(blueprints_mapping.get("custom_dir", "/etc/gsmctl/blueprints")),
    )

    steam_mapping = _as_dict(raw.get("steam"), "steam")
    steam = SteamConfig(
        username=_optional_str(steam_mapping.get("username")),
        password=_optional_str(steam_mapping.get("password")),
        steamcmd_bin=str(steam_mapping.get("steamcmd_bin") or "steamcmd"),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        enabled=_expect_bool(systemd_mapping.get("enabled"), "systemd.enabled", default=False),
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
        service_user=_optional_str(systemd_mapping.get("service_user")),
    )

    firewall_mapping = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        enabled=_expect_bool(firewall_mapping.get("enabled"), "firewall.enabled", default=False),
        rules_dir=_to_path(firewall_mapping.get("rules_dir", "/etc/ufw/applications.d")),
        ufw_bin=str(firewall_mapping.get("ufw_bin", "ufw")),
    )

    lifecycle_mapping = _as_dict(raw.get("lifecycle"), "lifecycle")
    lifecycle = LifecycleConfig(
        save_command_timeout=_expect_non_negative_float(
            lifecycle_mapping.get("save_command_timeout"),
            "lifecycle.save_command_timeout",
            default=5.0,
        ),
        stop_command_timeout=_expect_positive_float(
            lifecycle_mapping.get("stop_command_timeout"),
            "lifecycle.stop_command_timeout",
            default=30.0,
        ),
        auto_update_before_start=_expect_bool(
            lifecycle_mapping.get("auto_update_before_start"),
            "lifecycle.auto_update_before_start",
            default=False,
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        compression=_expect_bool(
            backups_mapping.get("compression"), "backups.compression", default=False
        ),
    )

    logging_mapping = _as_dict(raw.get("logging"), "logging")
    logging_config = LoggingConfig(
        enabled=_expect_bool(logging_mapping.get("enabled"), "logging.enabled", default=True),
    )

    events_mapping = _as_dict(raw.get("events"), "events")
    events = EventsConfig(
        enabled=_expect_bool(events_mapping.get("enabled"), "events.enabled", default=False),
        socket_path=_to_path(events_mapping.get("socket_path", "/run/gsmctl/events.sock")),
        webhook_urls=_expect_url_list(events_mapping.get("webhook_urls"), "events.webhook_urls"),
        webhook_timeout=_expect_positive_float(
            events_mapping.get("webhook_timeout"), "events.webhook_timeout", default=10.0
        ),
        webhook_retries=_expect_int(
            events_mapping.get("webhook_retries"), "events.webhook_retries", default=2
        ),
        webhook_secret=_optional_str(events_mapping.get("webhook_secret")),
    )
    if events.webhook_retries < 0:
        raise ConfigError(
            f"events.webhook_retries must not be negative. Got {events.webhook_retries}."
        )

    shortcuts_mapping = _as_dict(raw.get("command_shortcuts"), "command_shortcuts")
    command_shortcuts = CommandShortcutsConfig(
        enabled=_expect_bool(
            shortcuts_mapping.get("enabled"), "command_shortcuts.enabled", default=False
        ),
        directory=_to_path(shortcuts_mapping.get("directory", "/usr/local/bin")),
    )

    http_mapping = _as_dict(raw.get("http"), "http")
    http = HttpConfig(
        timeout=_expect_positive_float(http_mapping.get("timeout"), "http.timeout", default=30.0),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        instances_dir=_to_path(raw.get("instances_dir")),
        default_install_dir=_to_path(raw.get("default_install_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        instance_suffix_length=_expect_int(
            raw.get("instance_suffix_length"), "instance_suffix_length", default=2
        ),
        port_forwarding=_expect_bool(
            raw.get("port_forwarding"), "port_forwarding", default=False
        ),
        blueprints=blueprints,
        steam=steam,
        systemd=systemd,
        firewall=firewall,
        lifecycle=lifecycle,
        backups=backups,
        logging=logging_config,
        events=events,
        command_shortcuts=command_shortcuts,
        http=http,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_url_list(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items: list[object] = list(value.split(","))
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ConfigError(f"Expected {label} to be a list of URLs. Got {value!r}.")
    urls: list[str] = []
    for item in items:
        text = str(item).strip()
        if not text:
            continue
        if not text.startswith(("http://", "https://")):
            raise ConfigError(f"{label} entries must be http(s) URLs. Got {text!r}.")
        urls.append(text)
    return tuple(urls)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "BlueprintsConfig",
    "ConfigError",
    "EventsConfig",
    "FirewallConfig",
    "HttpConfig",
    "LifecycleConfig",
    "LoggingConfig",
    "SteamConfig",
    "SystemdConfig",
    "load_config",
]
