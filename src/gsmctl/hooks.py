"""Per-blueprint download strategies.

A strategy answers three questions for one family of game servers: what is
the latest version, how is it downloaded into a staging directory and how is
staged content deployed into the install directory. Strategies are looked up
by blueprint name in a registry; blueprints without a registered strategy use
:class:`SteamHooks` when they declare a Steam app id and
:class:`HttpArchiveHooks` otherwise.
"""
from __future__ import annotations

import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .archive import archive_kind, extract_archive
from .blueprints import Blueprint
from .errors import ConfigurationError, FilesystemError, ParseError
from .filesystem import ensure_executable, normalize_layout, overlay_install
from .providers.downloads import HttpClient
from .providers.steamcmd import SteamCmd

ROLLING_VERSION = "rolling"
DOWNLOAD_SUBDIR = ".gsmctl-download"


@dataclass(slots=True)
class HookServices:
    """Clients a strategy may use."""

    http: HttpClient
    steamcmd: SteamCmd


class GameHooks:
    """Base strategy. Subclasses override the steps that differ."""

    #: True when the strategy installs straight into the install directory.
    collapses_deploy = False

    def __init__(self, services: HookServices) -> None:
        self.services = services

    def latest_version(self, blueprint: Blueprint) -> str:
        """Return the newest available version token."""
        raise NotImplementedError

    def download(self, blueprint: Blueprint, version: str, staging_dir: Path) -> None:
        """Populate *staging_dir* with *version*. Must not touch the install directory."""
        raise NotImplementedError

    def deploy(self, blueprint: Blueprint, staging_dir: Path, install_dir: Path) -> None:
        """Move staged content into *install_dir*."""
        overlay_install(staging_dir, install_dir)

    def install_direct(self, blueprint: Blueprint, version: str, install_dir: Path) -> None:
        """Install *version* straight into *install_dir* (collapsed strategies only)."""
        raise NotImplementedError


class SteamHooks(GameHooks):
    """SteamCMD backed servers: build ids as versions, ``app_update`` installs."""

    collapses_deploy = True

    def latest_version(self, blueprint: Blueprint) -> str:
        return self.services.steamcmd.latest_buildid(
            blueprint.steam_app_id,
            account_required=blueprint.is_steam_account_required,
        )

    def download(self, blueprint: Blueprint, version: str, staging_dir: Path) -> None:
        # Steam downloads validate in place; see install_direct.
        return None

    def install_direct(self, blueprint: Blueprint, version: str, install_dir: Path) -> None:
        # app_update has no build selector; it always fetches the public branch.
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to create {install_dir}: {exc}", operation="mkdir", target=install_dir
            ) from exc
        self.services.steamcmd.app_update(
            blueprint.steam_app_id,
            install_dir,
            account_required=blueprint.is_steam_account_required,
            platform=blueprint.platform,
        )
        executable = install_dir / blueprint.executable_relpath()
        if executable.is_file():
            ensure_executable(executable)


def extract_json_path(data: object, path: str, *, source: str) -> object:
    """Walk a dotted path through decoded JSON; integer segments index lists."""
    current = data
    for segment in path.split("."):
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError) as exc:
                raise ParseError(
                    f"JSON path {path!r} not found in {source}", operation="version", target=source
                ) from exc
        elif isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            raise ParseError(
                f"JSON path {path!r} not found in {source}", operation="version", target=source
            )
    return current


class HttpArchiveHooks(GameHooks):
    """Servers published as an archive or a single binary over HTTP."""

    def latest_version(self, blueprint: Blueprint) -> str:
        url = blueprint.version_url
        if not url:
            return ROLLING_VERSION
        if blueprint.version_json_path:
            value = extract_json_path(
                self.services.http.get_json(url), blueprint.version_json_path, source=url
            )
            text = str(value)
        else:
            text = self.services.http.get_text(url)
        if blueprint.version_pattern:
            match = re.search(blueprint.version_pattern, text)
            if match is None:
                raise ParseError(
                    f"Pattern {blueprint.version_pattern!r} did not match the response of {url}",
                    operation="version",
                    target=url,
                )
            text = match.group(1) if match.groups() else match.group(0)
        version = text.strip()
        if not version:
            raise ParseError(f"Empty version returned by {url}", operation="version", target=url)
        return version

    def download_url(self, blueprint: Blueprint, version: str) -> str:
        """Return the URL for *version*."""
        if not blueprint.download_url:
            raise ConfigurationError(
                f"Blueprint '{blueprint.name}' declares no download_url.",
                operation="download",
                target=blueprint.path,
            )
        return blueprint.download_url.replace("{version}", version)

    def download(self, blueprint: Blueprint, version: str, staging_dir: Path) -> None:
        url = self.download_url(blueprint, version)
        holding = staging_dir / DOWNLOAD_SUBDIR
        fetched = self.services.http.download(url, holding)
        if archive_kind(fetched) is not None:
            extract_archive(fetched, staging_dir)
        else:
            target = staging_dir / blueprint.executable_relpath()
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(fetched), str(target))
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to move {fetched} to {target}: {exc}", operation="mv", target=target
                ) from exc
        try:
            shutil.rmtree(holding, ignore_errors=False)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to remove {holding}: {exc}", operation="rm", target=holding
            ) from exc
        normalize_layout(staging_dir, executable=blueprint.executable_relpath())
        executable = staging_dir / blueprint.executable_relpath()
        if executable.is_file():
            ensure_executable(executable)


_REGISTRY: dict[str, type[GameHooks]] = {}


def register_hooks(name: str) -> Callable[[type[GameHooks]], type[GameHooks]]:
    """Class decorator registering a strategy for the blueprint *name*."""

    def decorator(cls: type[GameHooks]) -> type[GameHooks]:
        _REGISTRY[name] = cls
        return cls

    return decorator


def hooks_for(blueprint: Blueprint, services: HookServices) -> GameHooks:
    """Return the strategy for *blueprint*."""
    cls = _REGISTRY.get(blueprint.name)
    if cls is None:
        cls = SteamHooks if blueprint.is_steam else HttpArchiveHooks
    return cls(services)


@register_hooks("terraria")
class TerrariaHooks(HttpArchiveHooks):
    """Terraria ships several launchers that all need the execute bit."""

    def download(self, blueprint: Blueprint, version: str, staging_dir: Path) -> None:
        super().download(blueprint, version, staging_dir)
        for launcher in staging_dir.glob("TerrariaServer*"):
            if launcher.is_file():
                ensure_executable(launcher)


__all__ = [
    "GameHooks",
    "HookServices",
    "HttpArchiveHooks",
    "ROLLING_VERSION",
    "SteamHooks",
    "TerrariaHooks",
    "extract_json_path",
    "hooks_for",
    "register_hooks",
]
