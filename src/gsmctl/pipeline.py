"""Download and deploy pipeline.

``download`` only ever writes into the staging directory. ``deploy`` is the
only step allowed to change the install directory; see
:func:`gsmctl.filesystem.overlay_install` for how it stays all-or-nothing.
Steam backed blueprints collapse both steps into a single ``app_update``
against the install directory.

When ``deploy`` fails the staging directory keeps whatever it contained.
That content is safe to delete by hand; the next download clears it first.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .blueprints import Blueprint
from .errors import FilesystemError
from .filesystem import clear_directory
from .hooks import HookServices, hooks_for


@dataclass(frozen=True, slots=True)
class DownloadResult:
    """Where a download landed."""

    staging_dir: Path
    version: str
    collapsed: bool = False


@dataclass(frozen=True, slots=True)
class DeployResult:
    """Outcome of a deploy."""

    install_dir: Path
    version: str
    collapsed: bool = False
    staging_cleaned: bool = True


class DeployPipeline:
    """Drive blueprint strategies through download and deploy."""

    def __init__(self, services: HookServices) -> None:
        self.services = services

    def pins_versions(self, blueprint: Blueprint) -> bool:
        """Return False when the strategy can only install the newest build."""
        return not hooks_for(blueprint, self.services).collapses_deploy

    def download(self, blueprint: Blueprint, version: str, staging_dir: Path) -> DownloadResult:
        """Fetch *version* into a freshly cleared *staging_dir*."""
        hooks = hooks_for(blueprint, self.services)
        if hooks.collapses_deploy:
            return DownloadResult(staging_dir=staging_dir, version=version, collapsed=True)
        clear_directory(staging_dir)
        hooks.download(blueprint, version, staging_dir)
        return DownloadResult(staging_dir=staging_dir, version=version)

    def deploy(
        self,
        blueprint: Blueprint,
        staging_dir: Path,
        install_dir: Path,
        *,
        version: str = "",
        keep_staging: bool = False,
    ) -> DeployResult:
        """Move staged content into *install_dir*.

        Collapsed strategies always install the newest build straight into
        *install_dir*, so *version* is only reported back; callers reject
        pinned versions for them up front with :meth:`pins_versions`.
        """
        hooks = hooks_for(blueprint, self.services)
        if hooks.collapses_deploy:
            hooks.install_direct(blueprint, version, install_dir)
            return DeployResult(install_dir=install_dir, version=version, collapsed=True)

        hooks.deploy(blueprint, staging_dir, install_dir)
        cleaned = True
        if not keep_staging:
            try:
                clear_directory(staging_dir)
            except FilesystemError:
                cleaned = False
        return DeployResult(install_dir=install_dir, version=version, staging_cleaned=cleaned)


__all__ = ["DeployPipeline", "DeployResult", "DownloadResult"]
