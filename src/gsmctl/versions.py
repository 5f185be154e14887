"""Latest and installed version bookkeeping.

Versions are opaque strings. The only comparison is equality: an update is
needed whenever the latest version differs from the installed one, or when
the blueprint publishes a rolling build without a version scheme.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .blueprints import Blueprint
from .errors import FilesystemError, GsmError
from .hooks import ROLLING_VERSION, HookServices, hooks_for
from .instances import Instance, InstanceManager


def needs_update(installed: str, latest: str) -> bool:
    """Return True when *latest* should replace *installed*."""
    if latest == ROLLING_VERSION:
        return True
    return installed != latest


@dataclass(frozen=True, slots=True)
class UpdateCheck:
    """Outcome of comparing installed and latest versions.

    ``error`` is set instead of raising so callers decide whether a failed
    lookup means "no update" or "abort".
    """

    installed: str
    latest: str | None
    error: GsmError | None = None

    @property
    def update_available(self) -> bool:
        """True when a lookup succeeded and reported a different version."""
        return self.latest is not None and needs_update(self.installed, self.latest)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installed": self.installed,
            "latest": self.latest,
            "update_available": self.update_available,
            "error": self.error.describe() if self.error else None,
        }


class VersionResolver:
    """Resolve latest versions through blueprint strategies and track installs."""

    def __init__(self, services: HookServices, instances: InstanceManager) -> None:
        self.services = services
        self.instances = instances

    def latest_version(self, blueprint: Blueprint) -> str:
        """Return the newest version; raises NetworkError or ParseError."""
        return hooks_for(blueprint, self.services).latest_version(blueprint)

    def installed_version(self, instance: Instance) -> str:
        """Return the installed version, or an empty string when nothing is installed."""
        try:
            return instance.version_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return instance.installed_version
        except OSError as exc:
            raise FilesystemError(
                f"Unable to read {instance.version_file}: {exc}",
                operation="version.read",
                target=instance.version_file,
            ) from exc

    def save_installed_version(self, instance: Instance, version: str) -> None:
        """Record *version* in the version file and in the instance record."""
        path = instance.version_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(f"{version}\n")
                os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, path)
            finally:
                Path(tmp_name).unlink(missing_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to write {path}: {exc}", operation="version.write", target=path
            ) from exc
        instance.installed_version = version
        self.instances.update(instance)

    def check(self, instance: Instance, blueprint: Blueprint) -> UpdateCheck:
        """Compare installed and latest versions without raising lookup errors."""
        installed = self.installed_version(instance)
        try:
            latest = self.latest_version(blueprint)
        except GsmError as exc:
            return UpdateCheck(installed=installed, latest=None, error=exc)
        return UpdateCheck(installed=installed, latest=latest)


__all__ = ["ROLLING_VERSION", "UpdateCheck", "VersionResolver", "needs_update"]
