"""Snapshot and restore instance install directories.

A backup is either a directory copy named ``<instance>-<version>-<stamp>.backup``
or, when the instance compresses backups, a gzip tarball with the same stem and
a ``.tar.gz`` suffix plus a ``.sha256`` checksum file. The timestamp only
orders backups for display.
"""
from __future__ import annotations

import secrets
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import compute_checksum, create_archive, extract_archive, write_checksum_file
from .errors import AlreadyExistsError, FilesystemError, NotFoundError, ValidationError
from .filesystem import swap_into_place
from .instances import Instance
from .versions import VersionResolver

BACKUP_SUFFIX = ".backup"
ARCHIVE_SUFFIX = ".backup.tar.gz"
STAMP_FORMAT = "%Y%m%dT%H%M%S"
UNKNOWN_VERSION = "unknown"


@dataclass(frozen=True, slots=True)
class Backup:
    """One backup of an instance install directory."""

    path: Path
    instance: str
    version: str
    stamp: str
    compressed: bool

    @property
    def name(self) -> str:
        """File or directory name of the backup."""
        return self.path.name

    @property
    def checksum_path(self) -> Path:
        """Checksum file written next to compressed backups."""
        return self.path.with_name(f"{self.path.name}.sha256")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "instance": self.instance,
            "version": self.version,
            "created": self.stamp,
            "compressed": self.compressed,
        }


def parse_backup_name(instance: str, path: Path) -> Backup | None:
    """Return a :class:`Backup` when *path* is named like a backup of *instance*."""
    name = path.name
    if name.endswith(ARCHIVE_SUFFIX):
        stem, compressed = name[: -len(ARCHIVE_SUFFIX)], True
    elif name.endswith(BACKUP_SUFFIX):
        stem, compressed = name[: -len(BACKUP_SUFFIX)], False
    else:
        return None
    prefix = f"{instance}-"
    if not stem.startswith(prefix):
        return None
    version, _, stamp = stem[len(prefix) :].rpartition("-")
    try:
        datetime.strptime(stamp, STAMP_FORMAT)
    except ValueError:
        return None
    return Backup(
        path=path,
        instance=instance,
        version=version,
        stamp=stamp,
        compressed=compressed,
    )


class BackupManager:
    """Create, list and restore backups of instance install directories."""

    def __init__(
        self,
        versions: VersionResolver,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.versions = versions
        self._now = now or (lambda: datetime.now(UTC))

    def create(self, instance: Instance) -> Backup:
        """Snapshot the install directory of *instance*."""
        source = instance.install_dir
        if not source.is_dir():
            raise NotFoundError(
                f"Install directory {source} does not exist; nothing to back up.",
                operation="backup.create",
                target=source,
            )
        version = self.versions.installed_version(instance) or UNKNOWN_VERSION
        stamp = self._now().strftime(STAMP_FORMAT)
        stem = f"{instance.name}-{version}-{stamp}"
        compressed = instance.compress_backups
        destination = instance.backups_dir / (
            f"{stem}{ARCHIVE_SUFFIX}" if compressed else f"{stem}{BACKUP_SUFFIX}"
        )
        if destination.exists():
            raise AlreadyExistsError(
                f"Backup {destination.name} already exists.",
                operation="backup.create",
                target=destination,
            )
        try:
            instance.backups_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to create {instance.backups_dir}: {exc}",
                operation="mkdir",
                target=instance.backups_dir,
            ) from exc

        partial = destination.with_name(f".{destination.name}.partial-{secrets.token_hex(4)}")
        try:
            if compressed:
                create_archive(source, partial, compress=True)
            else:
                shutil.copytree(source, partial, symlinks=True)
            partial.rename(destination)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to write backup {destination}: {exc}",
                operation="backup.create",
                target=destination,
            ) from exc
        finally:
            if partial.is_dir():
                shutil.rmtree(partial, ignore_errors=True)
            else:
                partial.unlink(missing_ok=True)
        if compressed:
            write_checksum_file(destination, compute_checksum(destination))
        return Backup(
            path=destination,
            instance=instance.name,
            version=version,
            stamp=stamp,
            compressed=compressed,
        )

    def list(self, instance: Instance) -> list[Backup]:
        """Return the backups of *instance*, oldest first."""
        if not instance.backups_dir.is_dir():
            return []
        found = [
            backup
            for path in instance.backups_dir.iterdir()
            if (backup := parse_backup_name(instance.name, path)) is not None
        ]
        return sorted(found, key=lambda item: (item.stamp, item.name))

    def find(self, instance: Instance, name: str) -> Backup:
        """Return the backup called *name*, or the newest one when *name* is ``latest``."""
        backups = self.list(instance)
        if name == "latest" and backups:
            return backups[-1]
        for backup in backups:
            if backup.name == name or str(backup.path) == name:
                return backup
        raise NotFoundError(
            f"Backup '{name}' not found for instance '{instance.name}'.",
            operation="backup.restore",
            target=instance.backups_dir / name,
        )

    def restore(self, instance: Instance, name: str, *, force: bool = False) -> Backup:
        """Restore backup *name* into the install directory of *instance*.

        A non-empty install directory is only replaced when *force* is set.
        The backup is copied into a sibling tree first and swapped into place,
        so a failed copy leaves the current install untouched. The version
        encoded in the backup name becomes the installed version.
        """
        backup = self.find(instance, name)
        target = instance.install_dir
        if target.is_dir() and any(target.iterdir()):
            if not force:
                raise ValidationError(
                    f"Install directory {target} is not empty; use --force to replace it.",
                    operation="backup.restore",
                    target=target,
                )
        if backup.compressed:
            self._verify_checksum(backup)

        with tempfile.TemporaryDirectory(
            dir=str(instance.backups_dir), prefix=".restore-"
        ) as scratch:
            payload = self._payload(backup, Path(scratch))
            next_dir = target.parent / f".{target.name}.restore-{secrets.token_hex(4)}"
            try:
                shutil.copytree(payload, next_dir, symlinks=True)
            except (OSError, shutil.Error) as exc:
                shutil.rmtree(next_dir, ignore_errors=True)
                raise FilesystemError(
                    f"Unable to restore {backup.name} into {target}: {exc}",
                    operation="backup.restore",
                    target=target,
                ) from exc
            swap_into_place(next_dir, target, operation="backup.restore.swap")

        if backup.version and backup.version != UNKNOWN_VERSION:
            self.versions.save_installed_version(instance, backup.version)
        return backup

    @staticmethod
    def _payload(backup: Backup, scratch: Path) -> Path:
        if not backup.compressed:
            return backup.path
        extract_archive(backup.path, scratch)
        entries = [item for item in scratch.iterdir() if item.is_dir()]
        if len(entries) != 1:
            raise FilesystemError(
                f"Backup archive {backup.name} does not contain a single install directory.",
                operation="backup.restore",
                target=backup.path,
            )
        return entries[0]

    @staticmethod
    def _verify_checksum(backup: Backup) -> None:
        checksum_path = backup.checksum_path
        if not checksum_path.exists():
            return
        expected = checksum_path.read_text(encoding="utf-8").split()[0]
        actual = compute_checksum(backup.path)
        if expected != actual:
            raise FilesystemError(
                f"Checksum mismatch for {backup.name}: expected {expected}, got {actual}.",
                operation="backup.verify",
                target=backup.path,
            )


__all__ = ["Backup", "BackupManager", "parse_backup_name"]
