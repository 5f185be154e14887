"""Archive helpers shared by the download pipeline and backups."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path

from .errors import FilesystemError


def archive_kind(path: Path) -> str | None:
    """Return ``"zip"``, ``"tar"`` or None by inspecting the file contents."""
    if zipfile.is_zipfile(path):
        return "zip"
    if tarfile.is_tarfile(path):
        return "tar"
    return None


def _tar_binary(operation: str, target: Path) -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise FilesystemError(
            "The 'tar' command is required for archive operations.",
            operation=operation,
            target=target,
        )
    return tar_bin


def create_archive(source_dir: Path, archive_path: Path, *, compress: bool = True) -> None:
    """Create a tar archive (gzip compressed unless *compress* is False) of *source_dir*."""
    tar_bin = _tar_binary("archive.create", archive_path)
    cmd: list[str] = [tar_bin, "-czf" if compress else "-cf", str(archive_path)]
    cmd.extend(["-C", str(source_dir.parent), source_dir.name])

    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise FilesystemError(message.strip(), operation="archive.create", target=archive_path)

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract a zip or tar archive into *destination*."""
    kind = archive_kind(archive_path)
    if kind is None:
        raise FilesystemError(
            f"{archive_path.name} is not a zip or tar archive.",
            operation="archive.extract",
            target=archive_path,
        )
    destination.mkdir(parents=True, exist_ok=True)
    if kind == "zip":
        _extract_zip(archive_path, destination)
        return

    tar_bin = _tar_binary("archive.extract", archive_path)
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        [tar_bin, "-xf", str(archive_path), "-C", str(destination), "--no-same-owner"],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise FilesystemError(message.strip(), operation="archive.extract", target=archive_path)


def _extract_zip(archive_path: Path, destination: Path) -> None:
    root = destination.resolve()
    try:
        with zipfile.ZipFile(archive_path) as bundle:
            for member in bundle.infolist():
                target = (destination / member.filename).resolve()
                if target != root and root not in target.parents:
                    raise FilesystemError(
                        f"Refusing to extract {member.filename!r} outside {destination}.",
                        operation="archive.extract",
                        target=archive_path,
                    )
                bundle.extract(member, destination)
                mode = (member.external_attr >> 16) & 0o777
                if mode and not member.is_dir():
                    os.chmod(target, mode)
    except (OSError, zipfile.BadZipFile) as exc:
        raise FilesystemError(
            f"Unable to extract {archive_path}: {exc}",
            operation="archive.extract",
            target=archive_path,
        ) from exc


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


__all__ = [
    "archive_kind",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "write_checksum_file",
]
