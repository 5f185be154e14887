"""Filesystem steps used by the download and deploy pipeline.

The deploy step never edits files of the live install in place. It assembles
the next install tree beside the live one (hard links where possible, copies
otherwise), overlays the staged content by replacing directory entries, and
then swaps the trees with two renames. A failure before the swap only leaves
a hidden scratch tree behind, which is removed best effort.
"""
from __future__ import annotations

import os
import secrets
import shutil
import stat
from pathlib import Path

from .errors import FilesystemError

LINUX_DIRS = {"linux", "linux64", "linux-x86_64"}
FOREIGN_PLATFORM_DIRS = {"windows", "win64", "win32", "mac", "macos", "osx"}
IGNORED_STAGING_ENTRIES = {".gitignore"}
MAX_WRAPPER_DEPTH = 3


def staged_entries(staging_dir: Path) -> list[Path]:
    """Return the meaningful top level entries of *staging_dir*."""
    if not staging_dir.is_dir():
        return []
    return sorted(
        entry for entry in staging_dir.iterdir() if entry.name not in IGNORED_STAGING_ENTRIES
    )


def clear_directory(path: Path) -> None:
    """Remove everything inside *path*, creating it when missing."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        for entry in path.iterdir():
            _remove(entry)
    except OSError as exc:
        raise FilesystemError(f"Unable to clear {path}: {exc}", operation="rm", target=path) from exc


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _move_replacing(source: Path, destination: Path) -> None:
    if destination.exists() or destination.is_symlink():
        if source.is_dir() and destination.is_dir() and not destination.is_symlink():
            for child in list(source.iterdir()):
                _move_replacing(child, destination / child.name)
            source.rmdir()
            return
        _remove(destination)
    shutil.move(str(source), str(destination))


def hoist_directory(directory: Path) -> None:
    """Move the contents of *directory* into its parent and remove it."""
    parent = directory.parent
    holding = parent / f".hoist-{secrets.token_hex(4)}"
    try:
        directory.rename(holding)
        for child in list(holding.iterdir()):
            _move_replacing(child, parent / child.name)
        holding.rmdir()
    except OSError as exc:
        raise FilesystemError(
            f"Unable to move {directory}/* into {parent}: {exc}", operation="mv", target=directory
        ) from exc


def normalize_layout(staging_dir: Path, *, executable: Path | None = None) -> None:
    """Flatten a freshly extracted download so it matches the install layout.

    A lone wrapper directory (``factorio/``, ``1449/``) is hoisted unless the
    executable is already where it is expected. The contents of a ``Linux/``
    directory are hoisted and payloads for other platforms are dropped.
    """
    for _ in range(MAX_WRAPPER_DEPTH):
        if executable is not None and (staging_dir / executable).exists():
            break
        entries = staged_entries(staging_dir)
        if len(entries) != 1 or not entries[0].is_dir() or entries[0].is_symlink():
            break
        lowered = entries[0].name.lower()
        if lowered in LINUX_DIRS or lowered in FOREIGN_PLATFORM_DIRS:
            break
        hoist_directory(entries[0])

    for entry in staged_entries(staging_dir):
        if not entry.is_dir():
            continue
        lowered = entry.name.lower()
        if lowered in FOREIGN_PLATFORM_DIRS:
            try:
                shutil.rmtree(entry)
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to remove {entry}: {exc}", operation="rm", target=entry
                ) from exc
    for entry in staged_entries(staging_dir):
        if entry.is_dir() and entry.name.lower() in LINUX_DIRS:
            hoist_directory(entry)


def ensure_executable(path: Path) -> None:
    """Add execute bits matching the existing read bits of *path*."""
    try:
        mode = path.stat().st_mode
        extra = 0
        if mode & stat.S_IRUSR:
            extra |= stat.S_IXUSR
        if mode & stat.S_IRGRP:
            extra |= stat.S_IXGRP
        if mode & stat.S_IROTH:
            extra |= stat.S_IXOTH
        os.chmod(path, mode | extra)
    except OSError as exc:
        raise FilesystemError(f"Unable to chmod +x {path}: {exc}", operation="chmod", target=path) from exc


def _link_or_copy(source: str, destination: str) -> str:
    try:
        os.link(source, destination)
    except OSError:
        shutil.copy2(source, destination)
    return destination


def _overlay(source_dir: Path, destination_dir: Path) -> None:
    for entry in sorted(source_dir.iterdir()):
        if entry.name in IGNORED_STAGING_ENTRIES:
            continue
        target = destination_dir / entry.name
        if entry.is_dir() and not entry.is_symlink():
            if target.is_dir() and not target.is_symlink():
                _overlay(entry, target)
                continue
            if target.exists() or target.is_symlink():
                _remove(target)
            shutil.copytree(entry, target, symlinks=True, copy_function=_link_or_copy)
            continue
        if target.exists() or target.is_symlink():
            _remove(target)
        if entry.is_symlink():
            os.symlink(os.readlink(entry), target)
        else:
            _link_or_copy(str(entry), str(target))


def overlay_install(staging_dir: Path, install_dir: Path) -> Path:
    """Overlay *staging_dir* onto *install_dir* and swap the result into place.

    Returns *install_dir*. Raises :class:`FilesystemError` naming the failed
    step; the live install is untouched unless the final swap succeeded.
    """
    if not staged_entries(staging_dir):
        raise FilesystemError(
            f"{staging_dir} is empty, nothing to deploy.", operation="deploy", target=staging_dir
        )

    parent = install_dir.parent
    token = secrets.token_hex(4)
    next_dir = parent / f".{install_dir.name}.next-{token}"

    try:
        parent.mkdir(parents=True, exist_ok=True)
        if install_dir.is_dir():
            shutil.copytree(install_dir, next_dir, symlinks=True, copy_function=_link_or_copy)
        else:
            next_dir.mkdir()
        _overlay(staging_dir, next_dir)
    except (OSError, shutil.Error) as exc:
        shutil.rmtree(next_dir, ignore_errors=True)
        raise FilesystemError(
            f"Unable to assemble new install from {staging_dir}: {exc}",
            operation="deploy.assemble",
            target=install_dir,
        ) from exc

    return swap_into_place(next_dir, install_dir, operation="deploy.swap")


def swap_into_place(next_dir: Path, install_dir: Path, *, operation: str) -> Path:
    """Replace *install_dir* with the fully assembled sibling *next_dir*.

    The previous tree is renamed aside and only deleted after *next_dir* took
    its place; when the second rename fails it is moved back.
    """
    old_dir = install_dir.parent / f".{install_dir.name}.old-{secrets.token_hex(4)}"
    had_install = install_dir.exists()
    try:
        if had_install:
            install_dir.rename(old_dir)
        next_dir.rename(install_dir)
    except OSError as exc:
        if had_install and not install_dir.exists() and old_dir.exists():
            old_dir.rename(install_dir)
        shutil.rmtree(next_dir, ignore_errors=True)
        raise FilesystemError(
            f"Unable to swap {next_dir} into {install_dir}: {exc}",
            operation=operation,
            target=install_dir,
        ) from exc

    shutil.rmtree(old_dir, ignore_errors=True)
    return install_dir


__all__ = [
    "clear_directory",
    "ensure_executable",
    "hoist_directory",
    "normalize_layout",
    "overlay_install",
    "staged_entries",
    "swap_into_place",
]
