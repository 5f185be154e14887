"""On-disk registry of instance records.

Records live at ``<instances_dir>/<blueprint>/<instance>.ini`` in the flat
``key=value`` format. Instance names are unique across every blueprint
directory, so lookups by name scan all of them. Writes go through a temporary
file and ``os.replace`` so a crash never leaves a half written record.
"""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import FilesystemError, NotFoundError
from ..records import read_records, write_records

RECORD_SUFFIX = ".ini"


@dataclass(frozen=True)
class InstanceRegistry:
    """Read and write instance record files."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Unable to create {self.root}: {exc}", operation="registry.init", target=self.root
            ) from exc

    def path_for(self, blueprint: str, name: str) -> Path:
        """Return the record path for *name* created from *blueprint*."""
        return self.root / blueprint / f"{name}{RECORD_SUFFIX}"

    def iter_paths(self) -> Iterator[Path]:
        """Yield every record path, sorted by instance name."""
        if not self.root.is_dir():
            return iter(())
        paths = [path for path in self.root.glob(f"*/*{RECORD_SUFFIX}") if path.is_file()]
        return iter(sorted(paths, key=lambda path: path.stem))

    def names(self) -> set[str]:
        """Return every registered instance name."""
        return {path.stem for path in self.iter_paths()}

    def exists(self, name: str) -> bool:
        """Return True when an instance named *name* is registered."""
        return name in self.names()

    def find(self, name: str) -> Path:
        """Return the record path for *name* regardless of its blueprint."""
        for path in self.iter_paths():
            if path.stem == name:
                return path
        raise NotFoundError(
            f"Instance '{name}' not found in {self.root}",
            operation="instance.find",
            target=name,
        )

    def read(self, name: str) -> dict[str, str]:
        """Return the raw record mapping for *name*."""
        return read_records(self.find(name))

    def write(self, blueprint: str, name: str, payload: Mapping[str, object]) -> Path:
        """Atomically write the record for *name*."""
        path = self.path_for(blueprint, name)
        write_records(path, payload, mode=0o640)
        return path

    def remove(self, name: str) -> Path:
        """Delete the record for *name* and prune an empty blueprint directory."""
        path = self.find(name)
        try:
            path.unlink()
        except OSError as exc:
            raise FilesystemError(
                f"Unable to remove {path}: {exc}", operation="instance.remove", target=path
            ) from exc
        parent = path.parent
        if parent != self.root and not any(parent.iterdir()):
            parent.rmdir()
        return path


__all__ = ["InstanceRegistry", "RECORD_SUFFIX"]
