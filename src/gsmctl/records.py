"""Flat ``key=value`` codec used by blueprint files and instance records.

The format is line oriented::

    # comment
    name=factorio
    executable_arguments="--start-server $instance_saves_dir/world.zip"

Values may be wrapped in single or double quotes. Inside double quotes a
backslash escapes ``"`` and ``\\``. Unquoted values end at the first ``" #"``.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping
from pathlib import Path

from .errors import FilesystemError, NotFoundError, ParseError

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9_./:@%+,=-]*$")


def parse_records(text: str, *, source: str = "<string>") -> dict[str, str]:
    """Parse ``key=value`` text into an ordered mapping.

    Raises :class:`ParseError` naming the source and line for malformed input.
    """
    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, rest = line.partition("=")
        key = key.strip()
        if not sep or not KEY_PATTERN.match(key):
            raise ParseError(
                f"{source}:{lineno}: expected key=value, got {raw_line.strip()!r}",
                operation="parse",
                target=source,
            )
        values[key] = _parse_value(rest.strip(), source=source, lineno=lineno)
    return values


def _parse_value(raw: str, *, source: str, lineno: int) -> str:
    if not raw:
        return ""
    quote = raw[0]
    if quote == "'":
        end = raw.find("'", 1)
        if end == -1:
            raise ParseError(
                f"{source}:{lineno}: unterminated single quote",
                operation="parse",
                target=source,
            )
        return raw[1:end]
    if quote == '"':
        chars: list[str] = []
        index = 1
        while index < len(raw):
            char = raw[index]
            if char == "\\" and index + 1 < len(raw):
                chars.append(raw[index + 1])
                index += 2
                continue
            if char == '"':
                return "".join(chars)
            chars.append(char)
            index += 1
        raise ParseError(
            f"{source}:{lineno}: unterminated double quote",
            operation="parse",
            target=source,
        )
    comment = raw.find(" #")
    if comment != -1:
        raw = raw[:comment]
    return raw.strip()


def format_records(values: Mapping[str, object]) -> str:
    """Serialise *values* to ``key=value`` text, quoting where needed."""
    lines: list[str] = []
    for key, value in values.items():
        if not KEY_PATTERN.match(key):
            raise ParseError(f"Invalid record key {key!r}", operation="format", target=key)
        text = _format_scalar(value)
        if _SAFE_VALUE.match(text):
            lines.append(f"{key}={text}")
        else:
            escaped = text.replace("\\", "\\\\").replace('"', '\\"')
            lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + "\n"


def _format_scalar(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def read_records(path: Path) -> dict[str, str]:
    """Read and parse the records file at *path*."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFoundError(f"{path} does not exist", operation="read", target=path) from exc
    except OSError as exc:
        raise FilesystemError(
            f"Unable to read {path}: {exc}", operation="read", target=path
        ) from exc
    return parse_records(text, source=str(path))


def write_records(path: Path, values: Mapping[str, object], *, mode: int = 0o640) -> None:
    """Atomically write *values* to *path*."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise FilesystemError(
            f"Unable to prepare {path}: {exc}", operation="write", target=path
        ) from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(format_records(values))
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise FilesystemError(
            f"Unable to write {path}: {exc}", operation="write", target=path
        ) from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def parse_bool(value: str | None, *, default: bool = False) -> bool:
    """Interpret the usual textual booleans found in record files."""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "format_records",
    "parse_bool",
    "parse_records",
    "read_records",
    "write_records",
]
