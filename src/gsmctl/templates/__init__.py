"""Jinja2 template rendering for generated files.

Built-in templates ship inside this package. Operators may shadow any of them
by placing a file with the same relative path under ``templates_dir``.
"""
from __future__ import annotations

import os
import shlex
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


class TemplateEngine:
    """Render templates with strict variables and optional overrides."""

    def __init__(self, search_paths: list[Path]) -> None:
        loaders = [FileSystemLoader(str(path)) for path in search_paths]
        self.environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders shell scripts and unit files
        )
        self.environment.filters["shquote"] = shlex.quote

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine where *override_dir* shadows the built-in templates."""
        paths: list[Path] = []
        if override_dir is not None and Path(override_dir).is_dir():
            paths.append(Path(override_dir))
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render to *destination* atomically. Returns False when content is unchanged."""
        content = self.render_to_string(name, context)
        destination = Path(destination)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            if (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, destination)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
