"""Error hierarchy shared by gsmctl components.

Every failure carries the operation that was attempted and the target it was
attempted on (a path, URL, instance or blueprint name) so callers can report
the failing step without parsing messages.
"""
from __future__ import annotations

from pathlib import Path


class GsmError(RuntimeError):
    """Base class for gsmctl runtime failures."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        target: str | Path | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = str(target) if target is not None else None

    def describe(self) -> str:
        """Return a single line naming the failing step and its target."""
        parts = [self.message]
        if self.operation:
            parts.insert(0, f"[{self.operation}]")
        if self.target and self.target not in self.message:
            parts.append(f"(target: {self.target})")
        return " ".join(parts)


class NetworkError(GsmError):
    """Remote fetch failed (HTTP error, unreachable host, SteamCMD failure)."""


class ParseError(GsmError):
    """Remote or local content could not be interpreted."""


class FilesystemError(GsmError):
    """A filesystem step failed (create, move, extract, permissions)."""


class NotFoundError(GsmError):
    """A blueprint, instance, file or backup does not exist."""


class AlreadyExistsError(GsmError):
    """The requested name is already taken."""


class NotRunningError(GsmError):
    """The instance is not running, so it cannot receive input."""


class ConfigurationError(GsmError):
    """Required configuration is missing or inconsistent."""


class ValidationError(GsmError):
    """User supplied input failed validation."""


__all__ = [
    "AlreadyExistsError",
    "ConfigurationError",
    "FilesystemError",
    "GsmError",
    "NetworkError",
    "NotFoundError",
    "NotRunningError",
    "ParseError",
    "ValidationError",
]
