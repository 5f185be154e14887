"""Control channel writes.

A running server reads line oriented commands from a FIFO. Writing is fire
and forget: :class:`ChannelWrite` records that a line reached the channel,
never that the server acted on it.
"""
from __future__ import annotations

import errno
import os
import stat
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import FilesystemError, NotRunningError, ValidationError


@dataclass(frozen=True, slots=True)
class ChannelWrite:
    """A command that was written to a control channel."""

    channel: Path
    command: str
    written_at: str
    effect_observed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "channel": str(self.channel),
            "command": self.command,
            "written": True,
            "written_at": self.written_at,
            "effect_observed": self.effect_observed,
        }


def write_command(channel: Path, command: str) -> ChannelWrite:
    """Write *command* as one line to the FIFO at *channel*.

    Raises :class:`NotRunningError` immediately when the FIFO is missing or
    nothing is reading from it.
    """
    text = command.rstrip("\n")
    if not text or "\n" in text:
        raise ValidationError(
            "Control commands must be a single non-empty line.",
            operation="control.write",
            target=channel,
        )
    try:
        mode = channel.stat().st_mode
    except FileNotFoundError as exc:
        raise NotRunningError(
            f"Control channel {channel} does not exist; the server is not running.",
            operation="control.write",
            target=channel,
        ) from exc
    if not stat.S_ISFIFO(mode):
        raise NotRunningError(
            f"{channel} is not a control FIFO; the server is not running.",
            operation="control.write",
            target=channel,
        )
    try:
        fd = os.open(channel, os.O_WRONLY | os.O_NONBLOCK)
    except OSError as exc:
        if exc.errno == errno.ENXIO:
            raise NotRunningError(
                f"No process is reading {channel}; the server is not running.",
                operation="control.write",
                target=channel,
            ) from exc
        raise FilesystemError(
            f"Unable to open {channel}: {exc}", operation="control.write", target=channel
        ) from exc
    try:
        os.write(fd, f"{text}\n".encode())
    except OSError as exc:
        raise FilesystemError(
            f"Unable to write to {channel}: {exc}", operation="control.write", target=channel
        ) from exc
    finally:
        os.close(fd)
    return ChannelWrite(
        channel=channel,
        command=text,
        written_at=datetime.now(UTC).isoformat(timespec="seconds"),
    )


__all__ = ["ChannelWrite", "write_command"]
