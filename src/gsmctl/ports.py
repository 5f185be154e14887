"""Port specifications declared by blueprints.

Blueprints use the UFW application profile syntax: ranges separated by ``|``,
each either ``PORT`` or ``START:END`` with an optional ``/tcp`` or ``/udp``
suffix, for example ``26900:26903/tcp|26900:26903/udp``. A range without a
protocol covers both TCP and UDP.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ValidationError

_RANGE_PATTERN = re.compile(r"^(?P<start>\d+)(?::(?P<end>\d+))?(?:/(?P<proto>[a-z]+))?$")
PROTOCOLS = ("tcp", "udp")


@dataclass(frozen=True, slots=True)
class PortRange:
    """A contiguous port range, optionally bound to one protocol."""

    start: int
    end: int
    protocol: str | None = None

    def expand(self) -> list[tuple[int, str]]:
        """Return every ``(port, protocol)`` pair covered by the range."""
        protocols = (self.protocol,) if self.protocol else PROTOCOLS
        return [(port, proto) for port in range(self.start, self.end + 1) for proto in protocols]

    def to_ufw(self) -> str:
        """Render the range back to UFW syntax."""
        text = str(self.start) if self.start == self.end else f"{self.start}:{self.end}"
        return f"{text}/{self.protocol}" if self.protocol else text


def parse_port_spec(spec: str) -> list[PortRange]:
    """Parse a ``|`` separated UFW port list. Empty input yields no ranges."""
    ranges: list[PortRange] = []
    for chunk in spec.split("|"):
        chunk = chunk.strip()
        if not chunk:
            continue
        match = _RANGE_PATTERN.match(chunk)
        if match is None:
            raise ValidationError(f"Invalid port definition: {chunk!r}", target=spec)
        start = int(match.group("start"))
        end = int(match.group("end") or start)
        protocol = match.group("proto")
        if protocol is not None and protocol not in PROTOCOLS:
            raise ValidationError(f"Unsupported protocol {protocol!r} in {chunk!r}", target=spec)
        if not 1 <= start <= end <= 65535:
            raise ValidationError(f"Port range out of bounds: {chunk!r}", target=spec)
        ranges.append(PortRange(start=start, end=end, protocol=protocol))
    return ranges


def format_port_spec(ranges: list[PortRange]) -> str:
    """Join *ranges* into UFW syntax."""
    return "|".join(item.to_ufw() for item in ranges)


__all__ = ["PortRange", "format_port_spec", "parse_port_spec"]
