"""External tool wrappers used by gsmctl."""
from __future__ import annotations

from .downloads import HttpClient
from .firewall import FirewallError, FirewallProvider
from .steamcmd import SteamCmd, parse_public_buildid
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "FirewallError",
    "FirewallProvider",
    "HttpClient",
    "SteamCmd",
    "SystemdError",
    "SystemdProvider",
    "parse_public_buildid",
]
