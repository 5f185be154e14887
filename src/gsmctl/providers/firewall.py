"""UFW application profiles for instance ports."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import GsmError
from ..templates import TemplateEngine

PROFILE_PREFIX = "gsmctl-"


class FirewallError(GsmError):
    """Raised when ufw operations fail."""


@dataclass(slots=True)
class FirewallProvider:
    """Render ufw application profiles and allow or revoke them."""

    templates: TemplateEngine
    rules_dir: Path = Path("/etc/ufw/applications.d")
    ufw_bin: str = "ufw"

    def profile_name(self, instance: str) -> str:
        """Return the ufw application profile name for *instance*."""
        return f"{PROFILE_PREFIX}{instance}"

    def rule_path(self, instance: str) -> Path:
        """Return the profile file path for *instance*."""
        return self.rules_dir / self.profile_name(instance)

    def install(self, instance: str, *, blueprint: str, ports: str) -> Path:
        """Write the profile for *instance* and allow it."""
        if not ports:
            raise FirewallError(
                f"Instance '{instance}' declares no ports.",
                operation="firewall.install",
                target=instance,
            )
        path = self.rule_path(instance)
        self.templates.render_to_path(
            "ufw/rule.j2",
            path,
            {
                "profile_name": self.profile_name(instance),
                "instance_name": instance,
                "blueprint": blueprint,
                "ports": ports,
            },
            mode=0o644,
        )
        self._ufw(["allow", self.profile_name(instance)])
        return path

    def uninstall(self, instance: str) -> bool:
        """Revoke and delete the profile. Returns False when no profile existed."""
        path = self.rule_path(instance)
        if not path.exists():
            return False
        self._ufw(["delete", "allow", self.profile_name(instance)])
        path.unlink()
        return True

    def _ufw(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.ufw_bin, *args]
        joined = " ".join(command)
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FirewallError(
                f"{self.ufw_bin} not found: {exc}", operation=joined, target=args[-1]
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise FirewallError(
                f"{joined} failed (exit {result.returncode}): {message}",
                operation=joined,
                target=args[-1],
            )
        return result


__all__ = ["FirewallError", "FirewallProvider"]
