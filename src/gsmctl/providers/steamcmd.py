"""SteamCMD wrapper for build lookups and app installs."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ConfigurationError, NetworkError, ParseError

_PUBLIC_BRANCH = re.compile(r'"branches"\s*\{.*?"public"\s*\{(.*?)\}', re.DOTALL)
_BUILD_ID = re.compile(r'"buildid"\s+"(\d+)"')


def parse_public_buildid(output: str, *, app_id: int) -> str:
    """Extract the public branch build id from ``app_info_print`` output."""
    branch = _PUBLIC_BRANCH.search(output)
    if branch is None:
        raise ParseError(
            f"No public branch found in app_info_print output for app {app_id}.",
            operation="steamcmd.app_info_print",
            target=str(app_id),
        )
    build = _BUILD_ID.search(branch.group(1))
    if build is None:
        raise ParseError(
            f"No buildid in the public branch of app {app_id}.",
            operation="steamcmd.app_info_print",
            target=str(app_id),
        )
    return build.group(1)


@dataclass(slots=True)
class SteamCmd:
    """Invoke ``steamcmd`` with anonymous or configured credentials."""

    steamcmd_bin: str = "steamcmd"
    username: str | None = None
    password: str | None = None

    def login_args(self, *, account_required: bool, app_id: int) -> list[str]:
        """Return the ``+login`` arguments for an app."""
        if not account_required:
            return ["+login", "anonymous"]
        if not self.username:
            raise ConfigurationError(
                f"App {app_id} requires a Steam account but steam.username is not set.",
                operation="steamcmd.login",
                target=str(app_id),
            )
        args = ["+login", self.username]
        if self.password:
            args.append(self.password)
        return args

    def latest_buildid(self, app_id: int, *, account_required: bool = False) -> str:
        """Return the public branch build id for *app_id*."""
        args = [
            *self.login_args(account_required=account_required, app_id=app_id),
            "+app_info_update",
            "1",
            "+app_info_print",
            str(app_id),
            "+quit",
        ]
        result = self._run(args, operation="steamcmd.app_info_print", target=str(app_id))
        return parse_public_buildid(result.stdout or "", app_id=app_id)

    def app_update(
        self,
        app_id: int,
        install_dir: Path,
        *,
        account_required: bool = False,
        platform: str = "linux",
    ) -> None:
        """Install or validate *app_id* into *install_dir*."""
        args = [
            "+@sSteamCmdForcePlatformType",
            platform,
            "+force_install_dir",
            str(install_dir),
            *self.login_args(account_required=account_required, app_id=app_id),
            "+app_update",
            str(app_id),
            "validate",
            "+quit",
        ]
        self._run(args, operation="steamcmd.app_update", target=str(install_dir))

    def _run(
        self,
        args: Sequence[str],
        *,
        operation: str,
        target: str,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.steamcmd_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(
                f"{self.steamcmd_bin} not found: {exc}", operation=operation, target=target
            ) from exc
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            last_line = output.splitlines()[-1]
            raise NetworkError(
                f"{self.steamcmd_bin} failed (exit {result.returncode}): {last_line}",
                operation=operation,
                target=target,
            )
        return result


__all__ = ["SteamCmd", "parse_public_buildid"]
