"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import functools
import os
import threading
from collections.abc import Iterator
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from gsmctl.config import AppConfig, load_config
from gsmctl.records import write_records


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def config_overrides(root: Path, **extra: object) -> dict[str, object]:
    """Return config overrides that keep every path under *root*."""
    overrides: dict[str, object] = {
        "instances_dir": str(root / "instances"),
        "default_install_dir": str(root / "servers"),
        "logs_dir": str(root / "logs"),
        "runtime_dir": str(root / "run"),
        "templates_dir": str(root / "templates"),
        "lock_timeout": 1.0,
        "blueprints": {
            "default_dir": str(root / "blueprints" / "default"),
            "custom_dir": str(root / "blueprints" / "custom"),
        },
        "lifecycle": {"save_command_timeout": 0, "stop_command_timeout": 2},
        "events": {"socket_path": str(root / "run" / "events.sock")},
    }
    overrides.update(extra)
    return overrides


def write_blueprint(directory: Path, name: str, **values: object) -> Path:
    """Write ``<name>.bp`` into *directory* with sensible defaults."""
    record: dict[str, object] = {
        "name": name,
        "ports": "27015/udp",
        "executable_file": "server.bin",
    }
    record.update(values)
    path = directory / f"{name}.bp"
    write_records(path, record, mode=0o644)
    return path


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in the temporary directory."""
    return load_config(
        config_file=tmp_path / "config.yml", env={}, overrides=config_overrides(tmp_path)
    )


@pytest.fixture
def default_blueprints(app_config: AppConfig) -> Path:
    """Default blueprint directory populated with a plain HTTP blueprint."""
    directory = app_config.blueprints.default_dir
    directory.mkdir(parents=True, exist_ok=True)
    write_blueprint(
        directory,
        "demo",
        save_command="save",
        stop_command="quit",
        executable_arguments="--world $instance_saves_dir/world",
    )
    return directory


@pytest.fixture
def http_root(tmp_path: Path) -> Iterator[tuple[Path, str]]:
    """Serve a directory over HTTP on localhost; yields (directory, base_url)."""
    root = tmp_path / "www"
    root.mkdir()
    handler = functools.partial(_QuietHandler, directory=str(root))
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield root, f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return None


def snapshot_tree(root: Path) -> dict[str, bytes | str]:
    """Map relative paths under *root* to file bytes (or ``"<dir>"``/link targets)."""
    result: dict[str, bytes | str] = {}
    if not root.exists():
        return result
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        if path.is_symlink():
            result[relative] = f"-> {os.readlink(path)}"
        elif path.is_dir():
            result[relative] = "<dir>"
        else:
            result[relative] = path.read_bytes()
    return result
