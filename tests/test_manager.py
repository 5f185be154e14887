"""End to end tests for the instance orchestration layer."""
from __future__ import annotations

import zipfile
from contextlib import AbstractContextManager
from pathlib import Path

import pytest
from conftest import config_overrides, snapshot_tree, write_blueprint

from gsmctl.config import AppConfig, load_config
from gsmctl.errors import NotFoundError, ValidationError
from gsmctl.instances import Instance
from gsmctl.lifecycle import LifecycleResult
from gsmctl.locking import LockHandle, LockManager, LockTimeoutError
from gsmctl.manager import GameServerManager
from gsmctl.pipeline import DeployResult
from gsmctl.providers.steamcmd import SteamCmd


def _write_zip(path: Path, members: dict[str, bytes]) -> None:
    with zipfile.ZipFile(path, "w") as bundle:
        for name, payload in members.items():
            bundle.writestr(name, payload)


def _publish(www: Path, version: str) -> None:
    (www / "version.txt").write_text(f"{version}\n", encoding="utf-8")
    _write_zip(www / f"server-{version}.zip", {"Linux/server.bin": f"build {version}".encode()})


@pytest.fixture
def served(app_config: AppConfig, http_root: tuple[Path, str]) -> Path:
    """Publish version 1.0 and a custom blueprint pointing at it."""
    www, base_url = http_root
    _publish(www, "1.0")
    custom = app_config.blueprints.custom_dir
    custom.mkdir(parents=True)
    write_blueprint(
        custom,
        "demo",
        version_url=f"{base_url}/version.txt",
        download_url=f"{base_url}/server-{{version}}.zip",
        stop_command="quit",
    )
    return www


@pytest.fixture
def manager(app_config: AppConfig) -> GameServerManager:
    """Manager wired from the temporary configuration."""
    return GameServerManager.from_config(app_config, sleep=lambda _: None)


def test_create_materializes_layout(
    manager: GameServerManager, default_blueprints: Path
) -> None:
    """Create writes the record, directories and an executable management script."""
    instance, report = manager.create("demo")

    assert instance.name == "demo"
    for path in manager.materializer.directories(instance):
        assert path.is_dir()
    script = instance.management_file
    assert script.stat().st_mode & 0o777 == 0o755
    assert "INSTANCE_NAME=demo" in script.read_text(encoding="utf-8")
    assert manager.instances.get("demo") == instance
    assert [name for name, _, _ in report.steps][:2] == ["blueprint.resolve", "instance.create"]
    assert report.warnings == []


def test_create_unknown_blueprint(manager: GameServerManager) -> None:
    """Blueprints that resolve nowhere are NotFound."""
    with pytest.raises(NotFoundError):
        manager.create("missing")


@pytest.mark.mutation_timeout
def test_install_then_update_with_backup(manager: GameServerManager, served: Path) -> None:
    """Install deploys the latest version; update backs up and redeploys."""
    instance, report = manager.install("demo")

    assert snapshot_tree(instance.install_dir) == {"server.bin": b"build 1.0"}
    assert manager.versions.installed_version(manager.instances.get("demo")) == "1.0"
    assert ("version.latest", "success", "1.0") in report.steps

    unchanged, _ = manager.update("demo")
    assert unchanged.updated is False

    _publish(served, "1.1")
    assert manager.check_update("demo").update_available is True

    result, update_report = manager.update("demo")

    assert (result.previous, result.latest, result.updated) == ("1.0", "1.1", True)
    assert result.restarted is False
    assert result.backup is not None
    assert result.backup.version == "1.0"
    assert snapshot_tree(instance.install_dir) == {"server.bin": b"build 1.1"}
    assert manager.status("demo")["installed_version"] == "1.1"
    assert [backup.name for backup in manager.list_backups("demo")] == [result.backup.name]
    steps = [name for name, _, _ in update_report.steps]
    assert steps.index("backup.create") < steps.index("pipeline.deploy")


@pytest.mark.mutation_timeout
def test_uninstall_removes_everything(manager: GameServerManager, served: Path) -> None:
    """Uninstall removes the working directory and the record."""
    instance, _ = manager.install("demo")

    manager.uninstall("demo")

    assert not instance.working_dir.exists()
    with pytest.raises(NotFoundError):
        manager.instances.get("demo")


def test_restore_refused_while_running(
    manager: GameServerManager, default_blueprints: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Backups are only restored into stopped instances."""
    manager.create("demo")
    monkeypatch.setattr(manager.lifecycle, "is_active", lambda instance: True)

    with pytest.raises(ValidationError, match="stop it before restoring"):
        manager.restore("demo", "latest")


def test_auto_update_failure_does_not_block_start(
    manager: GameServerManager, default_blueprints: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A failed auto-update becomes a warning and the server still starts."""
    instance, _ = manager.create("demo")
    instance.auto_update = True
    manager.instances.update(instance)
    started: list[str] = []

    def fake_start(target: Instance, *, wait: bool = True) -> LifecycleResult:
        started.append(target.name)
        return LifecycleResult("start", changed=True, active=True)

    monkeypatch.setattr(manager.lifecycle, "start", fake_start)

    result, report = manager.start("demo")

    assert result.active is True
    assert started == ["demo"]
    assert len(report.warnings) == 1
    assert report.warnings[0].startswith("auto-update skipped")


def test_event_delivery_failure_is_a_warning(tmp_path: Path, default_blueprints: Path) -> None:
    """A dead listener socket never fails the operation."""
    socket_path = tmp_path / "run" / "events.sock"
    socket_path.parent.mkdir(parents=True, exist_ok=True)
    socket_path.write_text("", encoding="utf-8")
    config = load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides=config_overrides(
            tmp_path, events={"enabled": True, "socket_path": str(socket_path)}
        ),
    )
    manager = GameServerManager.from_config(config)

    instance, report = manager.create("demo")

    assert manager.instances.get(instance.name) == instance
    assert len(report.warnings) == 1
    assert "instance_created" in report.warnings[0]


@pytest.fixture
def steam_build(app_config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> list[Path]:
    """Publish Steam build 200 for a custom ``steamy`` blueprint; returns app_update calls."""
    custom = app_config.blueprints.custom_dir
    custom.mkdir(parents=True, exist_ok=True)
    write_blueprint(custom, "steamy", steam_app_id=896660)
    updates: list[Path] = []

    def fake_latest_buildid(self: SteamCmd, app_id: int, *, account_required: bool = False) -> str:
        return "200"

    def fake_app_update(
        self: SteamCmd,
        app_id: int,
        install_dir: Path,
        *,
        account_required: bool = False,
        platform: str = "linux",
    ) -> None:
        updates.append(install_dir)
        (install_dir / "server.bin").write_text("build 200", encoding="utf-8")

    monkeypatch.setattr(SteamCmd, "latest_buildid", fake_latest_buildid)
    monkeypatch.setattr(SteamCmd, "app_update", fake_app_update)
    return updates


def test_steam_install_refuses_pinned_version(
    manager: GameServerManager, steam_build: list[Path]
) -> None:
    """SteamCMD cannot fetch an older build, so asking for one fails up front."""
    with pytest.raises(ValidationError, match="SteamCMD") as excinfo:
        manager.install("steamy", version="100")

    assert excinfo.value.operation == "version.pin"
    assert manager.instances.names() == []
    assert steam_build == []


def test_steam_update_refuses_pinned_version(
    manager: GameServerManager, steam_build: list[Path]
) -> None:
    """The recorded version always matches what app_update installed."""
    instance, _ = manager.install("steamy")
    assert manager.versions.installed_version(manager.instances.get("steamy")) == "200"
    assert steam_build == [instance.install_dir]

    with pytest.raises(ValidationError, match="SteamCMD"):
        manager.update("steamy", version="100")

    assert manager.versions.installed_version(manager.instances.get("steamy")) == "200"
    assert steam_build == [instance.install_dir]


@pytest.mark.parametrize("operation", ["update", "uninstall", "backup", "start", "stop"])
def test_path_like_names_are_rejected_before_locking(
    manager: GameServerManager, app_config: AppConfig, operation: str
) -> None:
    """Names such as ``../escaped`` never create files outside the runtime directory."""
    with pytest.raises(ValidationError, match="Invalid instance name"):
        getattr(manager, operation)("../escaped")

    assert not (app_config.runtime_dir.parent / "escaped.lock").exists()
    assert not app_config.runtime_dir.exists() or list(app_config.runtime_dir.iterdir()) == []


def test_mutations_wait_for_the_instance_lock(
    app_config: AppConfig, default_blueprints: Path
) -> None:
    """Update, backup, restore and uninstall all serialise on the instance lock."""
    locks = LockManager(app_config.runtime_dir, default_timeout=0.1)
    manager = GameServerManager.from_config(app_config, locks=locks, sleep=lambda _: None)
    instance, _ = manager.create("demo")
    (instance.install_dir / "server.bin").write_text("v1", encoding="utf-8")

    with locks.instance_lock("demo"):
        with pytest.raises(LockTimeoutError):
            manager.update("demo", force=True)
        with pytest.raises(LockTimeoutError):
            manager.backup("demo")
        with pytest.raises(LockTimeoutError):
            manager.restore("demo", "latest", force=True)
        with pytest.raises(LockTimeoutError):
            manager.uninstall("demo")

    assert manager.instances.get("demo") == instance
    assert manager.list_backups("demo") == []
    assert (instance.install_dir / "server.bin").read_text(encoding="utf-8") == "v1"


@pytest.mark.mutation_timeout
def test_install_holds_one_instance_lock_until_deployed(
    manager: GameServerManager, served: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The instance lock taken at creation is still held while deploying."""
    original_lock = manager.locks.instance_lock
    acquired: list[str] = []

    def counting_lock(
        name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        acquired.append(name)
        return original_lock(name, timeout=timeout)

    contended: list[bool] = []
    original_deploy = manager.pipeline.deploy

    def contending_deploy(*args: object, **kwargs: object) -> DeployResult:
        with pytest.raises(LockTimeoutError):
            with original_lock("demo", timeout=0.05):
                pass
        contended.append(True)
        return original_deploy(*args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(manager.locks, "instance_lock", counting_lock)
    monkeypatch.setattr(manager.pipeline, "deploy", contending_deploy)

    instance, report = manager.install("demo")

    assert acquired == ["demo"]
    assert contended == [True]
    assert snapshot_tree(instance.install_dir) == {"server.bin": b"build 1.0"}
    steps = [name for name, _, _ in report.steps]
    assert steps.index("instance.create") < steps.index("render.manage") < steps.index(
        "pipeline.deploy"
    )


def _manager(tmp_path: Path, **extra: object) -> GameServerManager:
    config = load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides=config_overrides(tmp_path, **extra),
    )
    return GameServerManager.from_config(config, sleep=lambda _: None)


def test_command_shortcut_follows_the_instance(tmp_path: Path, default_blueprints: Path) -> None:
    """Enabled shortcuts link the management script onto PATH until uninstall."""
    shortcuts = tmp_path / "bin"
    shortcuts.mkdir()
    manager = _manager(
        tmp_path, command_shortcuts={"enabled": True, "directory": str(shortcuts)}
    )

    instance, report = manager.create("demo")

    link = shortcuts / "demo"
    assert link.is_symlink()
    assert link.resolve() == instance.management_file.resolve()
    assert manager.instances.get("demo").command_shortcut_file == str(link)
    assert "shortcut.link" in [name for name, _, _ in report.steps]

    manager.uninstall("demo")

    assert not link.is_symlink()


def test_missing_shortcut_directory_is_a_warning(
    tmp_path: Path, default_blueprints: Path
) -> None:
    """An absent shortcuts directory never blocks instance creation."""
    manager = _manager(
        tmp_path, command_shortcuts={"enabled": True, "directory": str(tmp_path / "nope")}
    )

    instance, report = manager.create("demo")

    assert manager.instances.get("demo").command_shortcut_file == ""
    assert report.warnings == [
        f"command shortcut skipped: Command shortcuts directory {tmp_path / 'nope'} does not exist."
    ]
    assert instance.management_file.is_file()


def test_port_forwarding_renders_upnp_pairs(tmp_path: Path, default_blueprints: Path) -> None:
    """Instances created with port forwarding map their ports through upnpc."""
    forwarding = _manager(tmp_path, port_forwarding=True)
    instance, _ = forwarding.create("demo", name="open")
    plain, _ = forwarding.create("demo", name="closed")
    plain.use_upnp = False
    forwarding.materializer.render_management_script(plain)

    assert instance.use_upnp is True
    assert "UPNP_PORTS=(27015 udp)" in instance.management_file.read_text(encoding="utf-8")
    assert "UPNP_PORTS=()" in plain.management_file.read_text(encoding="utf-8")
