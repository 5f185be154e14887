"""Backup manager tests."""
from __future__ import annotations

import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import snapshot_tree, write_blueprint

from gsmctl.backups import Backup, BackupManager, parse_backup_name
from gsmctl.blueprints import load_blueprint
from gsmctl.config import AppConfig
from gsmctl.errors import AlreadyExistsError, FilesystemError, NotFoundError, ValidationError
from gsmctl.filesystem import clear_directory
from gsmctl.hooks import HookServices
from gsmctl.instances import Instance, InstanceManager
from gsmctl.providers.downloads import HttpClient
from gsmctl.providers.steamcmd import SteamCmd
from gsmctl.versions import VersionResolver


class Clock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self) -> None:
        """Start at a fixed instant."""
        self.current = datetime(2024, 10, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(minutes=1)
        return value


@pytest.fixture
def instances(app_config: AppConfig) -> InstanceManager:
    """Instance manager rooted in the temporary directory."""
    return InstanceManager(app_config)


@pytest.fixture
def versions(instances: InstanceManager) -> VersionResolver:
    """Version resolver that never reaches the network."""
    return VersionResolver(HookServices(http=HttpClient(), steamcmd=SteamCmd()), instances)


def _instance(
    instances: InstanceManager, tmp_path: Path, *, compress: bool = False
) -> Instance:
    blueprint = load_blueprint(write_blueprint(tmp_path / "bp", "demo"))
    instance = instances.create(blueprint, name="alpha")
    instance.compress_backups = compress
    instances.update(instance)
    install = instance.install_dir
    (install / "data").mkdir(parents=True)
    (install / "server.bin").write_text("v1", encoding="utf-8")
    (install / "data" / "world.db").write_text("world", encoding="utf-8")
    instance.backups_dir.mkdir(parents=True, exist_ok=True)
    return instance


def test_directory_backup_and_restore(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """An uncompressed backup restores the install tree and version."""
    instance = _instance(instances, tmp_path)
    versions.save_installed_version(instance, "1.0.3")
    manager = BackupManager(versions, now=Clock())
    before = snapshot_tree(instance.install_dir)

    backup = manager.create(instance)

    assert backup.name == "alpha-1.0.3-20241001T120000.backup"
    assert backup.path.is_dir()
    assert backup.compressed is False

    (instance.install_dir / "server.bin").write_text("v2", encoding="utf-8")
    (instance.install_dir / "junk.txt").write_text("x", encoding="utf-8")
    versions.save_installed_version(instance, "1.0.4")

    restored = manager.restore(instance, backup.name, force=True)

    assert restored == backup
    assert snapshot_tree(instance.install_dir) == before
    assert versions.installed_version(instances.get("alpha")) == "1.0.3"


def test_compressed_backup_round_trip(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """Compressed backups are checksummed tarballs that restore into place."""
    instance = _instance(instances, tmp_path, compress=True)
    manager = BackupManager(versions, now=Clock())
    before = snapshot_tree(instance.install_dir)

    backup = manager.create(instance)

    assert backup.name == "alpha-unknown-20241001T120000.backup.tar.gz"
    assert backup.checksum_path.read_text(encoding="utf-8").endswith(f"  {backup.name}\n")

    clear_directory(instance.install_dir)
    manager.restore(instance, "latest")

    assert snapshot_tree(instance.install_dir) == before
    assert sorted(path.name for path in instance.backups_dir.iterdir()) == [
        backup.name,
        backup.checksum_path.name,
    ]


def test_restore_detects_checksum_mismatch(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """A tampered archive is refused before the install directory is touched."""
    instance = _instance(instances, tmp_path, compress=True)
    manager = BackupManager(versions, now=Clock())
    backup = manager.create(instance)
    backup.checksum_path.write_text(f"{'0' * 64}  {backup.name}\n", encoding="utf-8")
    before = snapshot_tree(instance.install_dir)

    with pytest.raises(FilesystemError, match="Checksum mismatch"):
        manager.restore(instance, backup.name, force=True)

    assert snapshot_tree(instance.install_dir) == before


def test_restore_requires_force_for_non_empty_install(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """Restoring over existing content needs an explicit force."""
    instance = _instance(instances, tmp_path)
    manager = BackupManager(versions, now=Clock())
    backup = manager.create(instance)

    with pytest.raises(ValidationError, match="--force"):
        manager.restore(instance, backup.name)


def test_list_orders_backups_and_latest_picks_newest(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """Backups list oldest first; ``latest`` resolves to the newest."""
    instance = _instance(instances, tmp_path)
    manager = BackupManager(versions, now=Clock())
    first = manager.create(instance)
    versions.save_installed_version(instance, "2.0")
    second = manager.create(instance)
    (instance.backups_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    assert manager.list(instance) == [first, second]
    assert manager.find(instance, "latest") == second
    assert manager.find(instance, str(first.path)) == first
    with pytest.raises(NotFoundError):
        manager.find(instance, "alpha-9.9-20200101T000000.backup")


def test_duplicate_backup_name_rejected(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """Two backups in the same second cannot share a name."""
    instance = _instance(instances, tmp_path)
    fixed = datetime(2024, 10, 1, tzinfo=UTC)
    manager = BackupManager(versions, now=lambda: fixed)
    manager.create(instance)

    with pytest.raises(AlreadyExistsError):
        manager.create(instance)


def test_backup_without_install_dir(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """Nothing installed means nothing to back up."""
    blueprint = load_blueprint(write_blueprint(tmp_path / "bp", "demo"))
    instance = instances.create(blueprint, name="empty")

    with pytest.raises(NotFoundError, match="nothing to back up"):
        BackupManager(versions).create(instance)


def test_restore_without_backups(
    instances: InstanceManager, versions: VersionResolver, tmp_path: Path
) -> None:
    """``latest`` with no backups is NotFound."""
    instance = _instance(instances, tmp_path)

    with pytest.raises(NotFoundError):
        BackupManager(versions).restore(instance, "latest")


def test_parse_backup_name_handles_hyphenated_versions(tmp_path: Path) -> None:
    """Only the last hyphen separates the timestamp from the version."""
    path = tmp_path / "alpha-1.0.0-beta-2-20241001T120000.backup.tar.gz"

    assert parse_backup_name("alpha", path) == Backup(
        path=path,
        instance="alpha",
        version="1.0.0-beta-2",
        stamp="20241001T120000",
        compressed=True,
    )
    assert parse_backup_name("beta", path) is None
    assert parse_backup_name("alpha", tmp_path / "alpha-1.0-yesterday.backup") is None
    assert parse_backup_name("alpha", tmp_path / "alpha-1.0-20241001T120000.zip") is None


def test_failed_restore_keeps_current_install(
    instances: InstanceManager,
    versions: VersionResolver,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A copy that dies half way never empties the live install directory."""
    instance = _instance(instances, tmp_path)
    manager = BackupManager(versions, now=Clock())
    backup = manager.create(instance)
    (instance.install_dir / "server.bin").write_text("v2", encoding="utf-8")
    before = snapshot_tree(instance.install_dir)

    def failing_copytree(src: Path, dst: Path, **kwargs: object) -> Path:
        Path(dst).mkdir()
        (Path(dst) / "server.bin").write_text("partial", encoding="utf-8")
        raise OSError("No space left on device")

    monkeypatch.setattr(shutil, "copytree", failing_copytree)

    with pytest.raises(FilesystemError, match="No space left") as excinfo:
        manager.restore(instance, backup.name, force=True)

    assert excinfo.value.operation == "backup.restore"
    assert snapshot_tree(instance.install_dir) == before
    leftovers = [
        path for path in instance.working_dir.iterdir() if path.name.startswith(".install.")
    ]
    assert leftovers == []
