"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from gsmctl.errors import ValidationError
from gsmctl.locking import LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_different_instances_do_not_block(tmp_path: Path) -> None:
    """Locks for distinct instances are independent."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with manager.instance_lock("beta", timeout=0.1) as handle:
            assert handle.path == tmp_path / "run" / "beta.lock"


def test_global_lock_blocks_second_holder(tmp_path: Path) -> None:
    """The global lock serialises instance creation."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        assert (tmp_path / "run" / ".gsmctl.lock").exists()
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass



@pytest.mark.parametrize("name", ["../escaped", "nested/alpha", "/abs", ".hidden", "alpha\n", ""])
def test_instance_lock_rejects_path_like_names(tmp_path: Path, name: str) -> None:
    """Names that are not instance identifiers never become lock paths."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with pytest.raises(ValidationError) as excinfo:
        with manager.instance_lock(name):
            pass

    assert excinfo.value.operation == "lock.instance"
    assert not (tmp_path / "escaped.lock").exists()
    assert list(tmp_path.rglob("*.lock")) == []


def test_instance_named_like_global_lock_does_not_collide(tmp_path: Path) -> None:
    """An instance called ``gsmctl`` locks independently of the global lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with manager.instance_lock("gsmctl", timeout=0.1) as handle:
            assert handle.path.name == "gsmctl.lock"
