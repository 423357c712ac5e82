"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from wlzctl.locking import LockManager, LockTimeoutError


def test_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "env.lock"
    with manager.lock("env") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.lock("env", timeout=0.2):
        pass


def test_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.lock("env"):
        with pytest.raises(LockTimeoutError, match="another wlzctl command"):
            with manager.lock("env", timeout=0.1):
                pass


def test_mutate_deployment_acquires_global_then_resources(tmp_path: Path) -> None:
    """The global lock is taken before per-resource locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_deployment(["env", "proxy"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "wlzctl.lock",
            "env.lock",
            "proxy.lock",
        ]


def test_mutate_deployment_serialises_commands(tmp_path: Path) -> None:
    """A second command cannot mutate the deployment while one is running."""
    first = LockManager(tmp_path / "run", default_timeout=1.0)
    second = LockManager(tmp_path / "run", default_timeout=0.1)

    with first.mutate_deployment():
        with pytest.raises(LockTimeoutError):
            with second.mutate_deployment():
                pass
