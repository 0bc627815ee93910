"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from httpdctl.locking import LockManager, LockTimeoutError


def test_global_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "httpdctl.lock"
    with manager.global_lock() as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.global_lock(timeout=0.2):
        pass


def test_reconciler_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.reconciler_lock("logs"):
        with pytest.raises(LockTimeoutError):
            with manager.reconciler_lock("logs", timeout=0.1):
                pass


def test_distinct_phases_do_not_contend(tmp_path: Path) -> None:
    """Phase locks are independent of each other."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.reconciler_lock("logs"), manager.reconciler_lock("stats", timeout=0.1):
        assert (tmp_path / "run" / "logs.lock").exists()
        assert (tmp_path / "run" / "stats.lock").exists()


def test_mutate_sites_acquires_global_then_sites(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-site locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_sites(["shop", "blog", "shop"]) as bundle:
        assert bundle.wait_ms >= 0
        assert len(bundle.handles) == 3
        assert (tmp_path / "run" / "httpdctl.lock").exists()
        assert (tmp_path / "run" / "sites" / "blog.lock").exists()
        assert (tmp_path / "run" / "sites" / "shop.lock").exists()
