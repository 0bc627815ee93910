"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import copy
import os
import subprocess
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest
import yaml

from httpdctl.backups import BackupsRegistry
from httpdctl.config import AppConfig, load_config
from httpdctl.locking import LockManager
from httpdctl.orchestrator import Reconciler
from httpdctl.providers.initd import InitScriptProvider
from httpdctl.providers.packages import PackageProvider
from httpdctl.providers.selinux import SelinuxProvider
from httpdctl.providers.systemd import SystemdProvider
from httpdctl.state import StateRegistry
from httpdctl.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


# ----------------------------------------------------------------------
# Desired-state documents
# ----------------------------------------------------------------------
BASE_DOCUMENT: dict[str, Any] = {
    "host": {
        "hostname": "www1.example.com",
        "os_version": "rocky9",
        "cpu_count": 8,
        "addresses": ["192.0.2.10", "0.0.0.0"],
        "accounts": {
            "apache": {"uid": 48, "gid": 48},
            "awstats": {"uid": 600, "gid": 600},
            "shop": {"uid": 1001, "gid": 1001},
        },
    },
    "instances": [
        {
            "max_concurrency": 200,
            "binds": [
                {"id": 1, "ip": "192.0.2.10", "port": 80, "protocol": "http"},
                {"id": 2, "ip": "192.0.2.10", "port": 443, "protocol": "https"},
            ],
        }
    ],
    "sites": [
        {
            "name": "shop",
            "virtual_hosts": [
                {
                    "bind": 2,
                    "primary_hostname": "shop.example.com",
                    "aliases": ["www.shop.example.com", "shop.example.com"],
                    "redirect_to_primary": True,
                    "certificate": {
                        "key": "/etc/letsencrypt/live/shop.example.com/privkey.pem",
                        "cert": "/etc/letsencrypt/live/shop.example.com/cert.pem",
                        "chain": "/etc/letsencrypt/live/shop.example.com/chain.pem",
                    },
                },
            ],
        }
    ],
}


@pytest.fixture
def document() -> dict[str, Any]:
    """Return a mutable copy of the base desired-state document."""
    return copy.deepcopy(BASE_DOCUMENT)


def write_document(path: Path, document: dict[str, Any]) -> Path:
    """Serialise *document* as YAML at *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


# ----------------------------------------------------------------------
# Fake host tools
# ----------------------------------------------------------------------
def _completed(args: Iterable[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")


class FakePackages(PackageProvider):
    """Package provider backed by an in-memory set."""

    def __init__(self, installed: Iterable[str] = ()) -> None:
        """Start with *installed* packages present."""
        super().__init__(rpm_bin="rpm", installer_bin="yum")
        self.present = set(installed)
        self.calls: list[tuple[str, str]] = []

    def installed(self, name: str) -> bool:
        return name in self.present

    def install(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        self.calls.append(("install", name))
        if not dry_run:
            self.present.add(name)
        return _completed(["yum", "install", name])

    def remove(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        self.calls.append(("remove", name))
        if not dry_run:
            self.present.discard(name)
        return _completed(["yum", "remove", name])


class FakeSystemd(SystemdProvider):
    """systemd provider that records every call instead of running systemctl."""

    def __init__(self, enabled: Iterable[str] = ()) -> None:
        """Start with *enabled* units."""
        super().__init__(systemctl_bin="systemctl", wants_dir=Path("/nonexistent"))
        self.enabled = set(enabled)
        self.calls: list[tuple[str, str]] = []
        self.pids: dict[str, int] = {}

    def is_enabled(self, unit: str) -> bool:
        return unit in self.enabled

    def enabled_units(self) -> list[str]:
        return sorted(self.enabled)

    def _record(self, action: str, unit: str) -> subprocess.CompletedProcess[str]:
        self.calls.append((action, unit))
        return _completed(["systemctl", action, unit])

    def enable(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        if not dry_run:
            self.enabled.add(unit)
        return self._record("enable", unit)

    def disable(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        if not dry_run:
            self.enabled.discard(unit)
        return self._record("disable", unit)

    def start(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        return self._record("start", unit)

    def stop(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        return self._record("stop", unit)

    def restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        return self._record("restart", unit)

    def reload_or_restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        return self._record("reload-or-restart", unit)

    def main_pid(self, unit: str) -> int | None:
        return self.pids.get(unit)


class FakeSelinux(SelinuxProvider):
    """SELinux provider that accepts every request without changes."""

    def __init__(self) -> None:
        """Create an empty call log."""
        super().__init__()
        self.ports: list[tuple[str, list[int]]] = []
        self.booleans: dict[str, bool] = {}
        self.relabelled: list[str] = []

    def configure_ports(
        self, ports: Iterable[int], label: str, *, protocol: str = "tcp", dry_run: bool = False
    ) -> bool:
        self.ports.append((label, list(ports)))
        return False

    def ensure_boolean(self, name: str, value: bool, *, dry_run: bool = False) -> bool:
        changed = self.booleans.get(name) is not value
        self.booleans[name] = value
        return changed

    def restorecon(self, paths: Iterable[str], *, dry_run: bool = False) -> None:
        self.relabelled.extend(paths)


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """Return the scratch directory standing in for ``/``."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def app_config(tmp_path: Path, host_root: Path) -> AppConfig:
    """Return a configuration pointing every directory into *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing-config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "filesystem_root": str(host_root),
            "manage_ownership": False,
            "lock_timeout": 1.0,
            "site_timeout": 5.0,
            "restart_delay": 0,
            "backups": {"root": str(tmp_path / "backups")},
            "initd": {"init_dir": str(host_root / "etc/rc.d/init.d")},
        },
    )


@pytest.fixture
def fake_packages() -> FakePackages:
    return FakePackages({"httpd", "aoserv-httpd-config", "awstats", "policycoreutils-python-utils"})


@pytest.fixture
def fake_systemd() -> FakeSystemd:
    return FakeSystemd()


@pytest.fixture
def fake_selinux() -> FakeSelinux:
    return FakeSelinux()


@pytest.fixture
def reconciler(
    app_config: AppConfig,
    fake_packages: FakePackages,
    fake_systemd: FakeSystemd,
    fake_selinux: FakeSelinux,
) -> Reconciler:
    """Return a reconciler wired to fake host tools and a scratch filesystem."""
    return Reconciler(
        app_config,
        locks=LockManager(app_config.runtime_dir, app_config.lock_timeout),
        packages=fake_packages,
        systemd=fake_systemd,
        initd=InitScriptProvider(chkconfig_bin="chkconfig", init_dir=app_config.initd.init_dir),
        selinux=fake_selinux,
        templates=TemplateEngine.with_overrides(None),
        registry=StateRegistry(app_config.registry_dir),
        backups=BackupsRegistry(app_config.backups.root, app_config.backups.index),
    )


@pytest.fixture
def write_state(app_config: AppConfig) -> Callable[[dict[str, Any]], Path]:
    """Return a helper that writes a document to the configured desired-state file."""

    def _write(document: dict[str, Any]) -> Path:
        return write_document(app_config.desired_state_file, document)

    return _write
