"""Convergence phases run by the orchestrator.

Each phase receives the same :class:`PassContext`: the desired-state
snapshot, the OS strategy selected for the pass, the filesystem applier and
the sets of follow-up work (instances to reload, sites to restart) that later
phases consume.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..config import AppConfig
from ..fsapply import FilesystemApplier
from ..inference import InstanceFeatures
from ..model import DesiredState, Instance
from ..providers.packages import PackageProvider
from ..state.registry import PredisableStash
from ..strategies import OsStrategy
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PackageSync:
    """Install packages on demand and remove them only when allowed."""

    provider: PackageProvider
    installed: set[str] = field(default_factory=set)
    uninstall_enabled: bool = False
    dry_run: bool = False
    installed_now: list[str] = field(default_factory=list)
    removed_now: list[str] = field(default_factory=list)

    def refresh(self, names: set[str]) -> None:
        """Record which of *names* are installed on the host."""
        self.installed |= self.provider.installed_packages(names - self.installed)

    def is_installed(self, name: str) -> bool:
        if name not in self.installed and self.provider.installed(name):
            self.installed.add(name)
        return name in self.installed

    def require(self, name: str) -> bool:
        """Install *name* when missing; returns ``True`` when it was installed now."""
        if self.is_installed(name):
            return False
        self.provider.install(name, dry_run=self.dry_run)
        self.installed.add(name)
        self.installed_now.append(name)
        return True

    def ensure(self, name: str, wanted: bool) -> bool:
        """Install *name* when *wanted*, otherwise remove it when uninstalls are enabled."""
        if wanted:
            return self.require(name)
        if not self.uninstall_enabled or not self.is_installed(name):
            return False
        self.provider.remove(name, dry_run=self.dry_run)
        self.installed.discard(name)
        self.removed_now.append(name)
        return True


@dataclass(slots=True)
class PassContext:
    """Shared inputs and accumulated follow-up work of one convergence pass."""

    state: DesiredState
    strategy: OsStrategy
    config: AppConfig
    fs: FilesystemApplier
    packages: PackageSync
    templates: TemplateEngine
    stash: PredisableStash
    dry_run: bool = False
    reload: set[str | None] = field(default_factory=set)
    restart_sites: set[str] = field(default_factory=set)
    features: dict[str | None, InstanceFeatures] = field(default_factory=dict)
    ajp_ports: set[int] = field(default_factory=set)
    steps: list[dict[str, object]] = field(default_factory=list)

    def reload_instance(self, instance: Instance) -> None:
        """Flag *instance* for a reload at the end of the pass."""
        self.reload.add(instance.name)

    def reload_all(self) -> None:
        """Flag every instance for a reload."""
        self.reload.update(instance.name for instance in self.state.instances)

    def step(self, name: str, *, detail: object = None) -> None:
        """Record a completed phase for the operation log."""
        entry: dict[str, object] = {"name": name}
        if detail is not None:
            entry["detail"] = detail
        self.steps.append(entry)


__all__ = ["PackageSync", "PassContext"]
