"""Convergence passes over the whole Apache fleet of one host.

:class:`Reconciler` owns every collaborator a pass needs and serialises
passes: a process-local lock plus the global file lock from
:mod:`httpdctl.locking`. Change notifications funnel through
:meth:`Reconciler.request_rebuild`; requests arriving while a pass runs
collapse into a single follow-up pass.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from pathlib import Path

from .archive import BackupDeleter
from .backups import BackupsRegistry
from .capacity import plan_capacity
from .config import AppConfig
from .fsapply import AccountResolver, FilesystemApplier
from .locking import LockManager
from .model import DesiredState, Instance, Site
from .providers.initd import InitScriptProvider
from .providers.packages import PackageProvider
from .providers.selinux import SelinuxProvider
from .providers.systemd import SystemdProvider
from .reconcilers import PackageSync, PassContext
from .reconcilers.logs import reconcile_logs
from .reconcilers.servers import reconcile_servers
from .reconcilers.sites import reconcile_sites
from .reconcilers.stats import reconcile_stats
from .reconcilers.system import reconcile_init, reconcile_selinux
from .services import ActionResult, ServiceController, ServiceError, SiteController
from .state.loader import StateError, load_desired_state
from .state.registry import PredisableStash, StateRegistry
from .strategies import OsStrategy, OsVersion, strategy_for
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

USER_DAEMONS_PID_FILE = "/var/run/aoserv-user-daemons.pid"
DELETE_REASON = "no longer referenced by the desired state"
SITE_WORKERS = 8


@dataclass(slots=True)
class ReconcileResult:
    """Summary of one convergence pass."""

    dry_run: bool
    changed: list[str] = field(default_factory=list)
    reloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    steps: list[dict[str, object]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the pass ran to completion."""
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "changed": list(self.changed),
            "reloaded": list(self.reloaded),
            "deleted": list(self.deleted),
            "backups": list(self.backups),
            "installed": list(self.installed),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


class Reconciler:
    """Run convergence passes and administrative site actions."""

    def __init__(
        self,
        config: AppConfig,
        *,
        locks: LockManager,
        packages: PackageProvider,
        systemd: SystemdProvider,
        initd: InitScriptProvider,
        selinux: SelinuxProvider,
        templates: TemplateEngine,
        registry: StateRegistry,
        backups: BackupsRegistry,
    ) -> None:
        self.config = config
        self.locks = locks
        self.packages = packages
        self.systemd = systemd
        self.initd = initd
        self.selinux = selinux
        self.templates = templates
        self.registry = registry
        self.backups = backups
        self._pass_lock = threading.Lock()
        self._services: dict[OsVersion, ServiceController] = {}
        self._condition = threading.Condition()
        self._requested = 0
        self._completed = 0
        self._stopping = False
        self._worker: threading.Thread | None = None
        self.last_result: ReconcileResult | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> Reconciler:
        """Construct a reconciler wired to the real host tools."""
        return cls(
            config,
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            packages=PackageProvider(
                rpm_bin=config.packages.rpm_bin,
                installer_bin=config.packages.installer_bin,
            ),
            systemd=SystemdProvider(
                systemctl_bin=config.systemd.systemctl_bin,
                wants_dir=config.systemd.wants_dir,
            ),
            initd=InitScriptProvider(
                chkconfig_bin=config.initd.chkconfig_bin,
                init_dir=config.initd.init_dir,
            ),
            selinux=SelinuxProvider(
                semanage_bin=config.selinux.semanage_bin,
                getsebool_bin=config.selinux.getsebool_bin,
                setsebool_bin=config.selinux.setsebool_bin,
                restorecon_bin=config.selinux.restorecon_bin,
            ),
            templates=TemplateEngine.with_overrides(config.templates_dir),
            registry=StateRegistry(config.registry_dir),
            backups=BackupsRegistry(config.backups.root, config.backups.index),
        )

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------
    def load_state(self) -> tuple[DesiredState, OsStrategy]:
        """Load the desired-state snapshot and the strategy of its OS."""
        override = None if self.config.os_version == "auto" else self.config.os_version
        state = load_desired_state(self.config.desired_state_file, os_version=override)
        return state, strategy_for(state.host.os_version)

    def services_for(self, strategy: OsStrategy) -> ServiceController:
        """Return the long-lived service controller for *strategy*."""
        controller = self._services.get(strategy.version)
        if controller is None:
            controller = ServiceController(
                strategy=strategy,
                systemd=self.systemd,
                initd=self.initd,
                filesystem_root=self.config.filesystem_root,
            )
            self._services[strategy.version] = controller
        return controller

    def site_controller(self, *, dry_run: bool = False) -> SiteController:
        return SiteController(
            filesystem_root=self.config.filesystem_root,
            timeout=self.config.site_timeout,
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------
    def rebuild(self, *, dry_run: bool = False) -> ReconcileResult:
        """Run one full convergence pass."""
        state, strategy = self.load_state()
        with self._pass_lock, self.locks.global_lock():
            return self._run_pass(state, strategy, dry_run=dry_run)

    def _run_pass(self, state: DesiredState, strategy: OsStrategy, *, dry_run: bool) -> ReconcileResult:
        config = self.config
        LOGGER.info(
            "Starting convergence pass for %s (%s)%s",
            state.host.hostname,
            strategy.version.value,
            " [dry run]" if dry_run else "",
        )
        fs = FilesystemApplier(
            root=config.filesystem_root,
            accounts=AccountResolver(state.host.accounts),
            manage_ownership=config.manage_ownership,
            dry_run=dry_run,
        )
        ctx = PassContext(
            state=state,
            strategy=strategy,
            config=config,
            fs=fs,
            packages=PackageSync(self.packages, uninstall_enabled=config.uninstall_enabled, dry_run=dry_run),
            templates=self.templates,
            stash=PredisableStash(self.registry, dry_run=dry_run),
            dry_run=dry_run,
        )
        services = replace(self.services_for(strategy), dry_run=dry_run)
        sites = self.site_controller(dry_run=dry_run)
        result = ReconcileResult(dry_run=dry_run)
        try:
            with self.locks.reconciler_lock("logs"):
                reconcile_logs(ctx)
            with self.locks.reconciler_lock("stats"):
                reconcile_stats(ctx)
            reconcile_sites(ctx, sites)
            reconcile_servers(ctx)
            reconcile_init(ctx, services)
            reconcile_selinux(ctx, self.selinux)
            self._restorecon(ctx)
            result.warnings.extend(self._control_sites(ctx, sites))
            deleter = BackupDeleter(self.backups, filesystem_root=config.filesystem_root, dry_run=dry_run)
            result.backups = deleter.backup_then_delete(fs.drain_deletions(), reason=DELETE_REASON)
            result.deleted = list(deleter.deleted)
            result.reloaded = self._reload(ctx, services)
        finally:
            self._restorecon(ctx)
        result.changed = list(fs.changed_paths)
        result.installed = list(ctx.packages.installed_now)
        result.steps = list(ctx.steps)
        LOGGER.info(
            "Convergence pass finished: %d changed, %d reloaded, %d removed",
            len(result.changed),
            len(result.reloaded),
            len(result.deleted),
        )
        return result

    def _restorecon(self, ctx: PassContext) -> None:
        if not ctx.strategy.manages_selinux:
            return
        paths = ctx.fs.drain_restorecon()
        if paths:
            self.selinux.restorecon([str(ctx.fs.host_path(path)) for path in paths], dry_run=ctx.dry_run)

    def _reload(self, ctx: PassContext, services: ServiceController) -> list[str]:
        reloaded: list[str] = []
        for name in sorted(ctx.reload, key=lambda value: "" if value is None else value):
            instance = ctx.state.instance(name)
            if instance is None or not instance.binds:
                continue
            services.reload(instance)
            reloaded.append(services.unit(instance))
        return reloaded

    # ------------------------------------------------------------------
    # Site containers
    # ------------------------------------------------------------------
    def _control_sites(self, ctx: PassContext, controller: SiteController) -> list[str]:
        sites = [site for site in ctx.state.sites if SiteController.is_controllable(site)]
        if not sites:
            return []
        start_allowed = not ctx.fs.exists(USER_DAEMONS_PID_FILE)
        warnings: list[str] = []
        with ThreadPoolExecutor(max_workers=min(SITE_WORKERS, len(sites))) as pool:
            futures = {
                site.name: pool.submit(self._converge_site, ctx, controller, site, start_allowed)
                for site in sites
            }
            for name, future in futures.items():
                try:
                    future.result(timeout=self.config.site_timeout)
                except FutureTimeoutError:
                    LOGGER.warning("Site %s did not converge within %.0fs", name, self.config.site_timeout)
                    warnings.append(f"{name}: timed out")
                except ServiceError as exc:
                    LOGGER.warning("Site %s did not converge: %s", name, exc)
                    warnings.append(f"{name}: {exc}")
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("Site %s failed unexpectedly: %s", name, exc, exc_info=True)
                    warnings.append(f"{name}: {exc}")
        ctx.step("site-control", detail={"sites": len(sites), "failed": len(warnings)})
        return warnings

    def _converge_site(
        self,
        ctx: PassContext,
        controller: SiteController,
        site: Site,
        start_allowed: bool,
    ) -> None:
        if not controller.is_startable(site):
            controller.stop(site)
            return
        if site.name in ctx.restart_sites:
            stopped = controller.stop(site)
            if stopped is ActionResult.CHANGED and not ctx.dry_run and self.config.restart_delay > 0:
                time.sleep(self.config.restart_delay)
            controller.start(site)
        elif start_allowed:
            controller.start(site)

    def start_site(self, name: str) -> str | None:
        """Start site *name*; returns a rejection reason or ``None`` on success."""
        state, _strategy = self.load_state()
        site = state.site(name)
        if site is None:
            return f"Site {name} is not on this host ({state.host.hostname})"
        if not SiteController.is_controllable(site):
            return f"Site {name} is not a type of site that can be stopped and started"
        controller = self.site_controller()
        if not controller.is_startable(site):
            return f"Site {name} is not currently startable"
        with self.locks.mutate_sites([name]):
            result = controller.start(site)
        if result is ActionResult.UNKNOWN:
            return "Site start status is unknown"
        return None

    def stop_site(self, name: str) -> str | None:
        """Stop site *name*; returns a rejection reason or ``None`` on success."""
        state, _strategy = self.load_state()
        site = state.site(name)
        if site is None:
            return f"Site {name} is not on this host ({state.host.hostname})"
        if not SiteController.is_controllable(site):
            return f"Site {name} is not a type of site that can be stopped and started"
        with self.locks.mutate_sites([name]):
            result = self.site_controller().stop(site)
        if result is ActionResult.UNCHANGED:
            return "Site was already stopped"
        if result is ActionResult.UNKNOWN:
            return "Site stop status is unknown"
        return None

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def control_instances(self, action: str, name: str | None = None, *, every: bool = True) -> list[str]:
        """Run *action* (start, stop or restart) on instances; returns their units.

        With *every* each instance that has binds is targeted, otherwise only
        instance *name*.
        """
        state, strategy = self.load_state()
        if every:
            targets = [instance for instance in state.instances if instance.binds]
        else:
            targets = [self.instance(name)[0]]
        services = self.services_for(strategy)
        operations = {
            "start": services.start_all,
            "stop": services.stop_all,
            "restart": services.restart_all,
        }
        operation = operations.get(action)
        if operation is None:
            raise ServiceError(f"Unsupported instance action: {action}")
        with self._pass_lock:
            operation(targets)
        return [services.unit(instance) for instance in targets]

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------
    def instance(self, name: str | None) -> tuple[Instance, DesiredState, OsStrategy]:
        """Return instance *name* together with the snapshot it came from."""
        state, strategy = self.load_state()
        instance = state.instance(name)
        if instance is None:
            label = "(default)" if name is None else name
            raise StateError(f"Unknown instance: {label}")
        return instance, state, strategy

    def concurrency(self, name: str | None) -> int:
        """Return the concurrency currently in use by instance *name*."""
        instance, state, strategy = self.instance(name)
        plan = plan_capacity(
            instance.max_concurrency,
            state.host.cpu_count,
            default_prefork=strategy.default_prefork,
            mod_php=instance.has_mod_php,
        )
        return self.services_for(strategy).concurrency(instance, plan)

    # ------------------------------------------------------------------
    # Coalescing worker
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background worker that serves :meth:`request_rebuild`."""
        with self._condition:
            if self._worker is not None:
                return
            self._stopping = False
            self._worker = threading.Thread(target=self._work, name="httpdctl-rebuild", daemon=True)
            self._worker.start()

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop the background worker after any running pass finishes."""
        with self._condition:
            worker = self._worker
            self._stopping = True
            self._condition.notify_all()
        if worker is not None:
            worker.join(timeout)
        with self._condition:
            self._worker = None

    def request_rebuild(self) -> int:
        """Ask for a pass; requests made while one runs collapse into one more."""
        with self._condition:
            self._requested += 1
            self._condition.notify_all()
            return self._requested

    def wait_for_rebuild(self, ticket: int | None = None, *, timeout: float | None = None) -> bool:
        """Block until the pass serving *ticket* (default: the latest request) finished."""
        with self._condition:
            target = self._requested if ticket is None else ticket
            return self._condition.wait_for(lambda: self._completed >= target, timeout)

    def _work(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(lambda: self._stopping or self._requested > self._completed)
                if self._stopping:
                    return
                target = self._requested
            try:
                result = self.rebuild()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Convergence pass failed")
                result = ReconcileResult(dry_run=False, errors=[f"{type(exc).__name__}: {exc}"])
            with self._condition:
                self.last_result = result
                self._completed = target
                self._condition.notify_all()

    def watch(self, stop_event: threading.Event) -> None:
        """Rebuild whenever the desired-state file changes until *stop_event* is set."""
        path = Path(self.config.desired_state_file)
        self.start()
        last: float | None = None
        try:
            while not stop_event.is_set():
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    mtime = None
                if mtime is not None and mtime != last:
                    LOGGER.info("Desired state changed: %s", path)
                    last = mtime
                    self.request_rebuild()
                stop_event.wait(self.config.watch_interval)
        finally:
            self.stop()


__all__ = ["ReconcileResult", "Reconciler", "USER_DAEMONS_PID_FILE"]
