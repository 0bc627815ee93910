"""Service control for Apache instances and site containers.

:class:`ServiceController` hides whether an instance is driven by systemd or
by a SysV init script, and answers concurrency probes. :class:`SiteController`
implements the stop/start contract of sites backed by an application
container.
"""
from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Generic, TypeVar

from .capacity import CapacityPlan
from .model import Instance, Site
from .providers.initd import InitScriptProvider
from .providers.processes import HTTPD_EXECUTABLE, ProcessProbe, read_pid_file
from .providers.systemd import SystemdProvider
from .strategies import OsStrategy

LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DAEMON_STOP_TIMEOUT = 60.0


class ServiceError(RuntimeError):
    """Raised when a service or site action fails."""


class ActionResult(str, Enum):
    """Outcome of a stop or start request."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class _Call(Generic[V]):
    done: threading.Event = field(default_factory=threading.Event)
    value: V | None = None
    error: BaseException | None = None


class SingleFlight(Generic[K, V]):
    """Collapse concurrent calls for the same key into one computation.

    Results are shared only with callers that arrived while the computation
    was running; nothing is cached afterwards.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[K, _Call[V]] = {}

    def do(self, key: K, compute: Callable[[], V]) -> V:
        """Return ``compute()``, sharing an in-flight result for *key*."""
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if call is None:
                call = _Call()
                self._calls[key] = call
        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value  # type: ignore[return-value]
        try:
            call.value = compute()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.value


@dataclass(slots=True)
class ServiceController:
    """Map instances to their units and drive them."""

    strategy: OsStrategy
    systemd: SystemdProvider
    initd: InitScriptProvider
    probe: ProcessProbe = field(default_factory=ProcessProbe)
    filesystem_root: Path = Path("/")
    dry_run: bool = False
    _flight: SingleFlight[str | None, int] = field(default_factory=SingleFlight)

    def unit(self, instance: Instance) -> str:
        """Return the unit or init script name of *instance*."""
        return self.strategy.unit_name(instance)

    def reload(self, instance: Instance) -> None:
        """Reload *instance*, restarting it when it is not running."""
        unit = self.unit(instance)
        LOGGER.info("Reloading %s", unit)
        if self.strategy.uses_systemd:
            self.systemd.reload_or_restart(unit, dry_run=self.dry_run)
        else:
            self.initd.control(unit, "reload", dry_run=self.dry_run)

    def start(self, instance: Instance) -> None:
        self._control(instance, "start")

    def stop(self, instance: Instance) -> None:
        self._control(instance, "stop")

    def restart(self, instance: Instance) -> None:
        self._control(instance, "restart")

    def start_all(self, instances: Sequence[Instance]) -> None:
        """Start every instance in *instances*."""
        for instance in instances:
            self.start(instance)

    def stop_all(self, instances: Sequence[Instance]) -> None:
        """Stop every instance in *instances*."""
        for instance in instances:
            self.stop(instance)

    def restart_all(self, instances: Sequence[Instance]) -> None:
        """Restart every instance in *instances*."""
        for instance in instances:
            self.restart(instance)

    def _control(self, instance: Instance, action: str) -> None:
        unit = self.unit(instance)
        LOGGER.info("Running %s on %s", action, unit)
        if self.strategy.uses_systemd:
            getattr(self.systemd, action)(unit, dry_run=self.dry_run)
        else:
            self.initd.control(unit, action, dry_run=self.dry_run)

    # ------------------------------------------------------------------
    # Concurrency probe
    # ------------------------------------------------------------------
    def concurrency(self, instance: Instance, plan: CapacityPlan) -> int:
        """Return the instance's current concurrency capacity in use.

        Concurrent probes of the same instance share one walk of the process
        table.
        """
        return self._flight.do(instance.name, lambda: self._probe(instance, plan))

    def _probe(self, instance: Instance, plan: CapacityPlan) -> int:
        parent = self.main_pid(instance)
        if parent is None:
            return 0
        children = self.probe.count_children(parent, HTTPD_EXECUTABLE)
        return children * plan.concurrency_per_child

    def main_pid(self, instance: Instance) -> int | None:
        """Return the supervising PID of *instance*."""
        if self.strategy.uses_systemd:
            return self.systemd.main_pid(self.unit(instance))
        pid_file = Path(self.filesystem_root) / self.strategy.pid_file(instance).lstrip("/")
        return read_pid_file(pid_file)


@dataclass(slots=True)
class SiteController:
    """Stop and start the application container behind a site."""

    filesystem_root: Path = Path("/")
    timeout: float = DAEMON_STOP_TIMEOUT
    dry_run: bool = False

    @staticmethod
    def is_controllable(site: Site) -> bool:
        """Return ``True`` when *site* has a container to stop and start."""
        return site.container is not None

    @staticmethod
    def is_startable(site: Site) -> bool:
        """Return ``True`` when *site*'s container should be running."""
        return site.container is not None and site.container.startable and not site.disabled

    def stop(self, site: Site) -> ActionResult:
        """Stop *site*'s container."""
        return self._action(site, "stop")

    def start(self, site: Site) -> ActionResult:
        """Start *site*'s container."""
        return self._action(site, "start")

    def _action(self, site: Site, action: str) -> ActionResult:
        container = site.container
        if container is None:
            raise ServiceError(f"Site {site.name} has no container to {action}")
        running = self._is_running(site)
        if running is not None and running is (action == "start"):
            return ActionResult.UNCHANGED
        LOGGER.info("Running %s for site %s", action, site.name)
        self._run_command(
            [container.control_script, action],
            user=site.user,
            error_prefix=f"{container.control_script} {action}",
        )
        return ActionResult.UNKNOWN if running is None else ActionResult.CHANGED

    def _is_running(self, site: Site) -> bool | None:
        container = site.container
        if container is None or container.pid_file is None:
            return None
        return os.path.lexists(Path(self.filesystem_root) / container.pid_file.lstrip("/"))

    def stop_daemons(self, directory: str, user: str | int) -> list[str]:
        """Stop every script under ``<directory>/daemon`` as *user*.

        Failures are logged and skipped so one broken script does not keep the
        directory from being removed.
        """
        daemon_dir = Path(self.filesystem_root) / directory.lstrip("/") / "daemon"
        if not daemon_dir.is_dir():
            return []
        stopped: list[str] = []
        for script in sorted(daemon_dir.iterdir()):
            if not script.is_file():
                continue
            try:
                self._run_command([str(script), "stop"], user=user, error_prefix=f"{script} stop")
            except ServiceError as exc:
                LOGGER.warning("Unable to stop daemon %s: %s", script, exc)
                continue
            stopped.append(str(script))
        return stopped

    def _run_command(
        self,
        args: Sequence[str],
        *,
        user: str | int,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                user=user,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ServiceError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ServiceError(f"{error_prefix} timed out after {self.timeout:.0f}s") from exc
        except (KeyError, PermissionError) as exc:
            raise ServiceError(f"{error_prefix} could not run as {user}: {exc}") from exc
        except OSError as exc:
            raise ServiceError(f"{error_prefix} could not be executed: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise ServiceError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "ActionResult",
    "ServiceController",
    "ServiceError",
    "SingleFlight",
    "SiteController",
]
