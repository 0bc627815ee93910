"""Tests for instance service control and site containers."""
from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from conftest import FakeSystemd
from httpdctl.capacity import plan_capacity
from httpdctl.model import Container, Site, WebApp
from httpdctl.providers.initd import InitScriptProvider
from httpdctl.providers.processes import ProcessProbe
from httpdctl.services import ActionResult, ServiceController, ServiceError, SingleFlight, SiteController
from httpdctl.state import parse_desired_state
from httpdctl.strategies import CENTOS5, ROCKY9


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _site(**container: Any) -> Site:
    return Site(
        name="app",
        user="app",
        group="app",
        server_admin="webmaster@app",
        webapps=(WebApp(path="", doc_base="/var/www/app/htdocs"),),
        container=Container(control_script="/var/www/app/bin/tomcat", **container),
    )


# ----------------------------------------------------------------------
# SingleFlight
# ----------------------------------------------------------------------
def test_single_flight_shares_in_flight_result() -> None:
    flight: SingleFlight[str, int] = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    calls: list[int] = []

    def slow() -> int:
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return 42

    results: list[int] = []
    leader = threading.Thread(target=lambda: results.append(flight.do("blog", slow)))
    leader.start()
    assert started.wait(timeout=5)
    follower = threading.Thread(target=lambda: results.append(flight.do("blog", lambda: 7)))
    follower.start()
    # Give the follower a chance to join the in-flight call.
    follower.join(timeout=0.2)
    release.set()
    leader.join(timeout=5)
    follower.join(timeout=5)

    assert results == [42, 42]
    assert calls == [1]


def test_single_flight_does_not_cache() -> None:
    flight: SingleFlight[str, int] = SingleFlight()
    counter = iter(range(10))

    assert flight.do("key", lambda: next(counter)) == 0
    assert flight.do("key", lambda: next(counter)) == 1


def test_single_flight_propagates_errors() -> None:
    flight: SingleFlight[str, int] = SingleFlight()

    def broken() -> int:
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        flight.do("key", broken)
    assert flight.do("key", lambda: 3) == 3


# ----------------------------------------------------------------------
# ServiceController
# ----------------------------------------------------------------------
def _fake_process(proc: Path, pid: int, ppid: int) -> None:
    entry = proc / str(pid)
    entry.mkdir(parents=True)
    (entry / "cmdline").write_bytes(b"/usr/sbin/httpd\0-DFOREGROUND\0")
    (entry / "status").write_text(f"Pid:\t{pid}\nPPid:\t{ppid}\n", encoding="utf-8")


def test_concurrency_counts_children_times_threads(tmp_path: Path, document: dict[str, Any]) -> None:
    state = parse_desired_state(document)
    instance = state.instances[0]
    plan = plan_capacity(200, 8, default_prefork=False, mod_php=False)
    proc = tmp_path / "proc"
    for pid in (501, 502, 503):
        _fake_process(proc, pid, 500)
    systemd = FakeSystemd()
    systemd.pids["httpd.service"] = 500
    controller = ServiceController(
        strategy=ROCKY9,
        systemd=systemd,
        initd=InitScriptProvider(init_dir=tmp_path),
        probe=ProcessProbe(proc_root=proc),
    )

    assert controller.concurrency(instance, plan) == 3 * 13


def test_concurrency_of_stopped_instance_is_zero(tmp_path: Path, document: dict[str, Any]) -> None:
    instance = parse_desired_state(document).instances[0]
    controller = ServiceController(
        strategy=ROCKY9,
        systemd=FakeSystemd(),
        initd=InitScriptProvider(init_dir=tmp_path),
        probe=ProcessProbe(proc_root=tmp_path / "proc"),
    )

    assert controller.concurrency(instance, plan_capacity(10, 1, default_prefork=True, mod_php=False)) == 0


def test_legacy_instances_use_init_scripts(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, document: dict[str, Any]) -> None:
    document["host"]["os_version"] = "centos5"
    instance = parse_desired_state(document).instances[0]
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr("httpdctl.providers.initd.subprocess.run", fake_run)
    (tmp_path / "var/run").mkdir(parents=True)
    (tmp_path / "var/run/httpd1.pid").write_text("777\n", encoding="utf-8")
    controller = ServiceController(
        strategy=CENTOS5,
        systemd=FakeSystemd(),
        initd=InitScriptProvider(init_dir=tmp_path / "init.d"),
        filesystem_root=tmp_path,
    )

    controller.reload(instance)
    controller.stop(instance)

    assert calls == [[str(tmp_path / "init.d/httpd1"), "reload"], [str(tmp_path / "init.d/httpd1"), "stop"]]
    assert controller.main_pid(instance) == 777


def test_systemd_reload_uses_reload_or_restart(tmp_path: Path, document: dict[str, Any]) -> None:
    instance = parse_desired_state(document).instances[0]
    systemd = FakeSystemd()
    controller = ServiceController(strategy=ROCKY9, systemd=systemd, initd=InitScriptProvider(init_dir=tmp_path))

    controller.reload(instance)
    controller.restart_all([instance])

    assert systemd.calls == [("reload-or-restart", "httpd.service"), ("restart", "httpd.service")]


# ----------------------------------------------------------------------
# SiteController
# ----------------------------------------------------------------------
def test_site_start_skipped_when_pid_file_present(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / "var/run").mkdir(parents=True)
    (tmp_path / "var/run/app.pid").write_text("1\n", encoding="utf-8")
    site = _site(pid_file="/var/run/app.pid")

    def fail_run(*_args: object, **_kwargs: object) -> DummyResult:
        raise AssertionError("the control script should not run")

    monkeypatch.setattr("httpdctl.services.subprocess.run", fail_run)

    assert SiteController(filesystem_root=tmp_path).start(site) is ActionResult.UNCHANGED


def test_site_stop_runs_control_script_as_site_user(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / "var/run").mkdir(parents=True)
    (tmp_path / "var/run/app.pid").write_text("1\n", encoding="utf-8")
    site = _site(pid_file="/var/run/app.pid")
    seen: list[tuple[list[str], object]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        seen.append((list(args), kwargs.get("user")))
        return DummyResult()

    monkeypatch.setattr("httpdctl.services.subprocess.run", fake_run)

    assert SiteController(filesystem_root=tmp_path).stop(site) is ActionResult.CHANGED
    assert seen == [(["/var/www/app/bin/tomcat", "stop"], "app")]


def test_site_without_pid_file_reports_unknown(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("httpdctl.services.subprocess.run", lambda *_args, **_kwargs: DummyResult())

    assert SiteController(filesystem_root=tmp_path).start(_site()) is ActionResult.UNKNOWN


def test_site_control_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "httpdctl.services.subprocess.run",
        lambda *_args, **_kwargs: DummyResult(returncode=3, stderr="tomcat is broken\n"),
    )

    with pytest.raises(ServiceError, match=r"tomcat start failed \(exit 3\): tomcat is broken"):
        SiteController(filesystem_root=tmp_path).start(_site())


def test_site_controllability() -> None:
    assert SiteController.is_controllable(_site()) is True
    assert SiteController.is_startable(_site(startable=False)) is False
    plain = Site(
        name="plain",
        user="plain",
        group="plain",
        server_admin="webmaster@plain",
        webapps=(WebApp(path="", doc_base="/var/www/plain/htdocs"),),
    )
    assert SiteController.is_controllable(plain) is False
    with pytest.raises(ServiceError, match="has no container"):
        SiteController().stop(plain)


def test_stop_daemons_continues_past_failures(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    daemon_dir = tmp_path / "var/www/old/daemon"
    daemon_dir.mkdir(parents=True)
    (daemon_dir / "a-broken").write_text("#!/bin/sh\n", encoding="utf-8")
    (daemon_dir / "b-worker").write_text("#!/bin/sh\n", encoding="utf-8")

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        return DummyResult(returncode=1 if args[0].endswith("a-broken") else 0)

    monkeypatch.setattr("httpdctl.services.subprocess.run", fake_run)

    stopped = SiteController(filesystem_root=tmp_path).stop_daemons("/var/www/old", 1001)

    assert stopped == [str(daemon_dir / "b-worker")]
