"""End-to-end convergence passes against a scratch filesystem root."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from conftest import FakePackages, FakeSystemd
from httpdctl.config import AppConfig
from httpdctl.orchestrator import Reconciler
from httpdctl.render import RenderError
from httpdctl.services import ActionResult, ServiceError, SiteController
from httpdctl.state import PredisableStash, StateError, StateRegistry

WriteState = Callable[[dict[str, Any]], Path]


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_rebuild_converges_scratch_tree(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    host_root: Path,
    fake_packages: FakePackages,
    fake_systemd: FakeSystemd,
) -> None:
    write_state(document)

    result = reconciler.rebuild()

    assert result.ok
    conf = host_root / "etc/httpd/conf/httpd.conf"
    assert "Listen 192.0.2.10:443\n" in conf.read_text(encoding="utf-8")
    available = host_root / "etc/httpd/sites-available"
    assert (available / "shop.inc").is_file()
    assert (available / "shop_192.0.2.10_443.conf").is_file()
    link = host_root / "etc/httpd/sites-enabled/shop_192.0.2.10_443.conf"
    assert os.readlink(link) == "../sites-available/shop_192.0.2.10_443.conf"
    index = host_root / "var/www/shop/htdocs/index.html"
    assert "Test HTML Page for shop.example.com" in index.read_text(encoding="utf-8")
    assert (host_root / "var/log/httpd-sites/shop/https/access_log").is_file()
    assert (host_root / "etc/awstats/awstats.shop.conf").is_file()

    assert "mod_ssl" in result.installed
    assert "mod_ssl" in fake_packages.present
    assert ("enable", "httpd.service") in fake_systemd.calls
    assert fake_systemd.calls[-1] == ("reload-or-restart", "httpd.service")
    assert result.reloaded == ["httpd.service"]
    assert [step["name"] for step in result.steps][:2] == ["logs", "stats"]


def test_second_pass_changes_nothing(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    fake_systemd: FakeSystemd,
) -> None:
    """Converging an already converged host writes nothing and reloads nothing."""
    write_state(document)
    reconciler.rebuild()
    fake_systemd.calls.clear()

    second = reconciler.rebuild()

    assert second.changed == []
    assert second.reloaded == []
    assert second.installed == []
    assert second.deleted == []
    assert fake_systemd.calls == []


def test_manual_host_survives_disable_and_enable(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    app_config: AppConfig,
    host_root: Path,
) -> None:
    """A hand-edited manual host is stashed when disabled and restored verbatim."""
    vhost = document["sites"][0]["virtual_hosts"][0]
    vhost["manual"] = True
    bind_file = host_root / "etc/httpd/sites-available/shop_192.0.2.10_443.conf"
    stash = PredisableStash(StateRegistry(app_config.registry_dir))

    write_state(document)
    assert reconciler.rebuild().ok
    edited = bind_file.read_bytes() + b"# hand edited\n"
    bind_file.write_bytes(edited)
    assert reconciler.rebuild().ok
    assert bind_file.read_bytes() == edited

    vhost["disabled"] = True
    write_state(document)
    assert reconciler.rebuild().ok
    assert bind_file.read_bytes() != edited
    assert stash.get("shop_192.0.2.10_443.conf") == edited
    assert reconciler.rebuild().ok
    assert stash.get("shop_192.0.2.10_443.conf") == edited

    vhost["disabled"] = False
    write_state(document)
    assert reconciler.rebuild().ok
    assert bind_file.read_bytes() == edited
    assert stash.keys() == []


def test_unknown_files_are_backed_up_then_deleted(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    host_root: Path,
) -> None:
    available = host_root / "etc/httpd/sites-available"
    enabled = host_root / "etc/httpd/sites-enabled"
    available.mkdir(parents=True)
    enabled.mkdir(parents=True)
    (available / "old_192.0.2.10_80.conf").write_text("<VirtualHost *:80>\n</VirtualHost>\n", encoding="utf-8")
    (available / "README").write_text("managed by httpdctl\n", encoding="utf-8")
    (available / "disabled.inc").write_text("Deny from all\n", encoding="utf-8")
    (enabled / "old_192.0.2.10_80.conf").symlink_to("../sites-available/old_192.0.2.10_80.conf")
    (host_root / "var/www/retired/htdocs").mkdir(parents=True)
    write_state(document)

    result = reconciler.rebuild()

    assert not (available / "old_192.0.2.10_80.conf").exists()
    assert not os.path.lexists(enabled / "old_192.0.2.10_80.conf")
    assert not (host_root / "var/www/retired").exists()
    assert (available / "README").read_text(encoding="utf-8") == "managed by httpdctl\n"
    assert (available / "disabled.inc").exists()
    assert set(result.deleted) == {
        "/etc/httpd/sites-available/old_192.0.2.10_80.conf",
        "/etc/httpd/sites-enabled/old_192.0.2.10_80.conf",
        "/var/www/retired",
    }
    entries = reconciler.backups.list_entries()
    assert [entry["id"] for entry in entries] == result.backups
    assert {entry["path"] for entry in entries} == set(result.deleted)
    for entry in entries:
        assert Path(str(entry["archive"])).is_file()
        assert entry["reason"] == "no longer referenced by the desired state"


def test_dry_run_writes_nothing(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    host_root: Path,
    fake_packages: FakePackages,
    fake_systemd: FakeSystemd,
) -> None:
    write_state(document)

    result = reconciler.rebuild(dry_run=True)

    assert result.dry_run is True
    assert "/etc/httpd/conf/httpd.conf" in result.changed
    assert list(host_root.iterdir()) == []
    assert "mod_ssl" not in fake_packages.present
    assert fake_systemd.enabled == set()
    assert result.backups == []


def test_render_failure_leaves_configuration_untouched(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    host_root: Path,
) -> None:
    del document["sites"][0]["virtual_hosts"][0]["certificate"]
    write_state(document)

    with pytest.raises(RenderError, match="SSLCertificate not found"):
        reconciler.rebuild()

    assert not (host_root / "etc/httpd/conf").exists()


# ----------------------------------------------------------------------
# Site actions
# ----------------------------------------------------------------------
@pytest.fixture
def container_document(document: dict[str, Any]) -> dict[str, Any]:
    document["host"]["accounts"]["app"] = {"uid": 1002, "gid": 1002}
    document["sites"].append(
        {
            "name": "app",
            "container": {"control_script": "/var/www/app/bin/tomcat", "pid_file": "/var/run/app.pid"},
        }
    )
    return document


def test_site_actions_reject_unknown_and_plain_sites(
    reconciler: Reconciler,
    write_state: WriteState,
    container_document: dict[str, Any],
) -> None:
    write_state(container_document)

    assert reconciler.start_site("missing") == "Site missing is not on this host (www1.example.com)"
    assert reconciler.stop_site("shop") == "Site shop is not a type of site that can be stopped and started"


def test_stop_and_start_site(
    monkeypatch: pytest.MonkeyPatch,
    reconciler: Reconciler,
    write_state: WriteState,
    container_document: dict[str, Any],
    host_root: Path,
) -> None:
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr("httpdctl.services.subprocess.run", fake_run)
    write_state(container_document)

    assert reconciler.stop_site("app") == "Site was already stopped"
    assert reconciler.start_site("app") is None
    assert calls == [["/var/www/app/bin/tomcat", "start"]]

    (host_root / "var/run").mkdir(parents=True)
    (host_root / "var/run/app.pid").write_text("99\n", encoding="utf-8")
    assert reconciler.stop_site("app") is None
    assert calls[-1] == ["/var/www/app/bin/tomcat", "stop"]


def test_concurrency_of_unknown_instance(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
) -> None:
    write_state(document)

    with pytest.raises(StateError, match="Unknown instance: blog"):
        reconciler.concurrency("blog")


@pytest.mark.mutation_timeout
def test_requested_rebuilds_run_in_background(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    host_root: Path,
) -> None:
    write_state(document)
    reconciler.start()
    try:
        ticket = reconciler.request_rebuild()
        assert reconciler.wait_for_rebuild(ticket, timeout=30)
    finally:
        reconciler.stop(timeout=30)

    assert reconciler.last_result is not None
    assert reconciler.last_result.ok
    assert (host_root / "etc/httpd/conf/httpd.conf").is_file()


def test_dry_run_enable_keeps_the_stash(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    app_config: AppConfig,
    host_root: Path,
) -> None:
    """A dry run of the re-enable leaves the stashed bytes for the real pass."""
    vhost = document["sites"][0]["virtual_hosts"][0]
    vhost["manual"] = True
    bind_file = host_root / "etc/httpd/sites-available/shop_192.0.2.10_443.conf"
    stash = PredisableStash(StateRegistry(app_config.registry_dir))

    write_state(document)
    assert reconciler.rebuild().ok
    edited = bind_file.read_bytes() + b"# hand edited\n"
    bind_file.write_bytes(edited)
    vhost["disabled"] = True
    write_state(document)
    assert reconciler.rebuild().ok
    disabled_bytes = bind_file.read_bytes()

    vhost["disabled"] = False
    write_state(document)
    preview = reconciler.rebuild(dry_run=True)
    assert "/etc/httpd/sites-available/shop_192.0.2.10_443.conf" in preview.changed
    assert bind_file.read_bytes() == disabled_bytes
    assert stash.get("shop_192.0.2.10_443.conf") == edited

    assert reconciler.rebuild().ok
    assert bind_file.read_bytes() == edited
    assert stash.keys() == []


def test_dry_run_disable_writes_no_stash(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    app_config: AppConfig,
    host_root: Path,
) -> None:
    vhost = document["sites"][0]["virtual_hosts"][0]
    vhost["manual"] = True
    bind_file = host_root / "etc/httpd/sites-available/shop_192.0.2.10_443.conf"
    write_state(document)
    assert reconciler.rebuild().ok
    edited = bind_file.read_bytes() + b"# hand edited\n"
    bind_file.write_bytes(edited)

    vhost["disabled"] = True
    write_state(document)
    assert reconciler.rebuild(dry_run=True).ok

    assert bind_file.read_bytes() == edited
    assert PredisableStash(StateRegistry(app_config.registry_dir)).keys() == []


def _stale_site(host_root: Path) -> Path:
    stale = host_root / "var/www/retired"
    (stale / "htdocs").mkdir(parents=True)
    return stale


def test_broken_control_script_does_not_stop_the_pass(
    monkeypatch: pytest.MonkeyPatch,
    reconciler: Reconciler,
    write_state: WriteState,
    container_document: dict[str, Any],
    host_root: Path,
    fake_systemd: FakeSystemd,
) -> None:
    """A container script that cannot execute only produces a warning."""
    real_run = subprocess.run

    def fake_run(args: Sequence[str], **kwargs: Any) -> Any:
        if args[0] == "/var/www/app/bin/tomcat":
            raise OSError(8, "Exec format error")
        return real_run(args, **kwargs)

    monkeypatch.setattr("httpdctl.services.subprocess.run", fake_run)
    stale = _stale_site(host_root)
    write_state(container_document)

    result = reconciler.rebuild()

    assert result.ok
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("app: ")
    assert "Exec format error" in result.warnings[0]
    assert not stale.exists()
    assert "/var/www/retired" in result.deleted
    assert result.reloaded == ["httpd.service"]
    assert fake_systemd.calls[-1] == ("reload-or-restart", "httpd.service")


def test_unexpected_site_failure_is_reported_as_warning(
    monkeypatch: pytest.MonkeyPatch,
    reconciler: Reconciler,
    write_state: WriteState,
    container_document: dict[str, Any],
    host_root: Path,
) -> None:
    def explode(self: SiteController, site: Any) -> ActionResult:
        raise ValueError(f"cannot reach {site.name}")

    monkeypatch.setattr(SiteController, "start", explode)
    stale = _stale_site(host_root)
    write_state(container_document)

    result = reconciler.rebuild()

    assert result.ok
    assert result.warnings == ["app: cannot reach app"]
    assert not stale.exists()
    assert result.reloaded == ["httpd.service"]


def test_container_restarts_when_its_include_changes(
    monkeypatch: pytest.MonkeyPatch,
    reconciler: Reconciler,
    write_state: WriteState,
    container_document: dict[str, Any],
    app_config: AppConfig,
    host_root: Path,
) -> None:
    """The restart delay only applies after a stop that actually stopped something."""
    calls: list[list[str]] = []
    sleeps: list[float] = []

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr("httpdctl.services.subprocess.run", fake_run)
    monkeypatch.setattr("httpdctl.orchestrator.time.sleep", sleeps.append)
    reconciler.config = replace(app_config, restart_delay=2.5)
    write_state(container_document)

    # First pass installs app.inc; the container is not running so no delay.
    assert reconciler.rebuild().ok
    assert calls == [["/var/www/app/bin/tomcat", "start"]]
    assert sleeps == []

    (host_root / "var/run").mkdir(parents=True, exist_ok=True)
    (host_root / "var/run/app.pid").write_text("99\n", encoding="utf-8")
    container_document["sites"][1]["block_scm"] = False
    write_state(container_document)
    assert reconciler.rebuild().ok
    assert calls[-1] == ["/var/www/app/bin/tomcat", "stop"]
    assert sleeps == [2.5]

    calls.clear()
    assert reconciler.rebuild().ok
    assert calls == []
    assert sleeps == [2.5]


def test_control_every_instance(
    reconciler: Reconciler,
    write_state: WriteState,
    document: dict[str, Any],
    fake_systemd: FakeSystemd,
) -> None:
    write_state(document)

    assert reconciler.control_instances("restart") == ["httpd.service"]
    assert reconciler.control_instances("stop", None, every=False) == ["httpd.service"]
    assert fake_systemd.calls == [("restart", "httpd.service"), ("stop", "httpd.service")]

    with pytest.raises(StateError, match="Unknown instance: blog"):
        reconciler.control_instances("start", "blog", every=False)
    with pytest.raises(ServiceError, match="Unsupported instance action: reload"):
        reconciler.control_instances("reload")
