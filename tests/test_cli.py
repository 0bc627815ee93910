"""CLI smoke tests driven through Typer's CliRunner."""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

import yaml
from conftest import BASE_DOCUMENT, write_document
from typer.testing import CliRunner

from httpdctl import __version__
from httpdctl.cli import app
from httpdctl.exit_codes import ExitCode

runner = CliRunner()


def _extract_json(output: str) -> dict[str, Any]:
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, output
    return json.loads(output[start : end + 1])


def _write_stub(path: Path, script: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + script, encoding="utf-8")
    path.chmod(0o755)
    return path


def _prepare_environment(
    tmp_path: Path,
    document: dict[str, Any] | None = None,
    **overrides: Any,
) -> dict[str, str]:
    """Write a config file and desired state under *tmp_path* and return the env."""
    root = tmp_path / "root"
    root.mkdir(exist_ok=True)
    state_file = write_document(
        tmp_path / "desired-state.yml",
        document if document is not None else copy.deepcopy(BASE_DOCUMENT),
    )
    # Nothing is installed according to the stub rpm.
    rpm_stub = _write_stub(tmp_path / "bin" / "rpm", "exit 1\n")

    config = {
        "state_dir": str(tmp_path / "state"),
        "desired_state_file": str(state_file),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "filesystem_root": str(root),
        "manage_ownership": False,
        "lock_timeout": 1.0,
        "backups": {"root": str(tmp_path / "backups")},
        "initd": {"init_dir": str(root / "etc/rc.d/init.d")},
        "packages": {"rpm_bin": str(rpm_stub), "installer_bin": "false"},
    }
    config.update(overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return {"HTTPDCTL_CONFIG_FILE": str(config_path)}


def _operations(tmp_path: Path) -> list[dict[str, Any]]:
    log_path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]


def test_version_flag(tmp_path: Path) -> None:
    """--version prints the package version and exits cleanly."""
    result = runner.invoke(app, ["--version"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert f"httpdctl {__version__}" in result.stdout


def test_no_subcommand_shows_help(tmp_path: Path) -> None:
    result = runner.invoke(app, [], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "Apache httpd fleet reconciler." in result.stdout
    assert "rebuild" in result.stdout


def test_config_show_table(tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "show"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "state_dir" in result.stdout
    assert "filesystem_root" in result.stdout


def test_config_show_json_reflects_config_file(tmp_path: Path) -> None:
    """Values from the config file named in the environment are honoured."""
    result = runner.invoke(app, ["config", "show", "--json"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    data = _extract_json(result.stdout)
    assert data["state_dir"] == str(tmp_path / "state")
    assert data["manage_ownership"] is False
    assert data["backups"]["root"] == str(tmp_path / "backups")


def test_config_file_with_unknown_key_fails(tmp_path: Path) -> None:
    env = _prepare_environment(tmp_path)
    Path(env["HTTPDCTL_CONFIG_FILE"]).write_text("bogus: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == ExitCode.VALIDATION


def test_state_validate_reports_summary(tmp_path: Path) -> None:
    result = runner.invoke(app, ["state", "validate"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "Desired state is valid" in result.stdout
    assert "1 instance(s), 1 site(s)" in result.stdout

    record = _operations(tmp_path)[-1]
    assert record["operation"] == "state validate"
    assert record["result"]["status"] == "success"


def test_state_validate_rejects_invalid_document(tmp_path: Path) -> None:
    """Validation errors map onto exit code 2 and are logged."""
    document = copy.deepcopy(BASE_DOCUMENT)
    document["sites"][0]["name"] = "Not Valid"

    result = runner.invoke(app, ["state", "validate"], env=_prepare_environment(tmp_path, document))

    assert result.exit_code == ExitCode.VALIDATION
    assert "Invalid site name" in result.stdout
    assert _operations(tmp_path)[-1]["result"]["status"] == "error"


def test_state_validate_missing_document(tmp_path: Path) -> None:
    env = _prepare_environment(tmp_path)
    (tmp_path / "desired-state.yml").unlink()

    result = runner.invoke(app, ["state", "validate"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Desired state file not found" in result.stdout


def test_plan_json(tmp_path: Path) -> None:
    result = runner.invoke(app, ["plan", "--json"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    data = _extract_json(result.stdout)
    assert data["instance"] == "(default)"
    assert data["capacity"]["type"] == "event"
    assert data["capacity"]["worker_threads_per_child"] == 13
    assert data["features"]["modules"]["ssl"] is True


def test_plan_unknown_instance(tmp_path: Path) -> None:
    result = runner.invoke(app, ["plan", "blog"], env=_prepare_environment(tmp_path))

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown instance: blog" in result.stdout


def test_render_site_prints_shared_and_bind_files(tmp_path: Path) -> None:
    """Site rendering prints each file under a header comment."""
    result = runner.invoke(app, ["render", "--site", "shop"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "# shop.inc\n" in result.stdout
    assert "# shop_192.0.2.10_443.conf\n" in result.stdout
    assert "SSLCertificateFile /etc/letsencrypt/live/${bind.primary_hostname}/cert.pem" in result.stdout
    assert not (tmp_path / "root" / "etc").exists()


def test_render_unknown_site(tmp_path: Path) -> None:
    result = runner.invoke(app, ["render", "--site", "blog"], env=_prepare_environment(tmp_path))

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown site: blog" in result.stdout


def test_render_instance_conf(tmp_path: Path) -> None:
    result = runner.invoke(app, ["render"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "ThreadsPerChild" in result.stdout
    assert "Listen 192.0.2.10:443" in result.stdout


def test_instances_restart_runs_systemctl_for_every_instance(tmp_path: Path) -> None:
    calls = tmp_path / "systemctl.calls"
    systemctl = _write_stub(tmp_path / "bin" / "systemctl", f'echo "$@" >> {calls}\n')
    env = _prepare_environment(tmp_path, systemd={"systemctl_bin": str(systemctl)})

    result = runner.invoke(app, ["instances", "restart"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "restart: httpd.service" in result.stdout
    assert calls.read_text(encoding="utf-8") == "restart httpd.service\n"
    entry = _operations(tmp_path)[-1]
    assert entry["operation"] == "instances restart"


def test_instances_stop_unknown_instance(tmp_path: Path) -> None:
    result = runner.invoke(app, ["instances", "stop", "blog"], env=_prepare_environment(tmp_path))

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown instance: blog" in result.stdout
