"""Tests for the JSON-lines operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from httpdctl.logging import OPERATIONS_LOG_NAME, StructuredLogger


def _last_record(logger: StructuredLogger) -> dict[str, object]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_unwritable_log_directory_disables_logger(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Commands still run when the log directory cannot be created."""
    log_dir = tmp_path / "logs"
    real_mkdir = Path.mkdir

    def deny_log_dir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("read-only /var/log")
        real_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", deny_log_dir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("state validate", args={"path": "/var/lib/httpdctl/registry/desired.yml"}) as op:
        op.success("Desired state is valid.", changed=0)
    assert not log_dir.exists()


def test_failed_append_disables_logger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    logger = StructuredLogger(tmp_path / "logs")
    real_open = Path.open

    def full_disk(self: Path, *args: object, **kwargs: object) -> object:
        if self == logger.path:
            raise OSError("No space left on device")
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", full_disk)

    with logger.operation("rebuild") as op:
        op.success("converged", changed=2)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("concurrency", target={"kind": "instance", "name": "(default)"}) as op:
        op.success("208", changed=0)


def test_warning_records_are_json_safe(tmp_path: Path) -> None:
    """Paths and arbitrary objects in a warning are stringified."""
    logger = StructuredLogger(tmp_path / "logs")

    class Unit:
        def __str__(self) -> str:
            return "httpd@blog.service"

    with logger.operation("rebuild", args={"state": Path("desired.yml")}) as op:
        op.warning(
            "Site app failed to start",
            warnings=("app: timed out after 60s",),
            errors=("app",),
            changed=4,
            backups=["20260101-000000-var_www_old-a1b2c3"],
            context={"root": Path("/var/www"), "unit": Unit()},
        )

    result = _last_record(logger)["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["app: timed out after 60s"]
    assert result["errors"] == ["app"]
    assert result["backups"] == ["20260101-000000-var_www_old-a1b2c3"]
    assert result["context"] == {"root": "/var/www", "unit": "httpd@blog.service"}


def test_error_without_error_list_uses_message(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("render") as op:
        op.error("Unknown site: blog", errors=None, context={"ports": {443}})

    result = _last_record(logger)["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["Unknown site: blog"]
    assert result["context"] == {"ports": "{443}"}


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps and lock wait times land in the persisted record."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("rebuild", target={"kind": "host"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("servers", detail={"instances": ["(default)"]})
        op.success("converged", changed=3)

    record = json.loads((tmp_path / "logs" / OPERATIONS_LOG_NAME).read_text(encoding="utf-8"))
    assert record["operation"] == "rebuild"
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "servers", "status": "success", "detail": {"instances": ["(default)"]}}
    ]
    assert record["result"]["changed"] == 3


def test_operation_records_unhandled_exception(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("rebuild"):
            raise RuntimeError("semanage failed")

    record = json.loads(logger.path.read_text(encoding="utf-8"))
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["RuntimeError: semanage failed"]
