"""Tests for the BackupsRegistry helpers and the backup-then-delete step."""
from __future__ import annotations

from pathlib import Path

from httpdctl.archive import BackupDeleter
from httpdctl.backups import BackupEntryBuilder, BackupsRegistry


def _registry(tmp_path: Path) -> BackupsRegistry:
    return BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")


def test_backups_registry_append_and_read(tmp_path: Path) -> None:
    """Append persists entries in backups.json."""
    registry = _registry(tmp_path)
    registry.ensure_root()

    entry = BackupEntryBuilder(
        path="/etc/httpd/sites-available/old.conf",
        archive_path=tmp_path / "backups" / "demo.tar.gz",
        checksum="deadbeef",
        size_bytes=1234,
        kind="file",
        reason="no longer referenced",
    ).build(backup_id="demo")

    registry.append(entry)

    data = registry.read()
    assert data["backups"][0]["id"] == "demo"
    assert data["backups"][0]["reason"] == "no longer referenced"
    assert registry.find_by_id("demo")["path"] == "/etc/httpd/sites-available/old.conf"
    assert len(registry.entries_for_path("/etc/httpd/sites-available/old.conf")) == 1


def test_backups_registry_generates_identifier(tmp_path: Path) -> None:
    """Generated backup identifiers include timestamp and a path slug."""
    registry = _registry(tmp_path)
    backup_id = registry.generate_identifier("/var/www/old site")
    assert backup_id.startswith("20")  # timestamp prefix
    assert "var_www_old-site" in backup_id


def test_backup_deleter_archives_before_removing(tmp_path: Path) -> None:
    """Scheduled paths are archived, indexed and only then removed."""
    root = tmp_path / "root"
    stale = root / "var/www/gone"
    (stale / "htdocs").mkdir(parents=True)
    (stale / "htdocs/index.html").write_text("bye\n", encoding="utf-8")
    registry = _registry(tmp_path)

    deleter = BackupDeleter(registry, filesystem_root=root)
    identifiers = deleter.backup_then_delete(["/var/www/gone", "/var/www/missing"], reason="stale")

    assert len(identifiers) == 1
    assert not stale.exists()
    assert deleter.deleted == ["/var/www/gone"]
    entry = registry.find_by_id(identifiers[0])
    assert entry is not None
    assert entry["kind"] == "directory"
    assert entry["reason"] == "stale"
    assert Path(str(entry["archive"])).exists()


def test_backup_deleter_dry_run_keeps_files(tmp_path: Path) -> None:
    """Dry runs neither archive nor remove anything."""
    root = tmp_path / "root"
    stale = root / "etc/httpd/conf/httpd@old.conf"
    stale.parent.mkdir(parents=True)
    stale.write_text("Listen 80\n", encoding="utf-8")
    registry = _registry(tmp_path)

    deleter = BackupDeleter(registry, filesystem_root=root, dry_run=True)

    assert deleter.backup_then_delete(["/etc/httpd/conf/httpd@old.conf"]) == []
    assert stale.exists()
    assert registry.list_entries() == []
