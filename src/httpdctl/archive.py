"""Archive helpers for the backup-then-delete step."""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupEntryBuilder, BackupError, BackupsRegistry

LOGGER = logging.getLogger(__name__)


def create_archive(source: Path, archive_path: Path) -> None:
    """Create a gzip tarball of *source* (file or directory) at *archive_path*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required to create archives.")

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [tar_bin, "-czf", str(archive_path), "-C", str(source.parent), source.name]
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class BackupDeleter:
    """Archive each scheduled path, record it in the index, then delete it."""

    registry: BackupsRegistry
    filesystem_root: Path = Path("/")
    dry_run: bool = False
    deleted: list[str] = field(default_factory=list)

    def backup_then_delete(self, paths: Iterable[str], *, reason: str | None = None) -> list[str]:
        """Delete every path in *paths*; returns the backup identifiers written."""
        identifiers: list[str] = []
        for path in paths:
            source = Path(self.filesystem_root) / path.lstrip("/")
            if not os.path.lexists(source):
                continue
            if self.dry_run:
                LOGGER.info("Dry run: would back up and remove %s", path)
                continue
            backup_id = self.registry.generate_identifier(path)
            self.registry.ensure_root()
            archive_path = self.registry.root / f"{backup_id}.tar.gz"
            create_archive(source, archive_path)
            kind = "directory" if source.is_dir() and not source.is_symlink() else "file"
            entry = BackupEntryBuilder(
                path=path,
                archive_path=archive_path,
                checksum=compute_checksum(archive_path),
                size_bytes=archive_path.stat().st_size,
                kind=kind,
                reason=reason,
            ).build(backup_id=backup_id)
            self.registry.append(entry)
            _remove(source)
            LOGGER.info("Removed %s (backup %s)", path, backup_id)
            self.deleted.append(path)
            identifiers.append(backup_id)
        return identifiers


def _remove(source: Path) -> None:
    try:
        if source.is_dir() and not source.is_symlink():
            shutil.rmtree(source)
        else:
            source.unlink()
    except OSError as exc:
        raise BackupError(f"Failed to remove {source}: {exc}") from exc


__all__ = ["BackupDeleter", "compute_checksum", "create_archive"]
