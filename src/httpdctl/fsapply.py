"""Idempotent filesystem primitives used by every reconciler.

All host paths handed to :class:`FilesystemApplier` are absolute paths as the
web server sees them (``/etc/httpd/conf/httpd.conf``); they are resolved under
``filesystem_root`` so staging runs and tests can converge a scratch tree.
Every write goes through :meth:`FilesystemApplier.install`, which replaces a
file atomically only when its bytes differ. Paths written or created are
collected in a restorecon set, and paths that should disappear are collected
in a delete list that the orchestrator hands to the backup-then-delete step.
"""
from __future__ import annotations

import grp
import logging
import os
import pwd
import stat
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .model import Account

LOGGER = logging.getLogger(__name__)


class ApplyError(RuntimeError):
    """Raised when a filesystem primitive fails."""


class MissingAccountError(RuntimeError):
    """Raised when a required user or group does not exist."""


@dataclass(slots=True)
class AccountResolver:
    """Resolve account names to numeric ids.

    Accounts declared on the desired-state host win; anything else is looked
    up in the system password and group databases.
    """

    accounts: Mapping[str, Account] = field(default_factory=dict)

    def uid(self, name: str) -> int:
        """Return the uid of user *name*."""
        account = self.accounts.get(name)
        if account is not None:
            return account.uid
        try:
            return pwd.getpwnam(name).pw_uid
        except KeyError as exc:
            raise MissingAccountError(f"User not found: {name}") from exc

    def gid(self, name: str) -> int:
        """Return the gid of group *name*."""
        account = self.accounts.get(name)
        if account is not None:
            return account.gid
        try:
            return grp.getgrnam(name).gr_gid
        except KeyError as exc:
            raise MissingAccountError(f"Group not found: {name}") from exc

    def has_user(self, name: str) -> bool:
        """Return ``True`` when user *name* exists."""
        if name in self.accounts:
            return True
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def home_directories(self) -> list[str]:
        """Return the home directory of every system user."""
        return sorted({entry.pw_dir for entry in pwd.getpwall() if entry.pw_dir})


@dataclass(slots=True)
class FilesystemApplier:
    """Apply rendered artifacts to disk with replace-if-different semantics."""

    root: Path = Path("/")
    accounts: AccountResolver = field(default_factory=AccountResolver)
    manage_ownership: bool = True
    dry_run: bool = False
    restorecon: set[str] = field(default_factory=set)
    deletions: list[str] = field(default_factory=list)
    changed_paths: list[str] = field(default_factory=list)

    def host_path(self, path: str) -> Path:
        """Return where host path *path* lives under the filesystem root."""
        if not path.startswith("/"):
            raise ApplyError(f"Host paths must be absolute: {path}")
        return Path(self.root) / path.lstrip("/")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def exists(self, path: str) -> bool:
        """Return ``True`` when *path* exists (broken symlinks count)."""
        return os.path.lexists(self.host_path(path))

    def is_dir(self, path: str) -> bool:
        target = self.host_path(path)
        return target.is_dir() and not target.is_symlink()

    def read_bytes(self, path: str) -> bytes | None:
        """Return the content of regular file *path*, or ``None`` when absent."""
        target = self.host_path(path)
        try:
            if not stat.S_ISREG(target.lstat().st_mode):
                return None
            return target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ApplyError(f"Failed to read {path}: {exc}") from exc

    def list_dir(self, path: str) -> list[str]:
        """Return the sorted entry names of directory *path* (empty when missing)."""
        target = self.host_path(path)
        if not target.is_dir():
            return []
        try:
            return sorted(os.listdir(target))
        except OSError as exc:
            raise ApplyError(f"Failed to list {path}: {exc}") from exc

    def owner_uid(self, path: str) -> int | None:
        """Return the uid owning *path*, or ``None`` when it does not exist."""
        try:
            return self.host_path(path).lstat().st_uid
        except FileNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def install(
        self,
        path: str,
        content: bytes,
        *,
        mode: int,
        owner: str = "root",
        group: str = "root",
    ) -> bool:
        """Atomically write *content* to *path* when it differs.

        Returns ``True`` when the content, mode or ownership changed.
        """
        target = self.host_path(path)
        current = self.read_bytes(path)
        if current == content:
            return self._enforce(path, mode=mode, owner=owner, group=group)
        if self.dry_run:
            self._record(path)
            return True
        uid, gid = self._ids(owner, group)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        except OSError as exc:
            raise ApplyError(f"Failed to prepare {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            if uid is not None and gid is not None:
                os.chown(tmp_path, uid, gid)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise ApplyError(f"Failed to install {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        self._record(path)
        return True

    def mkdir_if_missing(
        self,
        path: str,
        *,
        mode: int,
        owner: str = "root",
        group: str = "root",
    ) -> bool:
        """Create directory *path* when missing; existing directories are left alone."""
        target = self.host_path(path)
        if target.is_dir():
            return False
        if os.path.lexists(target):
            raise ApplyError(f"Not a directory: {path}")
        if self.dry_run:
            self._record(path)
            return True
        uid, gid = self._ids(owner, group)
        try:
            target.mkdir(parents=True)
            os.chmod(target, mode)
            if uid is not None and gid is not None:
                os.chown(target, uid, gid)
        except OSError as exc:
            raise ApplyError(f"Failed to create directory {path}: {exc}") from exc
        self._record(path)
        return True

    def ensure_directory(
        self,
        path: str,
        *,
        mode: int,
        owner: str = "root",
        group: str = "root",
    ) -> bool:
        """Create *path* when missing and enforce its mode and ownership."""
        created = self.mkdir_if_missing(path, mode=mode, owner=owner, group=group)
        if created:
            return True
        return self._enforce(path, mode=mode, owner=owner, group=group)

    def create_empty_file(
        self,
        path: str,
        *,
        mode: int,
        owner: str = "root",
        group: str = "root",
    ) -> bool:
        """Create an empty file when missing; an existing file keeps its content."""
        if self.exists(path):
            return self._enforce(path, mode=mode, owner=owner, group=group)
        return self.install(path, b"", mode=mode, owner=owner, group=group)

    def symlink(
        self,
        path: str,
        target: str,
        *,
        owner: str = "root",
        group: str = "root",
        replace_prefixes: tuple[str, ...] = (),
    ) -> bool:
        """Point symlink *path* at *target*.

        An existing link is only repointed when ``replace_prefixes`` is empty
        or its current target starts with one of them; anything that is not a
        symlink is left in place.
        """
        link = self.host_path(path)
        if link.is_symlink():
            current = os.readlink(link)
            if current == target:
                return False
            if replace_prefixes and not current.startswith(replace_prefixes):
                return False
        elif os.path.lexists(link):
            return False
        if self.dry_run:
            self._record(path)
            return True
        uid, gid = self._ids(owner, group)
        tmp_link = link.with_name(f".{link.name}.new")
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            tmp_link.unlink(missing_ok=True)
            os.symlink(target, tmp_link)
            if uid is not None and gid is not None:
                os.lchown(tmp_link, uid, gid)
            os.replace(tmp_link, link)
        except OSError as exc:
            raise ApplyError(f"Failed to link {path} -> {target}: {exc}") from exc
        finally:
            tmp_link.unlink(missing_ok=True)
        self._record(path)
        return True

    def remove_file(self, path: str) -> bool:
        """Remove a generated file or symlink directly."""
        target = self.host_path(path)
        if not os.path.lexists(target):
            return False
        if target.is_dir() and not target.is_symlink():
            raise ApplyError(f"Refusing to remove directory directly: {path}")
        if self.dry_run:
            return True
        try:
            target.unlink()
        except OSError as exc:
            raise ApplyError(f"Failed to remove {path}: {exc}") from exc
        return True

    def schedule_delete(self, path: str) -> None:
        """Queue *path* for backup-then-delete at the end of the pass."""
        if path in self.deletions:
            return
        LOGGER.info("Scheduling for removal: %s", path)
        self.deletions.append(path)

    def drain_restorecon(self) -> list[str]:
        """Return and clear the paths whose security label needs refreshing."""
        paths = sorted(self.restorecon)
        self.restorecon.clear()
        return paths

    def drain_deletions(self) -> list[str]:
        """Return and clear the paths queued for deletion."""
        paths = list(self.deletions)
        self.deletions.clear()
        return paths

    # ------------------------------------------------------------------
    def chmod(self, path: str, mode: int) -> bool:
        """Set the permission bits of *path*; returns ``True`` when changed."""
        target = self.host_path(path)
        try:
            current = stat.S_IMODE(target.lstat().st_mode)
        except OSError as exc:
            raise ApplyError(f"Failed to stat {path}: {exc}") from exc
        if current == mode:
            return False
        if not self.dry_run:
            try:
                os.chmod(target, mode)
            except OSError as exc:
                raise ApplyError(f"Failed to chmod {path}: {exc}") from exc
        return True

    def chown(self, path: str, owner: str, group: str) -> bool:
        """Set the ownership of *path*; a no-op unless ownership is managed."""
        uid, gid = self._ids(owner, group)
        if uid is None or gid is None:
            return False
        target = self.host_path(path)
        try:
            info = target.lstat()
        except OSError as exc:
            raise ApplyError(f"Failed to stat {path}: {exc}") from exc
        if info.st_uid == uid and info.st_gid == gid:
            return False
        if not self.dry_run:
            try:
                os.lchown(target, uid, gid)
            except OSError as exc:
                raise ApplyError(f"Failed to chown {path}: {exc}") from exc
        return True

    def _enforce(self, path: str, *, mode: int, owner: str, group: str) -> bool:
        changed = self.chmod(path, mode)
        changed = self.chown(path, owner, group) or changed
        if changed:
            self._record(path)
        return changed

    def _ids(self, owner: str, group: str) -> tuple[int | None, int | None]:
        if not self.manage_ownership:
            return None, None
        return self.accounts.uid(owner), self.accounts.gid(group)

    def _record(self, path: str) -> None:
        self.restorecon.add(path)
        if path not in self.changed_paths:
            self.changed_paths.append(path)


__all__ = ["AccountResolver", "ApplyError", "FilesystemApplier", "MissingAccountError"]
