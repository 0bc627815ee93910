"""RPM package queries and installs."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class PackageError(RuntimeError):
    """Raised when package queries or installs fail."""


@dataclass(slots=True)
class PackageProvider:
    """Query with ``rpm`` and install or remove with ``yum``."""

    rpm_bin: str = "rpm"
    installer_bin: str = "yum"

    def installed(self, name: str) -> bool:
        """Return ``True`` when package *name* is installed."""
        result = self._run_command(
            [self.rpm_bin, "-q", name],
            check=False,
            error_prefix=f"{self.rpm_bin} -q {name}",
            dry_run=False,
        )
        return result.returncode == 0

    def installed_packages(self, names: Iterable[str]) -> set[str]:
        """Return the subset of *names* that is installed."""
        return {name for name in names if self.installed(name)}

    def install(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Install package *name*."""
        LOGGER.info("Installing package %s", name)
        return self._run_command(
            [self.installer_bin, "-q", "-y", "install", name],
            check=True,
            error_prefix=f"{self.installer_bin} install {name}",
            dry_run=dry_run,
        )

    def remove(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Remove package *name*."""
        LOGGER.info("Removing package %s", name)
        return self._run_command(
            [self.installer_bin, "-q", "-y", "remove", name],
            check=True,
            error_prefix=f"{self.installer_bin} remove {name}",
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PackageError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise PackageError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["PackageError", "PackageProvider"]
