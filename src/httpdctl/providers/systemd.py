"""Systemd provider for controlling Apache instance units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Enable, control and inspect ``httpd[@name].service`` units."""

    systemctl_bin: str = "systemctl"
    wants_dir: Path = Path("/etc/systemd/system/multi-user.target.wants")

    def is_enabled(self, unit: str) -> bool:
        """Return ``True`` when *unit* is wanted by ``multi-user.target``."""
        link = self.wants_dir / unit
        return link.exists() or link.is_symlink()

    def enabled_units(self) -> list[str]:
        """Return the unit names currently linked into the wants directory."""
        if not self.wants_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.wants_dir.iterdir())

    def enable(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable *unit*."""
        return self._systemctl("enable", unit, dry_run=dry_run)

    def disable(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Disable *unit*."""
        return self._systemctl("disable", unit, dry_run=dry_run)

    def start(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit, dry_run=dry_run)

    def stop(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit, dry_run=dry_run)

    def restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit, dry_run=dry_run)

    def reload_or_restart(
        self, unit: str, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Reload *unit*, restarting it when it is not running."""
        return self._systemctl("reload-or-restart", unit, dry_run=dry_run)

    def main_pid(self, unit: str) -> int | None:
        """Return the supervising PID of *unit*, or ``None`` when it is not running."""
        result = self._run_command(
            [self.systemctl_bin, "show", "--property=MainPID", unit],
            check=True,
            error_prefix=f"{self.systemctl_bin} show {unit}",
            dry_run=False,
        )
        for line in (result.stdout or "").splitlines():
            key, _, value = line.partition("=")
            if key.strip() != "MainPID":
                continue
            try:
                pid = int(value.strip())
            except ValueError as exc:
                raise SystemdError(f"Unexpected MainPID for {unit}: {value.strip()!r}") from exc
            return pid if pid > 0 else None
        raise SystemdError(f"MainPID not reported for {unit}")

    def daemon_reload(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        return self._systemctl("daemon-reload", dry_run=dry_run)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            dry_run=dry_run,
        )

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
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
