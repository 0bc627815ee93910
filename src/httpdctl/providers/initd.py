"""SysV init script provider for CentOS 5 instances (``httpd{N}``)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class InitScriptError(RuntimeError):
    """Raised when init script or chkconfig operations fail."""


@dataclass(slots=True)
class InitScriptProvider:
    """Register and drive ``/etc/rc.d/init.d/httpd{N}`` scripts."""

    chkconfig_bin: str = "chkconfig"
    init_dir: Path = Path("/etc/rc.d/init.d")

    def script_path(self, name: str) -> Path:
        """Return the host path of init script *name*."""
        return self.init_dir / name

    def add(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Register *name* with chkconfig."""
        return self._chkconfig(["--add", name], dry_run=dry_run)

    def on(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start *name* in its default runlevels."""
        return self._chkconfig([name, "on"], dry_run=dry_run)

    def off(self, name: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop starting *name* at boot."""
        return self._chkconfig([name, "off"], dry_run=dry_run)

    def control(
        self, name: str, action: str, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Run ``<init_dir>/<name> <action>``."""
        script = str(self.script_path(name))
        return self._run_command(
            [script, action],
            check=True,
            error_prefix=f"{script} {action}",
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    def _chkconfig(
        self, args: Sequence[str], *, dry_run: bool
    ) -> subprocess.CompletedProcess[str]:
        joined = " ".join(args)
        return self._run_command(
            [self.chkconfig_bin, *args],
            check=True,
            error_prefix=f"{self.chkconfig_bin} {joined}",
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
            raise InitScriptError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise InitScriptError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["InitScriptError", "InitScriptProvider"]
