"""Read-only process tree inspection through ``/proc``."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

HTTPD_EXECUTABLE = "/usr/sbin/httpd"


class ProcessProbeError(RuntimeError):
    """Raised when the process table cannot be inspected."""


@dataclass(slots=True)
class ProcessProbe:
    """Count the children a supervising process has spawned."""

    proc_root: Path = Path("/proc")

    def count_children(self, parent_pid: int, executable: str = HTTPD_EXECUTABLE) -> int:
        """Return how many processes running *executable* have *parent_pid* as parent."""
        try:
            entries = list(self.proc_root.iterdir())
        except OSError as exc:
            raise ProcessProbeError(f"Unable to list {self.proc_root}: {exc}") from exc
        count = 0
        for entry in entries:
            if not entry.name.isdigit():
                continue
            try:
                cmdline = (entry / "cmdline").read_bytes()
                status = (entry / "status").read_text(encoding="utf-8", errors="replace")
            except (FileNotFoundError, ProcessLookupError, PermissionError):
                # Processes exit while we walk the table.
                continue
            argv0 = cmdline.split(b"\0", 1)[0].decode("utf-8", errors="replace")
            if not argv0.startswith(executable):
                continue
            if _parent_pid(status) == parent_pid:
                count += 1
        return count


def read_pid_file(path: Path) -> int | None:
    """Return the PID stored in *path*, or ``None`` when the file is absent."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ProcessProbeError(f"Unable to read {path}: {exc}") from exc
    try:
        return int(text)
    except ValueError as exc:
        raise ProcessProbeError(f"Invalid PID in {path}: {text!r}") from exc


def _parent_pid(status: str) -> int | None:
    for line in status.splitlines():
        if line.startswith("PPid:"):
            try:
                return int(line.split(":", 1)[1].strip())
            except ValueError:
                return None
    return None


__all__ = ["HTTPD_EXECUTABLE", "ProcessProbe", "ProcessProbeError", "read_pid_file"]
