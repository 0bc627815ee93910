"""File based locking primitives for httpdctl.

Locks live under ``runtime_dir`` (``/run/httpdctl`` by default):

* ``httpdctl.lock`` serialises whole convergence passes.
* ``<name>.lock`` serialises an individual reconciler phase (``logs``, ``stats``).
* ``sites/<name>.lock`` serialises administrative start/stop of one site.

Each lock file carries JSON metadata describing the current holder. Lock
files are left behind after release for diagnostics; only the ``flock`` is
dropped.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "httpdctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global, phase and site locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    # ------------------------------------------------------------------
    def global_lock(self, *, timeout: float | None = None) -> AbstractContextManager[LockHandle]:
        """Guard a whole convergence pass."""
        return self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout)

    def reconciler_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Guard a single reconciler phase named *name*."""
        return self._acquire(self.runtime_dir / f"{_safe(name)}.lock", timeout)

    def site_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Guard an administrative action against site *name*."""
        return self._acquire(self.runtime_dir / "sites" / f"{_safe(name)}.lock", timeout)

    @contextmanager
    def mutate_sites(
        self,
        names: list[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-site locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.site_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)
    os.fsync(fd)


def _safe(name: str) -> str:
    return "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError", "GLOBAL_LOCK_NAME"]
