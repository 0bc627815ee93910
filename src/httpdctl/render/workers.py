"""Connector worker map (``workers.properties``)."""
from __future__ import annotations

from ..model import Instance
from .writer import ConfWriter

WORKER_HOST = "127.0.0.1"


def build_workers(instance: Instance) -> tuple[bytes, frozenset[int]]:
    """Render the worker map of *instance*.

    Returns the file content and the AJP ports of every enabled worker, which
    the SELinux synchronizer labels for Apache.
    """
    enabled = sorted(
        (worker for worker in instance.workers if worker.enabled),
        key=lambda worker: worker.code,
    )
    out = ConfWriter()
    out.line("worker.list=", ",".join(worker.code for worker in enabled))
    for worker in enabled:
        out.line()
        out.line(f"worker.{worker.code}.type={worker.protocol}")
        out.line(f"worker.{worker.code}.host={WORKER_HOST}")
        out.line(f"worker.{worker.code}.port={worker.port}")
    return out.to_bytes(), frozenset(worker.port for worker in enabled)


__all__ = ["WORKER_HOST", "build_workers"]
