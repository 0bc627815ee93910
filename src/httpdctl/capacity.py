"""Process capacity planning for Apache multi-processing modules.

A single ``max_concurrency`` knob on each instance is translated into the
MPM choice and every tuning directive the configuration needs. The planner is
a pure function of its inputs so that re-renders are byte-identical.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum

LISTEN_CORES_BUCKETS_RATIO = 8
MAX_SPARE_CONCURRENCY_DIVISOR = 10
MAX_WORKER_MAX_SPARE_THREADS = 250
MAX_PREFORK_MAX_SPARE_CONCURRENCY = 10
MIN_SPARE_CONCURRENCY_DIVISOR = 2
MIN_SPARE_CONCURRENCY = 1
SERVERS_PER_CPU = 1
MIN_SERVERS = 16
MIN_THREADS_PER_CHILD = 4
MAX_THREADS_PER_CHILD = 1000


class MpmType(str, Enum):
    """Apache multi-processing modules."""

    PREFORK = "prefork"
    WORKER = "worker"
    EVENT = "event"


@dataclass(frozen=True, slots=True)
class CapacityPlan:
    """MPM selection with the tuning for both prefork and threaded modules."""

    type: MpmType
    listen_cores_buckets_ratio: int
    prefork_max_spare_servers: int
    prefork_min_spare_servers: int
    prefork_max_request_workers: int
    prefork_server_limit: int
    worker_max_request_workers: int
    worker_max_spare_threads: int
    worker_min_spare_threads: int
    worker_server_limit: int
    worker_thread_limit: int
    worker_threads_per_child: int

    @property
    def concurrency_per_child(self) -> int:
        """Return how many concurrent requests one child process serves."""
        if self.type is MpmType.PREFORK:
            return 1
        return self.worker_threads_per_child

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        data = asdict(self)
        data["type"] = self.type.value
        data["concurrency_per_child"] = self.concurrency_per_child
        return data


def ceil_div(dividend: int, divisor: int) -> int:
    """Integer division rounding up."""
    if dividend < 0:
        raise ValueError(f"dividend < 0: {dividend}")
    if divisor < 1:
        raise ValueError(f"divisor < 1: {divisor}")
    return -(-dividend // divisor)


def plan_capacity(
    max_concurrency: int,
    cpu_count: int,
    *,
    default_prefork: bool,
    mod_php: bool,
) -> CapacityPlan:
    """Compute the MPM and its tuning for *max_concurrency* on *cpu_count* CPUs."""
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be at least 1: {max_concurrency}")
    if cpu_count < 1:
        raise ValueError(f"cpu_count must be at least 1: {cpu_count}")

    threaded_max_spare = min(
        max_concurrency // MAX_SPARE_CONCURRENCY_DIVISOR, MAX_WORKER_MAX_SPARE_THREADS
    )
    prefork_max_spare = min(
        max_concurrency // MAX_SPARE_CONCURRENCY_DIVISOR, MAX_PREFORK_MAX_SPARE_CONCURRENCY
    )
    threaded_min_spare = max(
        ceil_div(threaded_max_spare, MIN_SPARE_CONCURRENCY_DIVISOR), MIN_SPARE_CONCURRENCY
    )
    prefork_min_spare = max(
        ceil_div(prefork_max_spare, MIN_SPARE_CONCURRENCY_DIVISOR), MIN_SPARE_CONCURRENCY
    )
    if threaded_max_spare <= threaded_min_spare:
        threaded_max_spare = threaded_min_spare + 1
    if prefork_max_spare <= prefork_min_spare:
        prefork_max_spare = prefork_min_spare + 1

    servers = max(cpu_count * SERVERS_PER_CPU, MIN_SERVERS)
    threads = ceil_div(max_concurrency, servers)
    if threads < MIN_THREADS_PER_CHILD:
        threads = MIN_THREADS_PER_CHILD
        servers = ceil_div(max_concurrency, threads)
    elif threads > MAX_THREADS_PER_CHILD:
        threads = MAX_THREADS_PER_CHILD
        servers = ceil_div(max_concurrency, threads)
    if servers * threads < max_concurrency:
        raise RuntimeError(
            f"{servers} servers of {threads} threads cannot serve {max_concurrency} concurrent requests"
        )

    if (
        default_prefork
        or mod_php
        or servers < MIN_SERVERS
        or threads < MIN_THREADS_PER_CHILD
    ):
        mpm = MpmType.PREFORK
    else:
        mpm = MpmType.EVENT

    return CapacityPlan(
        type=mpm,
        listen_cores_buckets_ratio=LISTEN_CORES_BUCKETS_RATIO,
        prefork_max_spare_servers=prefork_max_spare,
        prefork_min_spare_servers=prefork_min_spare,
        prefork_max_request_workers=max_concurrency,
        prefork_server_limit=max_concurrency,
        worker_max_request_workers=max_concurrency,
        worker_max_spare_threads=threaded_max_spare,
        worker_min_spare_threads=threaded_min_spare,
        worker_server_limit=servers,
        worker_thread_limit=threads,
        worker_threads_per_child=threads,
    )


__all__ = ["CapacityPlan", "MpmType", "ceil_div", "plan_capacity"]
