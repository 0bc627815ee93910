"""Tests for MPM selection and capacity tuning."""
from __future__ import annotations

import pytest

from httpdctl.capacity import (
    LISTEN_CORES_BUCKETS_RATIO,
    MpmType,
    ceil_div,
    plan_capacity,
)


def test_threaded_plan_for_typical_instance() -> None:
    """200 concurrent requests on 8 CPUs spread over 16 children of 13 threads."""
    plan = plan_capacity(200, 8, default_prefork=False, mod_php=False)

    assert plan.type is MpmType.EVENT
    assert plan.worker_server_limit == 16
    assert plan.worker_threads_per_child == 13
    assert plan.worker_thread_limit == 13
    assert plan.worker_max_request_workers == 200
    assert plan.worker_max_spare_threads == 20
    assert plan.worker_min_spare_threads == 10
    assert plan.prefork_max_spare_servers == 10
    assert plan.prefork_min_spare_servers == 5
    assert plan.listen_cores_buckets_ratio == LISTEN_CORES_BUCKETS_RATIO
    assert plan.concurrency_per_child == 13


@pytest.mark.parametrize(
    ("default_prefork", "mod_php"),
    [(True, False), (False, True), (True, True)],
)
def test_prefork_forced_by_platform_or_mod_php(default_prefork: bool, mod_php: bool) -> None:
    plan = plan_capacity(200, 8, default_prefork=default_prefork, mod_php=mod_php)

    assert plan.type is MpmType.PREFORK
    assert plan.prefork_max_request_workers == 200
    assert plan.prefork_server_limit == 200
    assert plan.concurrency_per_child == 1


def test_small_instances_fall_back_to_prefork() -> None:
    """Too few requests to fill the minimum number of children selects prefork."""
    plan = plan_capacity(10, 8, default_prefork=False, mod_php=False)

    assert plan.type is MpmType.PREFORK
    assert plan.worker_threads_per_child == 4
    assert plan.worker_server_limit == 3


def test_thread_count_is_capped() -> None:
    plan = plan_capacity(100_000, 1, default_prefork=False, mod_php=False)

    assert plan.type is MpmType.EVENT
    assert plan.worker_threads_per_child == 1000
    assert plan.worker_server_limit == 100
    assert plan.worker_max_spare_threads == 250


@pytest.mark.parametrize("concurrency", [1, 2, 63, 64, 65, 200, 4097])
def test_spare_bounds_stay_ordered(concurrency: int) -> None:
    plan = plan_capacity(concurrency, 4, default_prefork=False, mod_php=False)

    assert plan.worker_server_limit * plan.worker_threads_per_child >= concurrency
    assert plan.worker_max_spare_threads > plan.worker_min_spare_threads >= 1
    assert plan.prefork_max_spare_servers > plan.prefork_min_spare_servers >= 1


def test_plan_is_deterministic() -> None:
    first = plan_capacity(350, 12, default_prefork=False, mod_php=False)
    second = plan_capacity(350, 12, default_prefork=False, mod_php=False)

    assert first == second
    assert first.to_dict()["type"] == "event"


def test_invalid_inputs_raise() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        plan_capacity(0, 8, default_prefork=False, mod_php=False)
    with pytest.raises(ValueError, match="cpu_count"):
        plan_capacity(10, 0, default_prefork=False, mod_php=False)


def test_ceil_div() -> None:
    assert ceil_div(0, 4) == 0
    assert ceil_div(13, 4) == 4
    assert ceil_div(16, 4) == 4
    with pytest.raises(ValueError, match="dividend"):
        ceil_div(-1, 4)
    with pytest.raises(ValueError, match="divisor"):
        ceil_div(4, 0)


def test_plan_bounds_hold_across_the_input_range() -> None:
    """Every concurrency up to 5000 on 1 to 64 CPUs yields a consistent plan."""
    for cpu_count in range(1, 65):
        for concurrency in range(1, 5001):
            plan = plan_capacity(concurrency, cpu_count, default_prefork=False, mod_php=False)
            servers, threads = plan.worker_server_limit, plan.worker_threads_per_child

            assert servers * threads >= concurrency, (concurrency, cpu_count)
            assert 4 <= threads <= 1000, (concurrency, cpu_count)
            assert plan.worker_max_spare_threads > plan.worker_min_spare_threads >= 1
            assert plan.prefork_max_spare_servers > plan.prefork_min_spare_servers >= 1
            expected = MpmType.PREFORK if servers < 16 or threads < 4 else MpmType.EVENT
            assert plan.type is expected, (concurrency, cpu_count)
            assert plan.concurrency_per_child == (1 if expected is MpmType.PREFORK else threads)


@pytest.mark.parametrize("cpu_count", [1, 7, 64])
def test_prefork_platforms_never_select_threads(cpu_count: int) -> None:
    for concurrency in (1, 16, 64, 999, 5000):
        plan = plan_capacity(concurrency, cpu_count, default_prefork=True, mod_php=False)

        assert plan.type is MpmType.PREFORK
        assert plan.prefork_server_limit == concurrency
