"""Unit tests for lease-based file locks."""

from __future__ import annotations

import threading

import pytest

from forge_orchestrator.control_plane.locks import LockManager, LockOutcome, lock_key
from forge_orchestrator.coordination.store import InMemoryCoordinationStore
from forge_orchestrator.domain.errors import LockContentionError
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry

PROJECT = "proj-1"


class _Clock:
    def __init__(self) -> None:
        self.now = 5_000.0

    def __call__(self) -> float:
        return self.now


def _manager(
    clock: _Clock, *, metrics: MetricsRegistry | None = None
) -> tuple[LockManager, InMemoryCoordinationStore]:
    store = InMemoryCoordinationStore(clock=clock)
    return (
        LockManager(
            store, ttl_seconds=10.0, renew_interval_seconds=2.0, clock=clock, metrics=metrics
        ),
        store,
    )


def test_renew_interval_must_stay_below_half_ttl() -> None:
    store = InMemoryCoordinationStore()
    with pytest.raises(ValueError, match="ttl_seconds / 2"):
        LockManager(store, ttl_seconds=10.0, renew_interval_seconds=5.0)


def test_second_holder_is_refused_and_sees_current_holder() -> None:
    metrics = MetricsRegistry()
    locks, _ = _manager(_Clock(), metrics=metrics)

    first = locks.acquire(PROJECT, "/src/app.js", "task-a")
    second = locks.acquire(PROJECT, "/src/app.js", "task-b")

    assert first.granted
    assert second.outcome is LockOutcome.CONFLICT
    assert second.current_holder == "task-a"
    assert metrics.counter_total(MetricName.LOCK_CONTENTION) == 1.0


def test_reacquire_by_same_holder_refreshes_lease() -> None:
    clock = _Clock()
    locks, _ = _manager(clock)
    locks.acquire(PROJECT, "/a", "task-a")
    clock.now += 8.0

    again = locks.acquire(PROJECT, "/a", "task-a")
    assert again.granted and again.lease is not None
    assert again.lease.expires_at == pytest.approx(clock.now + 10.0)


def test_concurrent_acquires_grant_exactly_one_holder() -> None:
    locks, _ = _manager(_Clock())
    barrier = threading.Barrier(8)
    granted: list[str] = []
    guard = threading.Lock()

    def contend(index: int) -> None:
        holder = f"task-{index}"
        barrier.wait()
        if locks.acquire(PROJECT, "/shared.py", holder).granted:
            with guard:
                granted.append(holder)

    threads = [threading.Thread(target=contend, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 1
    assert locks.holder_of(PROJECT, "/shared.py") == granted[0]


def test_release_never_deletes_another_holders_lease() -> None:
    locks, _ = _manager(_Clock())
    locks.acquire(PROJECT, "/a", "task-a")

    assert locks.release(PROJECT, "/a", "task-b") is LockOutcome.OK
    assert locks.holder_of(PROJECT, "/a") == "task-a"
    assert locks.release(PROJECT, "/a", "task-a") is LockOutcome.OK
    assert locks.release(PROJECT, "/a", "task-a") is LockOutcome.OK
    assert locks.holder_of(PROJECT, "/a") is None


def test_expired_lease_is_acquirable_by_next_requester() -> None:
    clock = _Clock()
    locks, _ = _manager(clock)
    locks.acquire(PROJECT, "/a", "task-a")
    clock.now += 10.0

    assert locks.acquire(PROJECT, "/a", "task-b").granted
    assert locks.renew(PROJECT, "/a", "task-a") is LockOutcome.LOST


def test_renew_all_reports_lost_when_any_path_was_taken() -> None:
    clock = _Clock()
    locks, store = _manager(clock)
    locks.acquire_all(PROJECT, ["/b", "/a"], "task-a")
    assert locks.renew_all(PROJECT, ["/a", "/b"], "task-a") is LockOutcome.OK

    raw = store.get(lock_key(PROJECT, "/b"))
    assert raw is not None
    store.delete_if_equal(lock_key(PROJECT, "/b"), raw)
    locks.acquire(PROJECT, "/b", "task-z")
    assert locks.renew_all(PROJECT, ["/a", "/b"], "task-a") is LockOutcome.LOST


def test_acquire_all_rolls_back_on_contention() -> None:
    locks, _ = _manager(_Clock())
    locks.acquire(PROJECT, "/m", "task-holder")

    with pytest.raises(LockContentionError) as excinfo:
        locks.acquire_all(PROJECT, ["/z", "/a", "/m"], "task-b")

    assert excinfo.value.file_path == "/m"
    assert excinfo.value.holder_task_id == "task-holder"
    assert locks.holder_of(PROJECT, "/a") is None
    assert locks.holder_of(PROJECT, "/z") is None


def test_sweep_reports_running_tasks_that_lost_leases() -> None:
    clock = _Clock()
    metrics = MetricsRegistry()
    locks, _ = _manager(clock, metrics=metrics)
    locks.acquire_all(PROJECT, ["/a"], "task-a")
    locks.acquire_all(PROJECT, ["/b"], "task-b")

    clock.now += 6.0
    locks.renew_all(PROJECT, ["/b"], "task-b")
    clock.now += 5.0

    lost = locks.sweep(PROJECT, {"task-a": ["/a"], "task-b": ["/b"]})
    assert [item.task_id for item in lost] == ["task-a"]
    assert lost[0].file_paths == ("/a",)
    assert lost[0].current_holders == (None,)
    assert metrics.counter_total(MetricName.LEASES_EXPIRED) == 1.0
    assert [lease.file_path for lease in locks.leases(PROJECT)] == ["/b"]
