"""Unit tests for the task dispatcher loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from conftest import FakeClock, task_spec
from forge_orchestrator.config.schema import default_config
from forge_orchestrator.constants import DEFAULT_LEDGER_MAX_ATTEMPTS, DEFAULT_MAX_TASK_ATTEMPTS
from forge_orchestrator.control_plane.dispatcher import DispatcherSettings, ProjectRunResult
from forge_orchestrator.control_plane.locks import lock_key
from forge_orchestrator.coordination.store import CoordinationStore, InMemoryCoordinationStore
from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.messages import TaskOutcome, TaskResultMessage
from forge_orchestrator.domain.models import (
    ConflictKind,
    ConflictStatus,
    IncidentKind,
    ProjectPhase,
    TaskStatus,
    Tier,
    TierHealth,
)
from forge_orchestrator.observability.metrics import MetricName
from forge_orchestrator.runtime import Orchestrator
from forge_orchestrator.synthesis_plane.interfaces import (
    TierInvocation,
    WorkerRequest,
    WorkerResult,
    WorkerStatus,
)
from forge_orchestrator.synthesis_plane.offline import DeterministicWorker, ScriptedTierInvoker

OrchestratorFactory = Callable[..., Orchestrator]


async def _run(orchestrator: Orchestrator, project_id: str) -> ProjectRunResult:
    return await asyncio.wait_for(orchestrator.run_project(project_id), timeout=30.0)


def test_settings_reject_non_positive_values() -> None:
    with pytest.raises(ValueError, match="max_concurrency_per_project"):
        DispatcherSettings(max_concurrency_per_project=0)
    with pytest.raises(ValueError, match="stage_deadline_seconds"):
        DispatcherSettings(stage_deadline_seconds=0.0)


def test_settings_from_config_reads_dispatcher_and_sweep_interval() -> None:
    config = default_config()
    config["dispatcher"]["max_concurrency_per_project"] = 2
    config["dispatcher"]["stage_deadline_seconds"] = 90
    config["locks"]["sweep_interval_seconds"] = 7.5

    settings = DispatcherSettings.from_config(config)

    assert settings.max_concurrency_per_project == 2
    assert settings.stage_deadline_seconds == 90.0
    assert settings.sweep_interval_seconds == 7.5


@pytest.mark.asyncio
async def test_empty_project_walks_all_stages(make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    project_id = orchestrator.operator.create_project("empty").project.id

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert result.current_stage == 10
    state = orchestrator.ledger.get_project_state(project_id)
    assert all(stage.completed_at is not None for stage in state.stages)


@pytest.mark.asyncio
async def test_tasks_run_in_stage_order_and_record_metrics(
    make_orchestrator: OrchestratorFactory,
) -> None:
    worker = DeterministicWorker()
    orchestrator = make_orchestrator(worker=worker)
    project_id = orchestrator.operator.create_project(
        "ordered",
        stage_tasks={
            7: [task_spec("develop", "/src/app.py")],
            2: [task_spec("secure", "/config/security.yaml")],
        },
    ).project.id

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert [request.payload["label"] for request in worker.calls] == ["secure", "develop"]
    assert [request.stage for request in worker.calls] == [2, 7]
    state = orchestrator.ledger.get_project_state(project_id)
    developed = state.tasks_in_stage(7)[0]
    assert developed.content_for("/src/app.py") == "// develop: /src/app.py\n"
    assert orchestrator.locks.leases(project_id) == []
    assert orchestrator.metrics.counter_total(MetricName.TASK_ATTEMPTS) == 2.0
    assert orchestrator.budgets.running_total(project_id) > 0.0


@pytest.mark.asyncio
async def test_concurrency_cap_limits_in_flight_tasks(
    make_orchestrator: OrchestratorFactory,
) -> None:
    in_flight = 0
    peak = 0

    class _Tracking(DeterministicWorker):
        async def execute(self, request: WorkerRequest) -> WorkerResult:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0)
                return await DeterministicWorker.execute(self, request)
            finally:
                in_flight -= 1

    orchestrator = make_orchestrator(
        worker=_Tracking(), overrides={"dispatcher": {"max_concurrency_per_project": 2}}
    )
    specs = [task_spec(f"t{index}", f"/src/file{index}.py") for index in range(5)]
    project_id = orchestrator.operator.create_project("capped", stage_tasks={7: specs}).project.id

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert 1 <= peak <= 2


@pytest.mark.asyncio
async def test_cross_stage_lock_holder_blocks_project(
    make_orchestrator: OrchestratorFactory,
) -> None:
    orchestrator = make_orchestrator()
    state = orchestrator.operator.create_project(
        "crossed",
        stage_tasks={1: [task_spec("early", "/shared.py")], 2: [task_spec("late", "/shared.py")]},
    )
    project_id = state.project.id
    late = state.tasks_in_stage(2)[0].id
    orchestrator.locks.acquire(project_id, "/shared.py", late)

    result = await _run(orchestrator, project_id)

    assert result.phase is ProjectPhase.BLOCKED
    assert result.incidents[-1].kind is IncidentKind.CROSS_STAGE_CONFLICT
    (conflict,) = orchestrator.operator.list_conflicts(project_id)
    assert conflict.status is ConflictStatus.FAILED


@pytest.mark.asyncio
async def test_foreign_lock_holder_blocks_project(make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    project_id = orchestrator.operator.create_project(
        "foreign", stage_tasks={1: [task_spec("only", "/shared.py")]}
    ).project.id
    orchestrator.locks.acquire(project_id, "/shared.py", "external-editor")

    result = await _run(orchestrator, project_id)

    assert result.phase is ProjectPhase.BLOCKED
    assert result.incidents[-1].kind is IncidentKind.CROSS_STAGE_CONFLICT
    assert orchestrator.operator.list_conflicts(project_id) == []


@dataclass(slots=True)
class _LeaseStealingWorker:
    """Drops the task's lease behind the dispatcher's back on the first call."""

    store: CoordinationStore | None = None
    calls: list[WorkerRequest] = field(default_factory=list)

    async def execute(self, request: WorkerRequest) -> WorkerResult:
        self.calls.append(request)
        if len(self.calls) == 1 and self.store is not None:
            for path in request.target_files:
                key = lock_key(request.project_id, path)
                raw = self.store.get(key)
                if raw is not None:
                    self.store.delete_if_equal(key, raw)
        return WorkerResult(
            status=WorkerStatus.SUCCEEDED,
            output={
                "files": {path: f"attempt {len(self.calls)}\n" for path in request.target_files}
            },
            tokens_in=10,
            tokens_out=10,
        )


@pytest.mark.asyncio
async def test_result_with_lost_lease_is_discarded_and_retried(
    make_orchestrator: OrchestratorFactory,
) -> None:
    worker = _LeaseStealingWorker()
    orchestrator = make_orchestrator(worker=worker)
    worker.store = orchestrator.store
    project_id = orchestrator.operator.create_project(
        "stolen", stage_tasks={1: [task_spec("victim", "/src/a.py")]}
    ).project.id

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert len(worker.calls) == 2
    task = orchestrator.ledger.get_project_state(project_id).tasks_in_stage(1)[0]
    assert task.attempt_count == 1
    assert task.content_for("/src/a.py") == "attempt 2\n"
    assert len(orchestrator.budgets.entries(project_id)) == 2


@pytest.mark.asyncio
async def test_unavailable_tiers_defer_work_until_probe_readmits(
    make_orchestrator: OrchestratorFactory, clock: FakeClock
) -> None:
    invoker = ScriptedTierInvoker(default=TierInvocation(success=True, result="ok"))
    orchestrator = make_orchestrator(invoker=invoker)
    for tier in (Tier.CHEAP, Tier.MID, Tier.PREMIUM):
        for _ in range(5):
            orchestrator.health.record_failure(tier)
    project_id = orchestrator.operator.create_project(
        "outage", stage_tasks={1: [task_spec("patient", "/a.py")]}
    ).project.id
    started = clock.now

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert clock.now - started >= 30.0
    assert Tier.CHEAP in invoker.tiers_called()
    assert orchestrator.health.state(Tier.CHEAP).health is TierHealth.HEALTHY


@pytest.mark.asyncio
async def test_mutually_blocked_tasks_stall_the_stage(
    make_orchestrator: OrchestratorFactory,
) -> None:
    orchestrator = make_orchestrator()
    state = orchestrator.operator.create_project(
        "deadlocked",
        stage_tasks={1: [task_spec("a", "/a.py", "/b.py"), task_spec("b", "/a.py", "/b.py")]},
    )
    project_id = state.project.id
    first, second = (task.id for task in state.tasks_in_stage(1))
    orchestrator.ledger.start_project(project_id)
    for path, blocked in (("/a.py", second), ("/b.py", first)):
        orchestrator.ledger.enqueue_conflict(
            project_id,
            file_path=path,
            competing_task_ids=(first, second),
            kind=ConflictKind.LOCK_CONTENTION,
            stage=1,
            block_task_id=blocked,
        )

    result = await _run(orchestrator, project_id)

    assert result.phase is ProjectPhase.BLOCKED
    incident = result.incidents[-1]
    assert incident.kind is IncidentKind.STAGE_STALLED
    assert set(incident.task_ids) == {first, second}
    state = orchestrator.ledger.get_project_state(project_id)
    assert {task.status for task in state.tasks_in_stage(1)} == {TaskStatus.BLOCKED}


class _ContendedStore(InMemoryCoordinationStore):
    """Loses the next ``losses`` project-state swaps whose new value contains ``marker``."""

    def __init__(self, *, clock: FakeClock, losses: int = 0, marker: str = "") -> None:
        super().__init__(clock=clock)
        self.losses = losses
        self.marker = marker
        self.leases_at_losses: list[list[str]] = []

    def compare_and_swap(self, key: str, expected_version: int, value: str) -> bool:
        if self.losses > 0 and key.endswith(":state") and self.marker in value:
            self.losses -= 1
            self.leases_at_losses.append([record.key for record in self.scan_leases("")])
            return False
        return super().compare_and_swap(key, expected_version, value)


@pytest.mark.asyncio
async def test_project_start_retries_after_losing_the_ledger_race(
    make_orchestrator: OrchestratorFactory, clock: FakeClock
) -> None:
    store = _ContendedStore(clock=clock)
    orchestrator = make_orchestrator(store=store)
    project_id = orchestrator.operator.create_project(
        "crowded", stage_tasks={1: [task_spec("first", "/src/a.py")]}
    ).project.id
    store.losses = 2 * DEFAULT_LEDGER_MAX_ATTEMPTS + 1

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert store.losses == 0


@pytest.mark.asyncio
async def test_lost_ledger_race_inside_a_tick_is_retried_next_tick(
    make_orchestrator: OrchestratorFactory, clock: FakeClock
) -> None:
    store = _ContendedStore(clock=clock, marker=IncidentKind.TASK_FAILED.value)
    worker = DeterministicWorker(failures={"doomed": 99})
    orchestrator = make_orchestrator(worker=worker, store=store)
    project_id = orchestrator.operator.create_project(
        "contested", stage_tasks={1: [task_spec("doomed", "/src/a.py")]}
    ).project.id
    store.losses = DEFAULT_LEDGER_MAX_ATTEMPTS

    result = await _run(orchestrator, project_id)

    assert result.phase is ProjectPhase.BLOCKED
    assert result.incidents[-1].kind is IncidentKind.TASK_FAILED
    assert store.losses == 0
    assert orchestrator.locks.leases(project_id) == []


@pytest.mark.asyncio
async def test_leases_are_held_until_the_ledger_records_the_result(
    make_orchestrator: OrchestratorFactory, clock: FakeClock
) -> None:
    store = _ContendedStore(clock=clock)

    class _Contending(DeterministicWorker):
        async def execute(self, request: WorkerRequest) -> WorkerResult:
            # The first write after this call is the ledger writer's drain.
            store.losses = DEFAULT_LEDGER_MAX_ATTEMPTS
            return await DeterministicWorker.execute(self, request)

    worker = _Contending()
    orchestrator = make_orchestrator(worker=worker, store=store)
    project_id = orchestrator.operator.create_project(
        "patient writer", stage_tasks={1: [task_spec("held", "/src/a.py")]}
    ).project.id

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert len(worker.calls) == 1
    held = lock_key(project_id, "/src/a.py")
    assert len(store.leases_at_losses) == DEFAULT_LEDGER_MAX_ATTEMPTS
    assert all(held in keys for keys in store.leases_at_losses)
    task = orchestrator.ledger.get_project_state(project_id).tasks_in_stage(1)[0]
    assert task.attempt_count == 0
    assert orchestrator.locks.leases(project_id) == []


@pytest.mark.asyncio
async def test_sweep_spares_a_running_task_whose_result_is_queued(
    make_orchestrator: OrchestratorFactory, clock: FakeClock
) -> None:
    store = _ContendedStore(clock=clock)
    worker = DeterministicWorker()
    orchestrator = make_orchestrator(worker=worker, store=store)
    state = orchestrator.operator.create_project(
        "handed over", stage_tasks={1: [task_spec("elsewhere", "/src/a.py")]}
    )
    project_id = state.project.id
    task_id = state.tasks_in_stage(1)[0].id
    orchestrator.ledger.start_project(project_id)
    # Another replica ran the task, published its result and let its lease go.
    orchestrator.ledger.mark_task_running(
        project_id, task_id, worker="replica-b", tier=Tier.CHEAP
    )
    orchestrator.writer.publish(
        TaskResultMessage(
            id=new_id(EntityKind.MESSAGE),
            project_id=project_id,
            task_id=task_id,
            tier=Tier.CHEAP,
            outcome=TaskOutcome.SUCCEEDED,
            finished_at=datetime.fromtimestamp(clock.now, tz=UTC),
            output={"files": {"/src/a.py": "from replica b\n"}},
            tokens_in=4,
            tokens_out=4,
        )
    )
    store.losses = DEFAULT_LEDGER_MAX_ATTEMPTS

    result = await _run(orchestrator, project_id)

    assert result.completed
    assert worker.calls == []
    task = orchestrator.ledger.get_project_state(project_id).tasks_in_stage(1)[0]
    assert task.attempt_count == 0
    assert task.content_for("/src/a.py") == "from replica b\n"


@dataclass(slots=True)
class _NonFiniteWorker:
    """Reports success with output that cannot be serialized as JSON."""

    calls: list[WorkerRequest] = field(default_factory=list)

    async def execute(self, request: WorkerRequest) -> WorkerResult:
        self.calls.append(request)
        return WorkerResult(
            status=WorkerStatus.SUCCEEDED,
            output={"files": {path: float("nan") for path in request.target_files}},
            tokens_in=10,
            tokens_out=10,
        )


@pytest.mark.asyncio
async def test_invalid_worker_output_counts_as_a_failed_attempt(
    make_orchestrator: OrchestratorFactory,
) -> None:
    worker = _NonFiniteWorker()
    orchestrator = make_orchestrator(worker=worker)
    project_id = orchestrator.operator.create_project(
        "garbled", stage_tasks={1: [task_spec("nan", "/src/a.py")]}
    ).project.id

    result = await _run(orchestrator, project_id)

    assert result.phase is ProjectPhase.BLOCKED
    assert result.incidents[-1].kind is IncidentKind.TASK_FAILED
    assert len(worker.calls) == DEFAULT_MAX_TASK_ATTEMPTS
    task = orchestrator.ledger.get_project_state(project_id).tasks_in_stage(1)[0]
    assert task.status is TaskStatus.FAILED
    assert task.last_error is not None
    assert task.last_error.startswith("invalid worker result")
    assert orchestrator.locks.leases(project_id) == []
