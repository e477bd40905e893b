"""
forge-orchestrator — task dispatcher.

File: src/forge_orchestrator/control_plane/dispatcher.py
Last updated: 2026-10-19

Purpose
- Drive one project through its stages: admit pending tasks under file leases,
  route them to a tier, hand them to workers, and react to completions, lost
  leases, conflicts, budget exhaustion, stalls and deadlines.

What should be included in this file
- The per-project state machine loop (planning -> stage_running(n) -> ...).
- Per-tick lease renewal for in-flight tasks and a periodic lease sweep.
- Conversion of lock contention into conflicts, including the unsupported
  cross-stage case.
- Cancellation of in-flight calls when the project is cancelled, a lease is
  lost or the stage deadline is breached.

Functional requirements
- A task is marked running only after it holds every lease it declared.
- Worker results travel through the ledger-write queue, never directly.
- A stage completes only when every task in it is completed; any failed task,
  unresolvable conflict, stall, exhausted budget or deadline breach blocks it.

Non-functional requirements
- Every decision re-reads the ledger; the dispatcher keeps only in-flight
  handles in memory.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from forge_orchestrator.constants import (
    DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS,
    TASK_RESULT_QUEUE,
)
from forge_orchestrator.control_plane.budgets import BudgetLedger
from forge_orchestrator.control_plane.ledger import ContextLedger, LedgerWriter
from forge_orchestrator.control_plane.locks import LockManager, LockOutcome
from forge_orchestrator.control_plane.router import (
    Prober,
    RouteDecision,
    RoutingRequest,
    TierRouter,
)
from forge_orchestrator.coordination.store import Clock
from forge_orchestrator.domain.errors import (
    BudgetExceededError,
    LedgerWriteConflictError,
    LockContentionError,
    StageTransitionError,
    TaskExecutionError,
    TaskStateError,
    TierUnavailableError,
)
from forge_orchestrator.domain.ids import EntityKind, new_id, validate_id
from forge_orchestrator.domain.messages import TaskOutcome, TaskResultMessage
from forge_orchestrator.domain.models import (
    ConflictKind,
    Incident,
    IncidentKind,
    ProjectPhase,
    ProjectState,
    ProjectStatus,
    Task,
    TaskStatus,
)
from forge_orchestrator.integration_plane.arbitrator import ConflictResolver, is_ripe
from forge_orchestrator.observability.logging import correlation_scope
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry
from forge_orchestrator.synthesis_plane.interfaces import WorkerExecutor, WorkerRequest
from forge_orchestrator.utils.concurrency import (
    CancellationToken,
    ConcurrencyCap,
    call_with_deadline,
)

SleepFn = Callable[[float], Awaitable[None]]


class StageOutcome(StrEnum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"
    NOT_RUNNING = "not_running"


@dataclass(frozen=True, slots=True)
class DispatcherSettings:
    max_concurrency_per_project: int = 4
    poll_interval_seconds: float = 0.05
    sweep_interval_seconds: float = DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS
    stage_deadline_seconds: float | None = None
    worker_name: str = "forge-dispatcher"

    def __post_init__(self) -> None:
        if self.max_concurrency_per_project <= 0:
            raise ValueError("max_concurrency_per_project must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if self.stage_deadline_seconds is not None and self.stage_deadline_seconds <= 0:
            raise ValueError("stage_deadline_seconds must be > 0 when set")

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> DispatcherSettings:
        dispatcher = config["dispatcher"]
        deadline = dispatcher.get("stage_deadline_seconds")
        return cls(
            max_concurrency_per_project=int(dispatcher["max_concurrency_per_project"]),
            poll_interval_seconds=float(dispatcher["poll_interval_seconds"]),
            sweep_interval_seconds=float(config["locks"]["sweep_interval_seconds"]),
            stage_deadline_seconds=float(deadline) if deadline is not None else None,
        )


@dataclass(frozen=True, slots=True)
class ProjectRunResult:
    project_id: str
    phase: ProjectPhase
    status: ProjectStatus
    current_stage: int
    incidents: tuple[Incident, ...] = ()

    @property
    def completed(self) -> bool:
        return self.phase is ProjectPhase.COMPLETED


@dataclass(slots=True)
class _Execution:
    """Result of one worker call, before the dispatcher decides to publish it."""

    message: TaskResultMessage | None
    tier_succeeded: bool | None
    elapsed_seconds: float


@dataclass(slots=True)
class _InFlight:
    task_id: str
    file_paths: tuple[str, ...]
    decision: RouteDecision
    token: CancellationToken
    future: asyncio.Task[_Execution]
    last_renewed: float
    lease_lost: bool = False
    abandon_reason: str | None = None


@dataclass(slots=True)
class _StageRun:
    project_id: str
    stage: int
    cap: ConcurrencyCap
    in_flight: dict[str, _InFlight] = field(default_factory=dict)
    # Published results whose leases stay held until the ledger records them.
    recording: dict[str, _InFlight] = field(default_factory=dict)
    last_sweep: float | None = None


class Dispatcher:
    """Asyncio task dispatcher for one or more projects."""

    def __init__(
        self,
        *,
        ledger: ContextLedger,
        locks: LockManager,
        router: TierRouter,
        resolver: ConflictResolver,
        worker: WorkerExecutor,
        writer: LedgerWriter | None = None,
        budgets: BudgetLedger | None = None,
        settings: DispatcherSettings | None = None,
        clock: Clock = time.time,
        sleep: SleepFn = asyncio.sleep,
        prober: Prober | None = None,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._ledger = ledger
        self._locks = locks
        self._router = router
        self._resolver = resolver
        self._worker = worker
        self._writer = writer if writer is not None else LedgerWriter(ledger)
        self._budgets = budgets if budgets is not None else ledger.budgets
        self._settings = settings if settings is not None else DispatcherSettings()
        self._clock = clock
        self._sleep = sleep
        self._prober = prober
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> DispatcherSettings:
        return self._settings

    async def run_project(self, project_id: str) -> ProjectRunResult:
        """Run stages in order until the project completes, blocks, fails or is cancelled."""
        with correlation_scope(project_id=project_id):
            state = self._ledger.get_project_state(project_id)
            while state.project.phase is ProjectPhase.PLANNING:
                try:
                    state = self._ledger.start_project(project_id)
                except LedgerWriteConflictError as exc:
                    self._logger.warning("project_start_deferred", reason=str(exc))
                    await self._sleep(self._settings.poll_interval_seconds)
                    state = self._ledger.get_project_state(project_id)
            while state.project.phase is ProjectPhase.STAGE_RUNNING:
                stage = state.project.current_stage
                outcome = await self.run_stage(project_id, stage)
                if outcome is StageOutcome.COMPLETED:
                    try:
                        self._ledger.transition_stage(project_id, stage)
                    except (StageTransitionError, LedgerWriteConflictError) as exc:
                        # Another replica advanced the stage first, or the advance is retried
                        # once the stage run reports completion again.
                        self._logger.info("stage_transition_skipped", stage=stage, reason=str(exc))
                state = self._ledger.get_project_state(project_id)
                if outcome is not StageOutcome.COMPLETED:
                    break
            self._logger.info(
                "project_run_finished",
                phase=state.project.phase.value,
                stage=state.project.current_stage,
            )
            return ProjectRunResult(
                project_id=project_id,
                phase=state.project.phase,
                status=state.project.status,
                current_stage=state.project.current_stage,
                incidents=state.incidents,
            )

    async def run_stage(self, project_id: str, stage: int) -> StageOutcome:
        run = _StageRun(
            project_id=project_id,
            stage=stage,
            cap=ConcurrencyCap(self._settings.max_concurrency_per_project),
        )
        with correlation_scope(project_id=project_id, stage=stage):
            try:
                while True:
                    try:
                        outcome = await self._tick(run)
                    except LedgerWriteConflictError as exc:
                        # The next tick re-reads the ledger and retries.
                        self._logger.warning("ledger_write_deferred", reason=str(exc))
                        outcome = None
                    if outcome is not None:
                        return outcome
                    await self._sleep(self._settings.poll_interval_seconds)
            finally:
                if run.in_flight:
                    await self._abandon_all(run, reason="dispatcher_stopped", requeue=True)
                self._release_recording(run)

    # ------------------------------------------------------------------ tick

    async def _tick(self, run: _StageRun) -> StageOutcome | None:
        self._reap(run)
        self._writer.drain()
        self._renew_leases(run)
        self._sweep(run)
        if self._prober is not None and self._router.health.probe_due():
            await self._router.health.probe(self._prober)
        await self._resolver.resolve_pending()

        state = self._ledger.get_project_state(run.project_id)
        self._release_recorded(run, state)
        project = state.project
        if project.is_terminal or project.current_stage != run.stage:
            self._release_recording(run)
            if run.in_flight:
                await self._abandon_all(run, reason=f"project_{project.phase.value}", requeue=False)
            if project.phase is ProjectPhase.CANCELLED:
                return StageOutcome.CANCELLED
            if project.phase is ProjectPhase.FAILED:
                return StageOutcome.FAILED
            return StageOutcome.NOT_RUNNING
        if project.phase is ProjectPhase.BLOCKED:
            # Let in-flight work land before reporting the block.
            return None if run.in_flight else StageOutcome.BLOCKED
        if project.phase is not ProjectPhase.STAGE_RUNNING:
            return StageOutcome.NOT_RUNNING

        tasks = state.tasks_in_stage(run.stage)
        if (
            not run.in_flight
            and all(task.status is TaskStatus.COMPLETED for task in tasks)
            and not any(conflict.is_open for conflict in state.conflicts_in_stage(run.stage))
        ):
            return StageOutcome.COMPLETED

        failed = [task.id for task in tasks if task.status is TaskStatus.FAILED]
        if failed:
            self._ledger.block_project(
                run.project_id,
                kind=IncidentKind.TASK_FAILED,
                message=f"{len(failed)} task(s) exhausted their retry budget",
                task_ids=failed,
            )
            return None

        if self._deadline_breached(state, run.stage):
            await self._abandon_all(run, reason="stage_deadline", requeue=True)
            self._ledger.block_project(
                run.project_id,
                kind=IncidentKind.STAGE_DEADLINE_EXCEEDED,
                message=f"stage {run.stage} exceeded {self._settings.stage_deadline_seconds}s",
            )
            return None

        try:
            budget = self._budgets.ensure_within_budget(project)
        except BudgetExceededError as exc:
            # In-flight calls still land; admission stops here.
            if not run.in_flight:
                self._ledger.block_project(
                    run.project_id, kind=IncidentKind.BUDGET_EXCEEDED, message=str(exc)
                )
            return None

        admitted = self._admit_pending(run, state, tasks, budget_ratio=budget.ratio)
        if not admitted and not run.in_flight and self._stalled(state, run.stage):
            self._ledger.block_project(
                run.project_id,
                kind=IncidentKind.STAGE_STALLED,
                message=f"stage {run.stage} has no admissible, running or resolvable work",
                task_ids=[task.id for task in tasks if task.status is TaskStatus.BLOCKED],
            )
        return None

    # ------------------------------------------------------------- admission

    def _admit_pending(
        self,
        run: _StageRun,
        state: ProjectState,
        tasks: list[Task],
        *,
        budget_ratio: float,
    ) -> int:
        now = datetime.fromtimestamp(self._clock(), tz=UTC)
        admitted = 0
        for task in tasks:
            if run.cap.available <= 0:
                break
            if task.status is not TaskStatus.PENDING or task.id in run.in_flight:
                continue
            if task.retry_after is not None and task.retry_after > now:
                continue
            if self._admit(run, state, task, budget_ratio=budget_ratio):
                admitted += 1
        return admitted

    def _admit(
        self, run: _StageRun, state: ProjectState, task: Task, *, budget_ratio: float
    ) -> bool:
        try:
            self._locks.acquire_all(run.project_id, task.target_file_paths, task.id)
        except LockContentionError as exc:
            self._on_contention(run, state, task, exc)
            return False

        try:
            decision = self._router.route(
                RoutingRequest.from_task(task),
                policy=state.project.routing_policy,
                budget_ratio=budget_ratio,
            )
        except TierUnavailableError as exc:
            self._locks.release_all(run.project_id, task.target_file_paths, task.id)
            self._logger.info("task_deferred", task_id=task.id, reason=str(exc))
            return False

        try:
            running = self._ledger.mark_task_running(
                run.project_id, task.id, worker=self._settings.worker_name, tier=decision.tier
            )
        except (TaskStateError, LedgerWriteConflictError) as exc:
            self._router.finish(decision, succeeded=None)
            self._locks.release_all(run.project_id, task.target_file_paths, task.id)
            self._logger.info("task_admission_lost", task_id=task.id, reason=str(exc))
            return False

        if not run.cap.try_acquire():
            raise RuntimeError("concurrency cap exhausted after admission check")
        token = CancellationToken()
        future = asyncio.ensure_future(self._execute(running, decision, token))
        run.in_flight[task.id] = _InFlight(
            task_id=task.id,
            file_paths=running.target_file_paths,
            decision=decision,
            token=token,
            future=future,
            last_renewed=self._clock(),
        )
        self._logger.info(
            "task_dispatched",
            task_id=task.id,
            tier=decision.tier.value,
            complexity=decision.complexity,
            attempt=running.attempt_count + 1,
        )
        return True

    def _on_contention(
        self, run: _StageRun, state: ProjectState, task: Task, exc: LockContentionError
    ) -> None:
        holder_id = exc.holder_task_id
        if holder_id is None:
            # Lease vanished between the conditional set and the read; retry next tick.
            return
        holder = state.tasks.get(holder_id)
        if holder is not None and holder.stage == task.stage:
            self._ledger.enqueue_conflict(
                run.project_id,
                file_path=exc.file_path,
                competing_task_ids=(holder_id, task.id),
                kind=ConflictKind.LOCK_CONTENTION,
                stage=task.stage,
                block_task_id=task.id,
            )
            return

        try:
            validate_id(holder_id, EntityKind.TASK)
        except ValueError:
            self._ledger.block_project(
                run.project_id,
                kind=IncidentKind.CROSS_STAGE_CONFLICT,
                message=f"lease on {exc.file_path} held by unrecognised holder {holder_id!r}",
                task_ids=[task.id],
            )
            return
        self._ledger.record_cross_stage_conflict(
            run.project_id,
            file_path=exc.file_path,
            competing_task_ids=(holder_id, task.id),
            stage=task.stage,
        )

    # ------------------------------------------------------------- execution

    async def _execute(
        self, task: Task, decision: RouteDecision, token: CancellationToken
    ) -> _Execution:
        request = WorkerRequest(
            task_id=task.id,
            project_id=task.project_id,
            stage=task.stage,
            payload=dict(task.input_payload),
            target_files=task.target_file_paths,
            tier=decision.tier,
        )
        timeout = self._router.catalog.timeout_for(decision.tier)
        started = self._clock()
        outcome = TaskOutcome.FAILED
        output: dict[str, Any] = {}
        tokens_in = tokens_out = 0
        cost: float | None = None
        error: str | None = None
        try:
            result = await call_with_deadline(self._worker.execute(request), timeout, token)
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            return _Execution(None, None, self._clock() - started)
        except TimeoutError:
            outcome = TaskOutcome.TIMED_OUT
            error = f"worker exceeded {timeout}s on {decision.tier.value}"
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"
        else:
            tokens_in, tokens_out, cost = result.tokens_in, result.tokens_out, result.cost_usd
            if result.succeeded:
                outcome = TaskOutcome.SUCCEEDED
                output = dict(result.output)
            else:
                error = result.error or "worker reported failure"

        if cost is None:
            cost = self._router.estimate_cost(decision.tier, tokens_in, tokens_out)
        try:
            message = self._result_message(
                task, decision, outcome, output, tokens_in, tokens_out, cost, error
            )
        except ValueError as exc:
            outcome = TaskOutcome.FAILED
            error = f"invalid worker result: {exc}"
            cost = self._router.estimate_cost(decision.tier, tokens_in, tokens_out)
            message = self._result_message(
                task, decision, outcome, {}, tokens_in, tokens_out, cost, error
            )

        if error is not None:
            failure = TaskExecutionError(error, task_id=task.id, attempt=task.attempt_count + 1)
            self._logger.warning(
                "task_attempt_failed",
                task_id=failure.task_id,
                attempt=failure.attempt,
                outcome=outcome.value,
                error=str(failure),
            )
        return _Execution(
            message=message,
            tier_succeeded=outcome is TaskOutcome.SUCCEEDED,
            elapsed_seconds=self._clock() - started,
        )

    def _result_message(
        self,
        task: Task,
        decision: RouteDecision,
        outcome: TaskOutcome,
        output: dict[str, Any],
        tokens_in: int,
        tokens_out: int,
        cost: float,
        error: str | None,
    ) -> TaskResultMessage:
        """Build the queued result; raises ``ValueError`` for output that is not valid JSON."""
        return TaskResultMessage(
            id=new_id(EntityKind.MESSAGE),
            project_id=task.project_id,
            task_id=task.id,
            tier=decision.tier,
            outcome=outcome,
            finished_at=datetime.fromtimestamp(self._clock(), tz=UTC),
            output=output,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            error=error,
        )

    def _reap(self, run: _StageRun) -> None:
        for task_id in [key for key, item in run.in_flight.items() if item.future.done()]:
            item = run.in_flight.pop(task_id)
            run.cap.release()
            execution = item.future.result()
            self._router.finish(item.decision, succeeded=execution.tier_succeeded)
            kept = execution.message is not None and not item.lease_lost
            if kept and self._locks.renew_all(
                run.project_id, item.file_paths, task_id
            ) is LockOutcome.LOST:
                item.lease_lost = True
                kept = False

            if kept and execution.message is not None:
                self._writer.publish(execution.message)
                item.last_renewed = self._clock()
                run.recording[task_id] = item
            else:
                self._discard(run, item, execution)
                self._locks.release_all(run.project_id, item.file_paths, task_id)

            if self._metrics is not None and execution.message is not None:
                labels = {"tier": item.decision.tier.value}
                self._metrics.observe(
                    MetricName.TASK_LATENCY_SECONDS, execution.elapsed_seconds, labels=labels
                )
                self._metrics.inc(
                    MetricName.TASK_ATTEMPTS,
                    labels={**labels, "outcome": execution.message.outcome.value},
                )

    def _discard(self, run: _StageRun, item: _InFlight, execution: _Execution) -> None:
        message = execution.message
        if message is not None and (message.tokens_in or message.tokens_out):
            # The call was paid for even though its result is dropped.
            self._budgets.record_usage(
                project_id=run.project_id,
                tier=message.tier,
                tokens_in=message.tokens_in,
                tokens_out=message.tokens_out,
                cost_usd=message.cost_usd,
                task_id=message.task_id,
            )
        try:
            if item.lease_lost:
                self._ledger.requeue_task(
                    run.project_id, item.task_id, reason="lease_lost", count_attempt=True
                )
            elif item.abandon_reason is not None:
                self._ledger.requeue_task(
                    run.project_id, item.task_id, reason=item.abandon_reason, count_attempt=False
                )
        except LedgerWriteConflictError as exc:
            # The task stays running without a lease; the next sweep requeues it.
            self._logger.warning("task_requeue_deferred", task_id=item.task_id, reason=str(exc))
        self._logger.info(
            "task_result_discarded",
            task_id=item.task_id,
            lease_lost=item.lease_lost,
            reason=item.abandon_reason,
        )

    async def _abandon_all(self, run: _StageRun, *, reason: str, requeue: bool) -> None:
        """Cancel every in-flight call, discard its result and reclaim its leases."""
        for item in run.in_flight.values():
            if not requeue:
                item.lease_lost = False
            elif not item.lease_lost:
                item.abandon_reason = reason
            item.token.cancel(reason)
        if run.in_flight:
            await asyncio.gather(
                *(item.future for item in run.in_flight.values()), return_exceptions=True
            )
        for item in list(run.in_flight.values()):
            run.in_flight.pop(item.task_id)
            run.cap.release()
            self._router.finish(item.decision, succeeded=None)
            if item.future.cancelled() or item.future.exception() is not None:
                execution = _Execution(None, None, 0.0)
            else:
                # A call that finished before the cancel landed is dropped as well.
                execution = item.future.result()
            self._discard(run, item, execution)
            self._locks.release_all(run.project_id, item.file_paths, item.task_id)
        self._logger.info("in_flight_abandoned", reason=reason, requeued=requeue)

    # ---------------------------------------------------------------- leases

    def _renew_leases(self, run: _StageRun) -> None:
        now = self._clock()
        interval = self._locks.renew_interval_seconds
        for item in run.in_flight.values():
            if item.lease_lost or item.future.done() or now - item.last_renewed < interval:
                continue
            outcome = self._locks.renew_all(run.project_id, item.file_paths, item.task_id)
            if outcome is LockOutcome.LOST:
                item.lease_lost = True
                item.token.cancel("lease_lost")
            else:
                item.last_renewed = now
        for item in list(run.recording.values()):
            if now - item.last_renewed < interval:
                continue
            outcome = self._locks.renew_all(run.project_id, item.file_paths, item.task_id)
            if outcome is LockOutcome.LOST:
                # The queued result still protects the task from the sweep.
                run.recording.pop(item.task_id)
                self._locks.release_all(run.project_id, item.file_paths, item.task_id)
            else:
                item.last_renewed = now

    def _release_recorded(self, run: _StageRun, state: ProjectState) -> None:
        """Release leases of published results the ledger no longer shows as running."""
        for task_id in list(run.recording):
            task = state.tasks.get(task_id)
            if task is not None and task.status is TaskStatus.RUNNING:
                continue
            item = run.recording.pop(task_id)
            self._locks.release_all(run.project_id, item.file_paths, task_id)

    def _release_recording(self, run: _StageRun) -> None:
        for item in run.recording.values():
            self._locks.release_all(run.project_id, item.file_paths, item.task_id)
        run.recording.clear()

    def _queued_result_task_ids(self) -> set[str]:
        return {
            TaskResultMessage.from_json(raw).task_id
            for raw in self._ledger.store.peek_all(TASK_RESULT_QUEUE)
        }

    def _sweep(self, run: _StageRun) -> None:
        now = self._clock()
        interval = self._settings.sweep_interval_seconds
        if run.last_sweep is not None and now - run.last_sweep < interval:
            return
        run.last_sweep = now
        state = self._ledger.get_project_state(run.project_id)
        # A task whose result waits in the ledger-write queue has finished its run.
        awaiting = self._queued_result_task_ids() | set(run.recording)
        running = {
            task.id: task.target_file_paths
            for task in state.tasks_in_stage(run.stage)
            if task.status is TaskStatus.RUNNING and task.id not in awaiting
        }
        for lost in self._locks.sweep(run.project_id, running):
            item = run.in_flight.get(lost.task_id)
            if item is not None:
                # Requeued once the cancelled call is reaped.
                item.lease_lost = True
                item.token.cancel("lease_lost")
                continue
            self._ledger.requeue_task(
                run.project_id, lost.task_id, reason="lease_expired", count_attempt=True
            )

    # ---------------------------------------------------------------- checks

    def _deadline_breached(self, state: ProjectState, stage: int) -> bool:
        deadline = self._settings.stage_deadline_seconds
        started = state.stage(stage).started_at
        if deadline is None or started is None:
            return False
        return self._clock() - started.timestamp() >= deadline

    def _stalled(self, state: ProjectState, stage: int) -> bool:
        tasks = state.tasks_in_stage(stage)
        if any(task.status in (TaskStatus.PENDING, TaskStatus.RUNNING) for task in tasks):
            return False
        if self._ledger.store.queue_length(TASK_RESULT_QUEUE):
            return False
        return not any(
            conflict.is_open and is_ripe(state, conflict)
            for conflict in state.conflicts_in_stage(stage)
        )


__all__ = [
    "Dispatcher",
    "DispatcherSettings",
    "ProjectRunResult",
    "StageOutcome",
]
