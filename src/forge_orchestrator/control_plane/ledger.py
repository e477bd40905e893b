"""
forge-orchestrator — context ledger.

File: src/forge_orchestrator/control_plane/ledger.py
Last updated: 2026-10-19

Purpose
- Single source of truth for Project, Stage, Task, Conflict and Incident
  records. Each project lives in one versioned snapshot in the coordination
  store and every mutation is a compare-and-swap on that snapshot.

What should be included in this file
- The CAS retry loop (exponential backoff with jitter, bounded attempts).
- Project lifecycle transitions (create, start, advance, block, resume, cancel).
- Task transitions driven by worker results and lease loss.
- Conflict registration, queueing and resolution bookkeeping.
- The ledger-write queue consumer (``LedgerWriter``).

Functional requirements
- Stages advance strictly in order and only once every task of the stage is
  completed; stage 10 completing completes the project.
- Side effects outside the snapshot (budget entries, conflict queue messages,
  conflict index keys) happen only after the snapshot CAS succeeded.
- Exhausted CAS retries raise ``LedgerWriteConflictError``; callers re-queue
  the work, never drop it.

Non-functional requirements
- No authoritative state is cached in memory; every operation re-reads.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import structlog

from forge_orchestrator.constants import (
    CONFLICT_INDEX_KEY_PREFIX,
    CONFLICT_QUEUE,
    DEFAULT_LEDGER_BACKOFF_BASE_SECONDS,
    DEFAULT_LEDGER_MAX_ATTEMPTS,
    DEFAULT_MAX_TASK_ATTEMPTS,
    DEFAULT_STORY_POINTS,
    DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD,
    FIRST_STAGE,
    LAST_STAGE,
    PROJECT_STATE_KEY_PREFIX,
    TASK_RESULT_QUEUE,
)
from forge_orchestrator.control_plane.budgets import BudgetLedger
from forge_orchestrator.coordination.store import Clock, CoordinationStore
from forge_orchestrator.domain.errors import (
    ConflictNotFoundError,
    ConflictUnresolvableError,
    CrossStageConflictError,
    LedgerWriteConflictError,
    ProjectNotFoundError,
    StageTransitionError,
    TaskStateError,
)
from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.messages import ConflictMessage, TaskResultMessage
from forge_orchestrator.domain.models import (
    ArbitrationAttempt,
    Conflict,
    ConflictKind,
    ConflictStatus,
    Incident,
    IncidentKind,
    JSONValue,
    Project,
    ProjectPhase,
    ProjectState,
    ProjectStatus,
    RoutingPolicy,
    Stage,
    StageStatus,
    Task,
    TaskStatus,
    Tier,
    payload_files,
)
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry
from forge_orchestrator.planning.stage_plan import StagePlan, load_stage_plan

R = TypeVar("R")

_RESOLVED_CONFLICT_STATUSES = frozenset({ConflictStatus.AUTO_RESOLVED, ConflictStatus.RESOLVED})


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Task registered at project creation: target files plus opaque payload."""

    target_files: tuple[str, ...]
    payload: Mapping[str, JSONValue] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> TaskSpec:
        files = raw.get("target_files", ())
        payload = raw.get("payload", {})
        if isinstance(files, str) or not isinstance(files, Sequence):
            raise ValueError("task spec target_files must be a list of paths")
        if not isinstance(payload, Mapping):
            raise ValueError("task spec payload must be an object")
        return cls(target_files=tuple(str(item) for item in files), payload=dict(payload))


@dataclass(frozen=True, slots=True)
class TaskResultOutcome:
    """What ``record_task_result`` did with one message."""

    task: Task
    applied: bool
    new_conflicts: tuple[Conflict, ...] = ()


def state_key(project_id: str) -> str:
    return f"{PROJECT_STATE_KEY_PREFIX}:{project_id}:state"


def conflict_index_key(conflict_id: str) -> str:
    return f"{CONFLICT_INDEX_KEY_PREFIX}:{conflict_id}"


class ContextLedger:
    """CAS-mutated project snapshots over a ``CoordinationStore``."""

    def __init__(
        self,
        store: CoordinationStore,
        *,
        budgets: BudgetLedger,
        stage_plan: StagePlan | None = None,
        clock: Clock = time.time,
        max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_LEDGER_BACKOFF_BASE_SECONDS,
        max_task_attempts: int = DEFAULT_MAX_TASK_ATTEMPTS,
        retry_backoff_seconds: float = 1.0,
        unrecoverable_incident_threshold: int = DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if max_task_attempts <= 0:
            raise ValueError("max_task_attempts must be > 0")
        if unrecoverable_incident_threshold <= 0:
            raise ValueError("unrecoverable_incident_threshold must be > 0")
        self._store = store
        self._budgets = budgets
        self._stage_plan = stage_plan if stage_plan is not None else load_stage_plan()
        self._clock = clock
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._max_task_attempts = max_task_attempts
        self._retry_backoff = retry_backoff_seconds
        self._incident_threshold = unrecoverable_incident_threshold
        self._sleep = sleep
        self._rng = rng if rng is not None else random.Random()
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def store(self) -> CoordinationStore:
        return self._store

    @property
    def budgets(self) -> BudgetLedger:
        return self._budgets

    @property
    def stage_plan(self) -> StagePlan:
        return self._stage_plan

    @property
    def max_task_attempts(self) -> int:
        return self._max_task_attempts

    # ------------------------------------------------------------------ reads

    def get_project_state(self, project_id: str) -> ProjectState:
        state, _ = self._read(project_id)
        return state

    def get_conflict(self, conflict_id: str) -> Conflict:
        state = self.get_project_state(self.locate_conflict(conflict_id))
        try:
            return state.conflicts[conflict_id]
        except KeyError:
            raise ConflictNotFoundError(conflict_id) from None

    def list_conflicts(self, project_id: str) -> list[Conflict]:
        state = self.get_project_state(project_id)
        return sorted(state.conflicts.values(), key=lambda item: (item.detected_at, item.id))

    def locate_conflict(self, conflict_id: str) -> str:
        project_id = self._store.get(conflict_index_key(conflict_id))
        if project_id is None:
            raise ConflictNotFoundError(conflict_id)
        return project_id

    # -------------------------------------------------------------- lifecycle

    def create_project(
        self,
        *,
        name: str,
        story_points: int = DEFAULT_STORY_POINTS,
        daily_budget_usd: float,
        monthly_budget_usd: float,
        routing_policy: RoutingPolicy = RoutingPolicy.BALANCED,
        stage_tasks: Mapping[int, Sequence[TaskSpec]] | None = None,
    ) -> ProjectState:
        now = self._now()
        project = Project(
            id=new_id(EntityKind.PROJECT),
            name=name,
            story_points=story_points,
            daily_budget_usd=daily_budget_usd,
            monthly_budget_usd=monthly_budget_usd,
            created_at=now,
            updated_at=now,
            routing_policy=routing_policy,
        )

        specs = dict(stage_tasks or {})
        unknown = sorted(ordinal for ordinal in specs if not FIRST_STAGE <= ordinal <= LAST_STAGE)
        if unknown:
            raise ValueError(f"stage_tasks references unknown stages: {unknown}")

        tasks: dict[str, Task] = {}
        stages: list[Stage] = []
        sequence = 0
        for definition in self._stage_plan.stages:
            stage_task_ids: list[str] = []
            for spec in specs.get(definition.ordinal, ()):
                payload = dict(spec.payload)
                payload.setdefault("category", definition.task_category)
                task = Task(
                    id=new_id(EntityKind.TASK),
                    project_id=project.id,
                    stage=definition.ordinal,
                    target_file_paths=spec.target_files,
                    input_payload=payload,
                    # Microsecond offsets keep creation order stable within one instant.
                    created_at=now + timedelta(microseconds=sequence),
                )
                sequence += 1
                tasks[task.id] = task
                stage_task_ids.append(task.id)
            stages.append(
                Stage(
                    ordinal=definition.ordinal,
                    name=definition.name,
                    required_task_ids=tuple(stage_task_ids),
                )
            )

        state = ProjectState(project=project, stages=tuple(stages), tasks=tasks)
        key = state_key(project.id)
        if not self._store.compare_and_swap(key, 0, state.to_json()):
            raise LedgerWriteConflictError(key=key, attempts=1)
        self._logger.info(
            "project_created", project_id=project.id, name=name, task_count=len(tasks)
        )
        return state

    def start_project(self, project_id: str) -> ProjectState:
        def start(state: ProjectState) -> ProjectState:
            project = state.project
            if project.phase is ProjectPhase.STAGE_RUNNING:
                return state
            if project.phase is not ProjectPhase.PLANNING:
                raise StageTransitionError(
                    f"project {project_id} cannot start from phase {project.phase.value}"
                )
            now = self._now()
            project.phase = ProjectPhase.STAGE_RUNNING
            project.current_stage = FIRST_STAGE
            project.updated_at = now
            first = state.stage(FIRST_STAGE)
            first.status = StageStatus.RUNNING
            first.started_at = now
            return state

        state = self._mutate(project_id, start)
        self._logger.info("project_started", project_id=project_id)
        return state

    def transition_stage(self, project_id: str, from_stage: int) -> ProjectState:
        """Advance ``from_stage`` to the next stage; completes the project after the last."""

        def advance(state: ProjectState) -> ProjectState:
            project = state.project
            if project.phase is not ProjectPhase.STAGE_RUNNING:
                raise StageTransitionError(
                    f"project {project_id} is {project.phase.value}, not stage_running"
                )
            if project.current_stage != from_stage:
                raise StageTransitionError(
                    f"project {project_id} is at stage {project.current_stage}, not {from_stage}"
                )
            unfinished = [
                task.id
                for task in state.tasks_in_stage(from_stage)
                if task.status is not TaskStatus.COMPLETED
            ]
            if unfinished:
                raise StageTransitionError(
                    f"stage {from_stage} has {len(unfinished)} unfinished task(s)"
                )

            now = self._now()
            stage = state.stage(from_stage)
            stage.status = StageStatus.COMPLETED
            stage.completed_at = now
            project.updated_at = now
            if from_stage >= LAST_STAGE:
                project.phase = ProjectPhase.COMPLETED
                project.status = ProjectStatus.COMPLETED
            else:
                project.current_stage = from_stage + 1
                following = state.stage(from_stage + 1)
                following.status = StageStatus.RUNNING
                following.started_at = now
            return state

        state = self._mutate(project_id, advance)
        self._logger.info(
            "stage_transitioned",
            project_id=project_id,
            stage=from_stage,
            phase=state.project.phase.value,
        )
        return state

    def block_project(
        self,
        project_id: str,
        *,
        kind: IncidentKind,
        message: str,
        task_ids: Sequence[str] = (),
        conflict_id: str | None = None,
    ) -> Incident:
        def block(state: ProjectState) -> Incident:
            return self._block(
                state, kind=kind, message=message, task_ids=task_ids, conflict_id=conflict_id
            )

        incident = self._mutate(project_id, block)
        self._logger.warning(
            "project_blocked",
            project_id=project_id,
            incident_kind=kind.value,
            reason=message,
            task_ids=list(task_ids),
        )
        return incident

    def resume_project(self, project_id: str) -> ProjectState:
        """Unblock a project.

        Failed tasks of the current stage get a fresh retry budget; blocked tasks
        not waiting on an open conflict return to pending. The stage deadline
        restarts.
        """

        def resume(state: ProjectState) -> ProjectState:
            project = state.project
            if project.phase is not ProjectPhase.BLOCKED:
                raise StageTransitionError(
                    f"project {project_id} is {project.phase.value}, not blocked"
                )
            now = self._now()
            project.blocked_reason = None
            project.updated_at = now
            if project.current_stage == 0:
                project.phase = ProjectPhase.PLANNING
                return state
            project.phase = ProjectPhase.STAGE_RUNNING
            current = state.stage(project.current_stage)
            current.status = StageStatus.RUNNING
            # The stage deadline counts from the resume.
            current.started_at = now
            waiting = {
                task_id
                for conflict in state.conflicts.values()
                if conflict.is_open
                for task_id in conflict.competing_task_ids
            }
            for task in state.tasks_in_stage(project.current_stage):
                if task.status is TaskStatus.FAILED:
                    task.status = TaskStatus.PENDING
                    task.attempt_count = 0
                    task.retry_after = None
                elif task.status is TaskStatus.BLOCKED and task.id not in waiting:
                    task.status = TaskStatus.PENDING
                    task.retry_after = None
            return state

        state = self._mutate(project_id, resume)
        self._logger.info("project_resumed", project_id=project_id)
        return state

    def cancel_project(self, project_id: str) -> ProjectState:
        def cancel(state: ProjectState) -> ProjectState:
            project = state.project
            if project.is_terminal:
                return state
            project.phase = ProjectPhase.CANCELLED
            project.status = ProjectStatus.CANCELLED
            project.updated_at = self._now()
            return state

        state = self._mutate(project_id, cancel)
        self._logger.info("project_cancelled", project_id=project_id)
        return state

    # ------------------------------------------------------------------ tasks

    def mark_task_running(
        self, project_id: str, task_id: str, *, worker: str, tier: Tier
    ) -> Task:
        def mark(state: ProjectState) -> Task:
            project = state.project
            task = state.task(task_id)
            if project.phase is not ProjectPhase.STAGE_RUNNING:
                raise TaskStateError(f"project {project_id} is {project.phase.value}")
            if task.stage != project.current_stage:
                raise TaskStateError(
                    f"task {task_id} belongs to stage {task.stage}, "
                    f"project is at {project.current_stage}"
                )
            if task.status is not TaskStatus.PENDING:
                raise TaskStateError(f"task {task_id} is {task.status.value}, not pending")
            task.status = TaskStatus.RUNNING
            task.assigned_worker = worker
            task.assigned_tier = tier
            task.started_at = self._now()
            task.finished_at = None
            task.retry_after = None
            return task

        return self._mutate(project_id, mark)

    def record_task_result(self, message: TaskResultMessage) -> TaskResultOutcome:
        """Apply a worker result, append its budget entry and detect divergent output."""

        def record(state: ProjectState) -> TaskResultOutcome:
            task = state.task(message.task_id)
            if task.status is not TaskStatus.RUNNING or state.project.is_terminal:
                return TaskResultOutcome(task=task, applied=False)

            task.finished_at = message.finished_at
            task.assigned_tier = message.tier
            if message.succeeded:
                task.status = TaskStatus.COMPLETED
                task.output_payload = dict(message.output)
                task.last_error = None
                conflicts = self._detect_divergence(state, task)
                return TaskResultOutcome(task=task, applied=True, new_conflicts=conflicts)

            self._count_failed_attempt(task, message.error or message.outcome.value)
            return TaskResultOutcome(task=task, applied=True)

        outcome = self._mutate(message.project_id, record)
        # Spend happened whether or not the result is still wanted.
        self._budgets.record_usage(
            project_id=message.project_id,
            tier=message.tier,
            tokens_in=message.tokens_in,
            tokens_out=message.tokens_out,
            cost_usd=message.cost_usd,
            task_id=message.task_id,
        )
        for conflict in outcome.new_conflicts:
            self._publish_conflict(conflict)
        if outcome.applied:
            self._logger.info(
                "task_result_recorded",
                project_id=message.project_id,
                task_id=message.task_id,
                status=outcome.task.status.value,
                attempt_count=outcome.task.attempt_count,
            )
        else:
            self._logger.info(
                "task_result_discarded",
                project_id=message.project_id,
                task_id=message.task_id,
                status=outcome.task.status.value,
            )
        return outcome

    def requeue_task(
        self,
        project_id: str,
        task_id: str,
        *,
        reason: str,
        count_attempt: bool = True,
    ) -> Task:
        """Return a running task to pending (lease lost, deadline, cancellation).

        When ``count_attempt`` is set the abandoned run counts against the retry
        budget and may fail the task.
        """

        def requeue(state: ProjectState) -> Task:
            task = state.task(task_id)
            if task.status is not TaskStatus.RUNNING:
                return task
            task.finished_at = self._now()
            if count_attempt:
                self._count_failed_attempt(task, reason)
            else:
                task.status = TaskStatus.PENDING
                task.assigned_worker = None
                task.last_error = reason
            return task

        task = self._mutate(project_id, requeue)
        self._logger.info(
            "task_requeued",
            project_id=project_id,
            task_id=task_id,
            reason=reason,
            status=task.status.value,
            attempt_count=task.attempt_count,
        )
        return task

    # -------------------------------------------------------------- conflicts

    def enqueue_conflict(
        self,
        project_id: str,
        *,
        file_path: str,
        competing_task_ids: Sequence[str],
        kind: ConflictKind,
        stage: int,
        block_task_id: str | None = None,
    ) -> Conflict:
        """Record a conflict and queue it for arbitration.

        An open conflict over the same path and tasks is returned instead of a
        duplicate. ``block_task_id`` marks the contention loser blocked in the
        same write.
        """

        def register(state: ProjectState) -> tuple[Conflict, bool]:
            existing = _find_conflict(state, file_path, competing_task_ids, open_only=True)
            if existing is None:
                existing = self._new_conflict(
                    state, file_path=file_path, task_ids=competing_task_ids, kind=kind, stage=stage
                )
                created = True
            else:
                created = False
            if block_task_id is not None:
                task = state.task(block_task_id)
                if task.status is TaskStatus.PENDING:
                    task.status = TaskStatus.BLOCKED
            return existing, created

        conflict, created = self._mutate(project_id, register)
        if created:
            self._publish_conflict(conflict)
        return conflict

    def record_cross_stage_conflict(
        self,
        project_id: str,
        *,
        file_path: str,
        competing_task_ids: Sequence[str],
        stage: int,
    ) -> Conflict:
        """Record an unsupported cross-stage collision as failed and block the project."""

        def register(state: ProjectState) -> Conflict:
            conflict = self._new_conflict(
                state,
                file_path=file_path,
                task_ids=competing_task_ids,
                kind=ConflictKind.LOCK_CONTENTION,
                stage=stage,
            )
            conflict.status = ConflictStatus.FAILED
            conflict.note = "cross_stage_conflict"
            conflict.resolved_at = self._now()
            self._block(
                state,
                kind=IncidentKind.CROSS_STAGE_CONFLICT,
                message=str(
                    CrossStageConflictError(
                        f"cross-stage collision on {file_path}", conflict_id=conflict.id
                    )
                ),
                task_ids=competing_task_ids,
                conflict_id=conflict.id,
            )
            return conflict

        conflict = self._mutate(project_id, register)
        self._store.set_if_absent(conflict_index_key(conflict.id), project_id, None)
        self._logger.error(
            "cross_stage_conflict",
            project_id=project_id,
            conflict_id=conflict.id,
            file_path=file_path,
            task_ids=list(competing_task_ids),
        )
        return conflict

    def dequeue_conflict(self) -> ConflictMessage | None:
        raw = self._store.pop(CONFLICT_QUEUE)
        if raw is None:
            return None
        return ConflictMessage.from_json(raw)

    def requeue_conflict_message(self, message: ConflictMessage) -> None:
        self._store.push(CONFLICT_QUEUE, message.to_json())

    def escalate_conflict(
        self, project_id: str, conflict_id: str, *, attempts: Sequence[ArbitrationAttempt]
    ) -> Conflict:
        def escalate(state: ProjectState) -> Conflict:
            conflict = _conflict(state, conflict_id)
            if conflict.is_open:
                conflict.status = ConflictStatus.ESCALATED
                conflict.attempts = tuple(attempts)
            return conflict

        return self._mutate(project_id, escalate)

    def apply_resolution(
        self,
        project_id: str,
        conflict_id: str,
        *,
        output: str,
        tier: Tier | None,
        status: ConflictStatus = ConflictStatus.RESOLVED,
        attempts: Sequence[ArbitrationAttempt] | None = None,
        note: str | None = None,
    ) -> Conflict:
        """Close a conflict with one consolidated output and requeue exactly one task.

        The requeued task is the last non-completed competing task (else the
        last competing task); it carries the result under
        ``input_payload["merged_files"][path]``.
        """
        if status not in _RESOLVED_CONFLICT_STATUSES:
            raise ValueError(f"status must be auto-resolved or resolved, got {status.value}")

        def resolve(state: ProjectState) -> Conflict:
            conflict = _conflict(state, conflict_id)
            if conflict.status in _RESOLVED_CONFLICT_STATUSES:
                return conflict
            now = self._now()
            conflict.status = status
            conflict.resolution_tier = tier
            conflict.resolved_at = now
            conflict.resolved_output = output
            if attempts is not None:
                conflict.attempts = tuple(attempts)
            if note is not None:
                conflict.note = note

            candidates = [
                state.tasks[tid] for tid in conflict.competing_task_ids if tid in state.tasks
            ]
            unfinished = [task for task in candidates if task.status is not TaskStatus.COMPLETED]
            target = (unfinished or candidates or [None])[-1]
            if target is None:
                return conflict
            merged = payload_files(target.input_payload, "merged_files")
            merged[conflict.file_path] = output
            payload = dict(target.input_payload)
            payload["merged_files"] = dict(sorted(merged.items()))
            target.input_payload = payload
            target.status = TaskStatus.PENDING
            target.output_payload = None
            target.retry_after = None
            target.assigned_worker = None
            target.last_error = None
            if conflict.id not in target.resolved_conflict_ids:
                target.resolved_conflict_ids = (*target.resolved_conflict_ids, conflict.id)
            conflict.requeued_task_id = target.id
            return conflict

        conflict = self._mutate(project_id, resolve)
        if self._metrics is not None:
            self._metrics.inc(MetricName.CONFLICTS_CLOSED, labels={"status": status.value})
        self._logger.info(
            "conflict_resolved",
            project_id=project_id,
            conflict_id=conflict_id,
            status=status.value,
            tier=tier.value if tier is not None else None,
            requeued_task_id=conflict.requeued_task_id,
        )
        return conflict

    def fail_conflict(
        self,
        project_id: str,
        conflict_id: str,
        *,
        attempts: Sequence[ArbitrationAttempt],
        note: str = "arbitration exhausted",
    ) -> Conflict:
        """Mark a conflict unresolvable, block its unfinished tasks and the project."""

        def fail(state: ProjectState) -> Conflict:
            conflict = _conflict(state, conflict_id)
            conflict.status = ConflictStatus.FAILED
            conflict.attempts = tuple(attempts)
            conflict.note = note
            conflict.resolved_at = self._now()
            blocked: list[str] = []
            for task_id in conflict.competing_task_ids:
                task = state.tasks.get(task_id)
                if task is not None and task.status is not TaskStatus.COMPLETED:
                    task.status = TaskStatus.BLOCKED
                    blocked.append(task_id)
            self._block(
                state,
                kind=IncidentKind.CONFLICT_UNRESOLVABLE,
                message=str(
                    ConflictUnresolvableError(
                        f"conflict on {conflict.file_path} unresolvable: {note}",
                        conflict_id=conflict.id,
                    )
                ),
                task_ids=blocked or conflict.competing_task_ids,
                conflict_id=conflict.id,
            )
            return conflict

        conflict = self._mutate(project_id, fail)
        if self._metrics is not None:
            self._metrics.inc(MetricName.CONFLICTS_CLOSED, labels={"status": "failed"})
        self._logger.error(
            "conflict_unresolvable",
            project_id=project_id,
            conflict_id=conflict_id,
            attempted_tiers=[tier.value for tier in conflict.attempted_tiers],
        )
        return conflict

    # -------------------------------------------------------------- internals

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    def _read(self, project_id: str) -> tuple[ProjectState, int]:
        versioned = self._store.read_versioned(state_key(project_id))
        if versioned is None:
            raise ProjectNotFoundError(project_id)
        return ProjectState.from_json(versioned.value), versioned.version

    def _mutate(self, project_id: str, mutation: Callable[[ProjectState], R]) -> R:
        key = state_key(project_id)
        for attempt in range(self._max_attempts):
            state, version = self._read(project_id)
            result = mutation(state)
            if self._store.compare_and_swap(key, version, state.to_json()):
                return result
            if self._metrics is not None:
                self._metrics.inc(MetricName.LEDGER_CAS_RETRIES)
            if attempt + 1 < self._max_attempts:
                self._sleep(self._backoff(attempt))
        self._logger.warning(
            "ledger_cas_exhausted", project_id=project_id, attempts=self._max_attempts
        )
        raise LedgerWriteConflictError(key=key, attempts=self._max_attempts)

    def _backoff(self, attempt: int) -> float:
        base = self._backoff_base * (2**attempt)
        return base + self._rng.uniform(0.0, base)

    def _count_failed_attempt(self, task: Task, error: str) -> None:
        task.attempt_count += 1
        task.last_error = error
        task.assigned_worker = None
        if task.attempt_count >= self._max_task_attempts:
            task.status = TaskStatus.FAILED
            task.retry_after = None
            return
        task.status = TaskStatus.PENDING
        delay = self._retry_backoff * (2 ** (task.attempt_count - 1))
        task.retry_after = self._now() + timedelta(seconds=delay)

    def _block(
        self,
        state: ProjectState,
        *,
        kind: IncidentKind,
        message: str,
        task_ids: Sequence[str] = (),
        conflict_id: str | None = None,
    ) -> Incident:
        project = state.project
        now = self._now()
        incident = Incident(
            id=new_id(EntityKind.INCIDENT),
            project_id=project.id,
            kind=kind,
            message=message,
            created_at=now,
            stage=project.current_stage or None,
            task_ids=tuple(dict.fromkeys(task_ids)),
            conflict_id=conflict_id,
        )
        state.incidents = (*state.incidents, incident)
        if project.is_terminal:
            return incident
        project.updated_at = now
        if len(state.incidents) >= self._incident_threshold:
            project.phase = ProjectPhase.FAILED
            project.status = ProjectStatus.FAILED
            project.blocked_reason = f"incident threshold reached: {message}"
        else:
            project.phase = ProjectPhase.BLOCKED
            project.blocked_reason = message
        if project.current_stage:
            state.stage(project.current_stage).status = StageStatus.BLOCKED
        return incident

    def _new_conflict(
        self,
        state: ProjectState,
        *,
        file_path: str,
        task_ids: Sequence[str],
        kind: ConflictKind,
        stage: int,
    ) -> Conflict:
        conflict = Conflict(
            id=new_id(EntityKind.CONFLICT),
            project_id=state.project.id,
            stage=stage,
            file_path=file_path,
            competing_task_ids=tuple(task_ids),
            kind=kind,
            detected_at=self._now(),
        )
        state.conflicts[conflict.id] = conflict
        return conflict

    def _detect_divergence(self, state: ProjectState, task: Task) -> tuple[Conflict, ...]:
        produced = payload_files(task.output_payload)
        found: list[Conflict] = []
        for path in sorted(produced):
            for other in state.tasks_in_stage(task.stage):
                if other.id == task.id or other.status is not TaskStatus.COMPLETED:
                    continue
                theirs = payload_files(other.output_payload).get(path)
                if theirs is None or theirs == produced[path]:
                    continue
                if _find_conflict(state, path, (other.id, task.id), open_only=False) is not None:
                    continue
                found.append(
                    self._new_conflict(
                        state,
                        file_path=path,
                        task_ids=(other.id, task.id),
                        kind=ConflictKind.DIVERGENT_OUTPUT,
                        stage=task.stage,
                    )
                )
        return tuple(found)

    def _publish_conflict(self, conflict: Conflict) -> None:
        self._store.set_if_absent(conflict_index_key(conflict.id), conflict.project_id, None)
        self._store.push(
            CONFLICT_QUEUE,
            ConflictMessage(project_id=conflict.project_id, conflict_id=conflict.id).to_json(),
        )
        if self._metrics is not None:
            self._metrics.inc(MetricName.CONFLICTS_DETECTED, labels={"kind": conflict.kind.value})
        self._logger.info(
            "conflict_detected",
            project_id=conflict.project_id,
            conflict_id=conflict.id,
            kind=conflict.kind.value,
            file_path=conflict.file_path,
            task_ids=list(conflict.competing_task_ids),
        )


class LedgerWriter:
    """Producer/consumer for the ledger-write queue of task results."""

    def __init__(self, ledger: ContextLedger, *, logger: Any | None = None) -> None:
        self._ledger = ledger
        self._store = ledger.store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def publish(self, message: TaskResultMessage) -> None:
        self._store.push(TASK_RESULT_QUEUE, message.to_json())

    def pending(self) -> int:
        return self._store.queue_length(TASK_RESULT_QUEUE)

    def drain(self, max_messages: int | None = None) -> list[TaskResultOutcome]:
        """Apply queued results in order; a lost CAS race re-queues and stops the drain."""
        outcomes: list[TaskResultOutcome] = []
        while max_messages is None or len(outcomes) < max_messages:
            raw = self._store.pop(TASK_RESULT_QUEUE)
            if raw is None:
                break
            message = TaskResultMessage.from_json(raw)
            try:
                outcomes.append(self._ledger.record_task_result(message))
            except LedgerWriteConflictError:
                self._store.push(TASK_RESULT_QUEUE, raw)
                self._logger.warning(
                    "ledger_write_requeued",
                    project_id=message.project_id,
                    task_id=message.task_id,
                )
                break
        return outcomes


def _conflict(state: ProjectState, conflict_id: str) -> Conflict:
    try:
        return state.conflicts[conflict_id]
    except KeyError:
        raise ConflictNotFoundError(conflict_id) from None


def _find_conflict(
    state: ProjectState,
    file_path: str,
    task_ids: Sequence[str],
    *,
    open_only: bool,
) -> Conflict | None:
    for conflict in state.conflicts.values():
        if conflict.file_path != file_path or not conflict.involves(*task_ids):
            continue
        if open_only and not conflict.is_open:
            continue
        return conflict
    return None


__all__ = [
    "ContextLedger",
    "LedgerWriter",
    "TaskResultOutcome",
    "TaskSpec",
    "conflict_index_key",
    "state_key",
]
