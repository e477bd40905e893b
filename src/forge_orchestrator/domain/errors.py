"""
forge-orchestrator — orchestration error taxonomy

File: src/forge_orchestrator/domain/errors.py
Last updated: 2026-10-19

Purpose
- Closed set of failure classes raised across the control and integration planes.

Functional requirements
- Every class declares whether it is retryable (recovered internally) and whether
  it is fatal to the task or stage that raised it.
- Fatal classes surface as Blocked/Failed project state plus an incident record,
  never as silently ignored exceptions.
"""

from __future__ import annotations

from typing import ClassVar


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""

    retryable: ClassVar[bool] = False
    fatal: ClassVar[bool] = False


class LockContentionError(OrchestrationError):
    """A file lease is held by another task; always becomes a Conflict."""

    def __init__(self, *, project_id: str, file_path: str, holder_task_id: str | None) -> None:
        self.project_id = project_id
        self.file_path = file_path
        self.holder_task_id = holder_task_id
        super().__init__(
            f"lock on {file_path!r} in {project_id} is held by {holder_task_id or '<unknown>'}"
        )


class TierUnavailableError(OrchestrationError):
    """No routable compute tier remains on the fallback hierarchy."""

    retryable = True

    def __init__(self, message: str, *, requested_tier: str | None = None) -> None:
        self.requested_tier = requested_tier
        super().__init__(message)


class TaskExecutionError(OrchestrationError):
    """Transient worker failure (error, timeout or failed status)."""

    retryable = True

    def __init__(self, message: str, *, task_id: str, attempt: int) -> None:
        self.task_id = task_id
        self.attempt = attempt
        super().__init__(message)


class ConflictUnresolvableError(OrchestrationError):
    """Every arbitration tier failed; the owning tasks block their stage."""

    fatal = True

    def __init__(self, message: str, *, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(message)


class CrossStageConflictError(ConflictUnresolvableError):
    """Two tasks from different stages collided on one path."""


class BudgetExceededError(OrchestrationError):
    """Project spend reached its budget; new task admission halts."""

    def __init__(self, *, project_id: str, ratio: float) -> None:
        self.project_id = project_id
        self.ratio = ratio
        super().__init__(f"project {project_id} budget exhausted (ratio={ratio:.3f})")


class LedgerWriteConflictError(OrchestrationError):
    """Compare-and-swap retries were exhausted for a ledger mutation."""

    retryable = True

    def __init__(self, *, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(f"ledger write for {key!r} lost {attempts} compare-and-swap races")


class StageTransitionError(OrchestrationError, ValueError):
    """Stage advancement requested out of order or before completion."""


class TaskStateError(OrchestrationError, ValueError):
    """Task transition requested from a status that does not allow it."""


class ProjectNotFoundError(OrchestrationError, LookupError):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"unknown project: {project_id}")


class ConflictNotFoundError(OrchestrationError, LookupError):
    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"unknown conflict: {conflict_id}")


__all__ = [
    "BudgetExceededError",
    "ConflictNotFoundError",
    "ConflictUnresolvableError",
    "CrossStageConflictError",
    "LedgerWriteConflictError",
    "LockContentionError",
    "OrchestrationError",
    "ProjectNotFoundError",
    "StageTransitionError",
    "TaskExecutionError",
    "TaskStateError",
    "TierUnavailableError",
]
