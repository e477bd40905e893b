"""
forge-orchestrator — worker and tier invocation contracts

File: src/forge_orchestrator/synthesis_plane/interfaces.py
Last updated: 2026-10-19

Purpose
- Request/response models and protocols for the two external collaborators the
  orchestrator consumes: workers that execute tasks and compute tiers that
  answer arbitration prompts.

Functional requirements
- ``WorkerExecutor.execute`` is async and returns a ``WorkerResult``; exceptions
  and timeouts are treated by the dispatcher as transient task failures.
- ``TierInvoker.invoke`` is async; ``success=False`` is a hard failure for
  arbitration purposes.

Non-functional requirements
- Make it easy to plug new workers and tiers without touching core logic.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

from forge_orchestrator.domain.models import JSONValue, Tier


class WorkerStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _non_negative_int(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field_name} must be an integer")
    if value < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return value


@dataclass(frozen=True, slots=True)
class WorkerRequest:
    """Unit of work handed to an external worker."""

    task_id: str
    project_id: str
    stage: int
    payload: Mapping[str, JSONValue]
    target_files: tuple[str, ...]
    tier: Tier


@dataclass(frozen=True, slots=True)
class WorkerResult:
    status: WorkerStatus
    output: Mapping[str, JSONValue] = field(default_factory=dict)
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", WorkerStatus(self.status))
        _non_negative_int(self.tokens_in, "WorkerResult.tokens_in")
        _non_negative_int(self.tokens_out, "WorkerResult.tokens_out")
        if self.cost_usd is not None and self.cost_usd < 0:
            raise ValueError("WorkerResult.cost_usd must be >= 0")

    @property
    def succeeded(self) -> bool:
        return self.status is WorkerStatus.SUCCEEDED


@dataclass(frozen=True, slots=True)
class TierInvocation:
    """Raw answer from one compute tier call."""

    success: bool
    result: str = ""
    tokens_in: int = 0
    tokens_out: int = 0

    def __post_init__(self) -> None:
        _non_negative_int(self.tokens_in, "TierInvocation.tokens_in")
        _non_negative_int(self.tokens_out, "TierInvocation.tokens_out")


@runtime_checkable
class WorkerExecutor(Protocol):
    async def execute(self, request: WorkerRequest) -> WorkerResult: ...


@runtime_checkable
class TierInvoker(Protocol):
    async def invoke(self, tier: Tier, prompt: str, timeout_seconds: float) -> TierInvocation: ...


__all__ = [
    "TierInvocation",
    "TierInvoker",
    "WorkerExecutor",
    "WorkerRequest",
    "WorkerResult",
    "WorkerStatus",
]
