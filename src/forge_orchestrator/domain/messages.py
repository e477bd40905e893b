"""Queue messages exchanged between the dispatcher, ledger writer and arbitrator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from forge_orchestrator.domain.ids import EntityKind
from forge_orchestrator.domain.models import (
    CanonicalModel,
    JSONValue,
    Tier,
    _as_datetime,
    _as_enum,
    _as_float,
    _as_id,
    _as_int,
    _as_json_object,
    _as_optional_str,
    _expect_object,
)


class TaskOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class TaskResultMessage(CanonicalModel):
    """Published when a worker call finishes; consumed by the ledger writer."""

    id: str
    project_id: str
    task_id: str
    tier: Tier
    outcome: TaskOutcome
    finished_at: datetime
    output: dict[str, JSONValue] = field(default_factory=dict)
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    error: str | None = None

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "TaskResultMessage.id", EntityKind.MESSAGE)
        self.project_id = _as_id(
            self.project_id, "TaskResultMessage.project_id", EntityKind.PROJECT
        )
        self.task_id = _as_id(self.task_id, "TaskResultMessage.task_id", EntityKind.TASK)
        self.tier = _as_enum(Tier, self.tier, "TaskResultMessage.tier")
        self.outcome = _as_enum(TaskOutcome, self.outcome, "TaskResultMessage.outcome")
        self.finished_at = _as_datetime(self.finished_at, "TaskResultMessage.finished_at")
        self.output = _as_json_object(self.output, "TaskResultMessage.output")
        self.tokens_in = _as_int(self.tokens_in, "TaskResultMessage.tokens_in", minimum=0)
        self.tokens_out = _as_int(self.tokens_out, "TaskResultMessage.tokens_out", minimum=0)
        self.cost_usd = _as_float(self.cost_usd, "TaskResultMessage.cost_usd", minimum=0.0)
        self.error = _as_optional_str(self.error, "TaskResultMessage.error")

    @property
    def succeeded(self) -> bool:
        return self.outcome is TaskOutcome.SUCCEEDED

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskResultMessage:
        parsed = _expect_object(
            data,
            "TaskResultMessage",
            required={"id", "project_id", "task_id", "tier", "outcome", "finished_at"},
            optional={"output", "tokens_in", "tokens_out", "cost_usd", "error"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class ConflictMessage(CanonicalModel):
    """Resolution request for one recorded conflict."""

    project_id: str
    conflict_id: str

    def __post_init__(self) -> None:
        self.project_id = _as_id(self.project_id, "ConflictMessage.project_id", EntityKind.PROJECT)
        self.conflict_id = _as_id(
            self.conflict_id, "ConflictMessage.conflict_id", EntityKind.CONFLICT
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ConflictMessage:
        parsed = _expect_object(data, "ConflictMessage", required={"project_id", "conflict_id"})
        return cls(**parsed)  # type: ignore[arg-type]


__all__ = ["ConflictMessage", "TaskOutcome", "TaskResultMessage"]
