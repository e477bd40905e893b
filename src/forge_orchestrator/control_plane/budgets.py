"""
Append-only spend ledger and budget status for projects.

This module keeps the cost side of routing honest:
- every worker call and arbitration attempt appends one ``BudgetEntry``
- the running total is always recomputed from the entries, never mutated
- ``status`` derives daily/monthly spend, the budget ratio that drives premium
  cut-off, and threshold recommendations

It integrates with:
- the coordination store's append-only queues for persistence
- `MetricsRegistry` for spend counters
- `structlog` for machine-parseable threshold logs
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from forge_orchestrator.constants import (
    BUDGET_CRITICAL_RATIO,
    BUDGET_LOG_KEY_PREFIX,
    BUDGET_WARNING_RATIO,
)
from forge_orchestrator.coordination.store import Clock, CoordinationStore
from forge_orchestrator.domain.errors import BudgetExceededError
from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.models import BudgetEntry, BudgetPurpose, Project, Tier
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry


class RecommendationSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class BudgetRecommendation:
    severity: RecommendationSeverity
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    """Spend snapshot for one project at one instant."""

    project_id: str
    daily_spent_usd: float
    monthly_spent_usd: float
    total_spent_usd: float
    daily_budget_usd: float
    monthly_budget_usd: float
    recommendations: tuple[BudgetRecommendation, ...] = ()

    @property
    def daily_remaining_usd(self) -> float:
        return max(0.0, self.daily_budget_usd - self.daily_spent_usd)

    @property
    def monthly_remaining_usd(self) -> float:
        return max(0.0, self.monthly_budget_usd - self.monthly_spent_usd)

    @property
    def daily_ratio(self) -> float:
        return _ratio(self.daily_spent_usd, self.daily_budget_usd)

    @property
    def monthly_ratio(self) -> float:
        return _ratio(self.monthly_spent_usd, self.monthly_budget_usd)

    @property
    def ratio(self) -> float:
        return max(self.daily_ratio, self.monthly_ratio)

    @property
    def exceeded(self) -> bool:
        return self.ratio >= 1.0

    def to_dict(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "daily_spent_usd": self.daily_spent_usd,
            "monthly_spent_usd": self.monthly_spent_usd,
            "total_spent_usd": self.total_spent_usd,
            "daily_remaining_usd": self.daily_remaining_usd,
            "monthly_remaining_usd": self.monthly_remaining_usd,
            "ratio": self.ratio,
            "recommendations": [
                {"severity": item.severity.value, "code": item.code, "message": item.message}
                for item in self.recommendations
            ],
        }


class BudgetLedger:
    """Append-only cost log per project, stored as a coordination-store queue."""

    def __init__(
        self,
        store: CoordinationStore,
        *,
        clock: Clock = time.time,
        warning_ratio: float = BUDGET_WARNING_RATIO,
        critical_ratio: float = BUDGET_CRITICAL_RATIO,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if not 0.0 < warning_ratio < critical_ratio <= 1.0:
            raise ValueError("expected 0 < warning_ratio < critical_ratio <= 1")
        self._store = store
        self._clock = clock
        self._warning_ratio = warning_ratio
        self._critical_ratio = critical_ratio
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def append(self, entry: BudgetEntry) -> None:
        self._store.push(_log_key(entry.project_id), entry.to_json())
        if self._metrics is not None:
            self._metrics.inc(
                MetricName.SPEND_USD,
                entry.cost_usd,
                labels={"tier": entry.tier.value, "purpose": entry.purpose.value},
            )
        self._logger.debug(
            "budget_entry_appended",
            project_id=entry.project_id,
            task_id=entry.task_id,
            tier=entry.tier.value,
            purpose=entry.purpose.value,
            cost_usd=entry.cost_usd,
        )

    def record_usage(
        self,
        *,
        project_id: str,
        tier: Tier,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
        task_id: str | None = None,
        purpose: BudgetPurpose = BudgetPurpose.TASK,
    ) -> BudgetEntry:
        entry = BudgetEntry(
            id=new_id(EntityKind.BUDGET_ENTRY),
            project_id=project_id,
            tier=tier,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost_usd,
            timestamp=datetime.fromtimestamp(self._clock(), tz=UTC),
            task_id=task_id,
            purpose=purpose,
        )
        self.append(entry)
        return entry

    def entries(self, project_id: str) -> tuple[BudgetEntry, ...]:
        return tuple(
            BudgetEntry.from_json(raw) for raw in self._store.peek_all(_log_key(project_id))
        )

    def running_total(self, project_id: str) -> float:
        return math.fsum(entry.cost_usd for entry in self.entries(project_id))

    def status(self, project: Project, now: datetime | None = None) -> BudgetStatus:
        instant = now if now is not None else datetime.fromtimestamp(self._clock(), tz=UTC)
        instant = instant.astimezone(UTC)
        entries = self.entries(project.id)
        daily = math.fsum(
            entry.cost_usd for entry in entries if entry.timestamp.date() == instant.date()
        )
        monthly = math.fsum(
            entry.cost_usd
            for entry in entries
            if (entry.timestamp.year, entry.timestamp.month) == (instant.year, instant.month)
        )
        status = BudgetStatus(
            project_id=project.id,
            daily_spent_usd=daily,
            monthly_spent_usd=monthly,
            total_spent_usd=math.fsum(entry.cost_usd for entry in entries),
            daily_budget_usd=project.daily_budget_usd,
            monthly_budget_usd=project.monthly_budget_usd,
        )
        recommendations = self._recommendations(status)
        if recommendations:
            self._logger.info(
                "budget_threshold_reached",
                project_id=project.id,
                ratio=status.ratio,
                codes=[item.code for item in recommendations],
            )
        return replace(status, recommendations=recommendations)

    def ensure_within_budget(self, project: Project, now: datetime | None = None) -> BudgetStatus:
        """Return the status, raising ``BudgetExceededError`` once the ratio reaches 1.0."""
        status = self.status(project, now)
        if status.exceeded:
            raise BudgetExceededError(project_id=project.id, ratio=status.ratio)
        return status

    def _recommendations(self, status: BudgetStatus) -> tuple[BudgetRecommendation, ...]:
        out: list[BudgetRecommendation] = []
        if status.daily_ratio >= self._critical_ratio:
            out.append(
                BudgetRecommendation(
                    RecommendationSeverity.CRITICAL,
                    "daily_budget_critical",
                    f"daily spend at {status.daily_ratio:.0%}; route new work to cheaper tiers",
                )
            )
        elif status.daily_ratio >= self._warning_ratio:
            out.append(
                BudgetRecommendation(
                    RecommendationSeverity.WARNING,
                    "daily_budget_warning",
                    f"daily spend at {status.daily_ratio:.0%}; consider cost_optimized routing",
                )
            )
        if status.monthly_ratio >= self._critical_ratio:
            out.append(
                BudgetRecommendation(
                    RecommendationSeverity.CRITICAL,
                    "monthly_budget_critical",
                    f"monthly spend at {status.monthly_ratio:.0%}",
                )
            )
        return tuple(out)


def _log_key(project_id: str) -> str:
    return f"{BUDGET_LOG_KEY_PREFIX}:{project_id}"


def _ratio(spent: float, budget: float) -> float:
    if budget <= 0:
        return 1.0 if spent > 0 else 0.0
    return spent / budget


__all__ = [
    "BudgetLedger",
    "BudgetRecommendation",
    "BudgetStatus",
    "RecommendationSeverity",
]
