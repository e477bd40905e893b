"""Operator-facing API over the ledger, locks and budgets."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from forge_orchestrator.control_plane.budgets import BudgetLedger, BudgetStatus
from forge_orchestrator.control_plane.ledger import ContextLedger, TaskSpec
from forge_orchestrator.control_plane.locks import LockManager
from forge_orchestrator.domain.models import (
    Conflict,
    ConflictStatus,
    ProjectState,
    RoutingPolicy,
)
from forge_orchestrator.observability.logging import correlation_scope

OPERATOR_NOTE = "operator"


class OperatorAPI:
    """Thin synchronous facade for humans and external tooling."""

    def __init__(
        self,
        *,
        ledger: ContextLedger,
        locks: LockManager,
        budgets: BudgetLedger | None = None,
        default_daily_budget_usd: float,
        default_monthly_budget_usd: float,
        default_routing_policy: RoutingPolicy | str = RoutingPolicy.BALANCED,
        logger: Any | None = None,
    ) -> None:
        self._ledger = ledger
        self._locks = locks
        self._budgets = budgets if budgets is not None else ledger.budgets
        self._default_daily = default_daily_budget_usd
        self._default_monthly = default_monthly_budget_usd
        self._default_policy = RoutingPolicy(default_routing_policy)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def create_project(
        self,
        name: str,
        story_points: int = 8,
        *,
        daily_budget_usd: float | None = None,
        monthly_budget_usd: float | None = None,
        routing_policy: RoutingPolicy | str | None = None,
        stage_tasks: Mapping[int, Sequence[TaskSpec | Mapping[str, object]]] | None = None,
    ) -> ProjectState:
        """Create a project in ``planning``; budgets and policy default to configuration.

        ``stage_tasks`` maps a stage ordinal to task specs, either ``TaskSpec``
        instances or mappings with ``target_files`` and ``payload``.
        """
        specs = {
            int(ordinal): [
                item if isinstance(item, TaskSpec) else TaskSpec.from_mapping(item)
                for item in items
            ]
            for ordinal, items in (stage_tasks or {}).items()
        }
        return self._ledger.create_project(
            name=name,
            story_points=story_points,
            daily_budget_usd=(
                self._default_daily if daily_budget_usd is None else daily_budget_usd
            ),
            monthly_budget_usd=(
                self._default_monthly if monthly_budget_usd is None else monthly_budget_usd
            ),
            routing_policy=(
                self._default_policy if routing_policy is None else RoutingPolicy(routing_policy)
            ),
            stage_tasks=specs,
        )

    def get_project_state(self, project_id: str) -> ProjectState:
        return self._ledger.get_project_state(project_id)

    def list_conflicts(self, project_id: str) -> list[Conflict]:
        return self._ledger.list_conflicts(project_id)

    def force_resolve_conflict(self, conflict_id: str, chosen_output: str) -> Conflict:
        """Close a conflict with operator-chosen content, overriding any arbitration.

        Works on open and failed conflicts; the project must be resumed
        separately if the failure had blocked it.
        """
        project_id = self._ledger.locate_conflict(conflict_id)
        with correlation_scope(project_id=project_id, conflict_id=conflict_id):
            current = self._ledger.get_conflict(conflict_id)
            if current.status in (ConflictStatus.RESOLVED, ConflictStatus.AUTO_RESOLVED):
                self._logger.info("conflict_already_resolved", status=current.status.value)
                return current
            conflict = self._ledger.apply_resolution(
                project_id,
                conflict_id,
                output=chosen_output,
                tier=None,
                status=ConflictStatus.RESOLVED,
                note=OPERATOR_NOTE,
            )
            for task_id in conflict.competing_task_ids:
                self._locks.release(project_id, conflict.file_path, task_id)
            self._logger.info(
                "conflict_force_resolved", requeued_task_id=conflict.requeued_task_id
            )
            return conflict

    def cancel_project(self, project_id: str) -> ProjectState:
        return self._ledger.cancel_project(project_id)

    def resume_project(self, project_id: str) -> ProjectState:
        return self._ledger.resume_project(project_id)

    def budget_status(self, project_id: str) -> BudgetStatus:
        state = self._ledger.get_project_state(project_id)
        return self._budgets.status(state.project)


__all__ = ["OPERATOR_NOTE", "OperatorAPI"]
