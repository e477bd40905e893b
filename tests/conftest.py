"""Shared fixtures: a controllable clock, fake sleeps and wired components."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pytest

from forge_orchestrator.config.schema import default_config, merge_config
from forge_orchestrator.control_plane.budgets import BudgetLedger
from forge_orchestrator.control_plane.ledger import ContextLedger, LedgerWriter, TaskSpec
from forge_orchestrator.control_plane.locks import LockManager
from forge_orchestrator.control_plane.router import TierHealthBoard, TierRouter
from forge_orchestrator.coordination.store import CoordinationStore, InMemoryCoordinationStore
from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.messages import TaskOutcome, TaskResultMessage
from forge_orchestrator.domain.models import ProjectState, RoutingPolicy, Tier
from forge_orchestrator.observability.metrics import MetricsRegistry
from forge_orchestrator.runtime import Orchestrator, build_orchestrator
from forge_orchestrator.synthesis_plane.interfaces import TierInvoker, WorkerExecutor
from forge_orchestrator.synthesis_plane.offline import DeterministicWorker, ScriptedTierInvoker
from forge_orchestrator.synthesis_plane.tier_catalog import default_tier_catalog

START_EPOCH = 1_792_368_000.0  # 2026-10-19T00:00:00Z


class FakeClock:
    def __init__(self, start: float = START_EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_sleep(clock: FakeClock) -> Callable[[float], Any]:
    """Async sleep that moves the fake clock and yields to the event loop."""

    async def sleep(seconds: float) -> None:
        clock.advance(seconds)
        await asyncio.sleep(0)

    return sleep


@dataclass(slots=True)
class Components:
    clock: FakeClock
    store: InMemoryCoordinationStore
    metrics: MetricsRegistry
    budgets: BudgetLedger
    locks: LockManager
    ledger: ContextLedger
    writer: LedgerWriter
    health: TierHealthBoard
    router: TierRouter

    def create_project(
        self,
        stage_tasks: Mapping[int, Iterable[TaskSpec]] | None = None,
        *,
        daily_budget_usd: float = 50.0,
        monthly_budget_usd: float = 1000.0,
        routing_policy: RoutingPolicy = RoutingPolicy.BALANCED,
    ) -> ProjectState:
        return self.ledger.create_project(
            name="demo",
            daily_budget_usd=daily_budget_usd,
            monthly_budget_usd=monthly_budget_usd,
            routing_policy=routing_policy,
            stage_tasks={stage: list(specs) for stage, specs in (stage_tasks or {}).items()},
        )


def task_spec(label: str, *paths: str, content: str | None = None, **extra: Any) -> TaskSpec:
    """Task writing ``paths``; ``content`` fixes what the offline worker writes."""
    payload: dict[str, Any] = {"label": label, **extra}
    if content is not None:
        payload["files"] = {path: content for path in paths}
    return TaskSpec(target_files=tuple(paths), payload=payload)


def complete_task(
    components: Components,
    project_id: str,
    task_id: str,
    files: Mapping[str, str],
    *,
    tier: Tier = Tier.CHEAP,
) -> None:
    """Run one task through running -> completed with the given file output."""
    components.ledger.mark_task_running(project_id, task_id, worker="test", tier=tier)
    components.ledger.record_task_result(
        TaskResultMessage(
            id=new_id(EntityKind.MESSAGE),
            project_id=project_id,
            task_id=task_id,
            tier=tier,
            outcome=TaskOutcome.SUCCEEDED,
            finished_at=datetime.fromtimestamp(components.clock(), tz=UTC),
            output={"files": dict(files)},
            tokens_in=40,
            tokens_out=40,
            cost_usd=0.001,
        )
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def components(clock: FakeClock) -> Components:
    store = InMemoryCoordinationStore(clock=clock)
    metrics = MetricsRegistry()
    budgets = BudgetLedger(store, clock=clock, metrics=metrics)
    locks = LockManager(
        store, ttl_seconds=30.0, renew_interval_seconds=5.0, clock=clock, metrics=metrics
    )
    ledger = ContextLedger(
        store,
        budgets=budgets,
        clock=clock,
        sleep=lambda _seconds: None,
        rng=random.Random(7),
        metrics=metrics,
    )
    health = TierHealthBoard(clock=clock, metrics=metrics)
    router = TierRouter(catalog=default_tier_catalog(), health=health, metrics=metrics)
    return Components(
        clock=clock,
        store=store,
        metrics=metrics,
        budgets=budgets,
        locks=locks,
        ledger=ledger,
        writer=LedgerWriter(ledger),
        health=health,
        router=router,
    )


@pytest.fixture
def make_orchestrator(clock: FakeClock) -> Callable[..., Orchestrator]:
    """Factory for a fully wired replica on the in-memory store and fake clock."""

    def factory(
        *,
        worker: WorkerExecutor | None = None,
        invoker: TierInvoker | None = None,
        overrides: Mapping[str, object] | None = None,
        store: CoordinationStore | None = None,
    ) -> Orchestrator:
        config = merge_config(
            default_config(),
            merge_config(
                {
                    "locks": {
                        "ttl_seconds": 30.0,
                        "renew_interval_seconds": 5.0,
                        "sweep_interval_seconds": 1.0,
                    },
                    "ledger": {"backoff_base_seconds": 0.0},
                },
                overrides or {},
            ),
        )
        return build_orchestrator(
            config,
            worker=worker if worker is not None else DeterministicWorker(),
            invoker=invoker if invoker is not None else ScriptedTierInvoker(),
            store=store if store is not None else InMemoryCoordinationStore(clock=clock),
            clock=clock,
            sleep=make_sleep(clock),
            configure_logs=False,
        )

    return factory
