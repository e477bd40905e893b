"""
forge-orchestrator — runtime wiring.

File: src/forge_orchestrator/runtime.py
Last updated: 2026-10-19

Purpose
- Build one fully wired orchestrator replica (store, locks, budgets, ledger,
  router, arbitrator, dispatcher, operator API) from a validated configuration.

Functional requirements
- Workers and tier invokers are injected; nothing here talks to a real model.
- Every component shares one clock and one metrics registry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from forge_orchestrator.config.loader import load_config
from forge_orchestrator.config.schema import assert_valid_config
from forge_orchestrator.control_plane.budgets import BudgetLedger
from forge_orchestrator.control_plane.dispatcher import (
    Dispatcher,
    DispatcherSettings,
    ProjectRunResult,
    SleepFn,
)
from forge_orchestrator.control_plane.ledger import ContextLedger, LedgerWriter
from forge_orchestrator.control_plane.locks import LockManager
from forge_orchestrator.control_plane.operator import OperatorAPI
from forge_orchestrator.control_plane.router import Prober, TierHealthBoard, TierRouter
from forge_orchestrator.coordination.sqlite_store import SQLiteCoordinationStore
from forge_orchestrator.coordination.store import (
    Clock,
    CoordinationStore,
    InMemoryCoordinationStore,
)
from forge_orchestrator.domain.models import Tier
from forge_orchestrator.integration_plane.arbitrator import ConflictResolver
from forge_orchestrator.observability.logging import configure_logging
from forge_orchestrator.observability.metrics import MetricsRegistry
from forge_orchestrator.planning.stage_plan import load_stage_plan
from forge_orchestrator.synthesis_plane.interfaces import TierInvoker, WorkerExecutor
from forge_orchestrator.synthesis_plane.tier_catalog import TierCatalog

PROBE_PROMPT = "Reply with the single word: ok"


@dataclass(frozen=True, slots=True)
class Orchestrator:
    """Handles to every component of one replica."""

    config: dict[str, Any]
    store: CoordinationStore
    metrics: MetricsRegistry
    locks: LockManager
    budgets: BudgetLedger
    ledger: ContextLedger
    writer: LedgerWriter
    catalog: TierCatalog
    health: TierHealthBoard
    router: TierRouter
    resolver: ConflictResolver
    dispatcher: Dispatcher
    operator: OperatorAPI

    async def run_project(self, project_id: str) -> ProjectRunResult:
        return await self.dispatcher.run_project(project_id)


def build_store(config: Mapping[str, Any], *, clock: Clock = time.time) -> CoordinationStore:
    store_config = config["store"]
    match store_config["backend"]:
        case "memory":
            return InMemoryCoordinationStore(clock=clock)
        case "sqlite":
            return SQLiteCoordinationStore(
                store_config["sqlite_path"],
                clock=clock,
                busy_timeout_ms=int(store_config["busy_timeout_ms"]),
            )
        case other:
            raise ValueError(f"unsupported store backend: {other!r}")


def tier_prober(invoker: TierInvoker, catalog: TierCatalog) -> Prober:
    """Prober that sends a tiny prompt and treats any successful reply as healthy."""

    async def probe(tier: Tier) -> bool:
        invocation = await asyncio.wait_for(
            invoker.invoke(tier, PROBE_PROMPT, catalog.timeout_for(tier)),
            timeout=catalog.timeout_for(tier),
        )
        return invocation.success

    return probe


def build_orchestrator(
    config: Mapping[str, Any] | None = None,
    *,
    worker: WorkerExecutor,
    invoker: TierInvoker,
    store: CoordinationStore | None = None,
    clock: Clock = time.time,
    sleep: SleepFn = asyncio.sleep,
    configure_logs: bool = True,
) -> Orchestrator:
    """Wire a replica; ``config`` defaults to ``load_config()``."""
    effective = assert_valid_config(config) if config is not None else load_config()
    if configure_logs:
        configure_logging(effective["observability"])

    metrics = MetricsRegistry()
    backend = store if store is not None else build_store(effective, clock=clock)
    locks_config = effective["locks"]
    locks = LockManager(
        backend,
        ttl_seconds=float(locks_config["ttl_seconds"]),
        renew_interval_seconds=float(locks_config["renew_interval_seconds"]),
        clock=clock,
        metrics=metrics,
    )
    budgets_config = effective["budgets"]
    budgets = BudgetLedger(
        backend,
        clock=clock,
        warning_ratio=float(budgets_config["warning_ratio"]),
        critical_ratio=float(budgets_config["critical_ratio"]),
        metrics=metrics,
    )
    ledger_config = effective["ledger"]
    dispatcher_config = effective["dispatcher"]
    ledger = ContextLedger(
        backend,
        budgets=budgets,
        stage_plan=load_stage_plan(effective.get("paths", {}).get("stage_plan")),
        clock=clock,
        max_attempts=int(ledger_config["max_attempts"]),
        backoff_base_seconds=float(ledger_config["backoff_base_seconds"]),
        max_task_attempts=int(dispatcher_config["max_task_attempts"]),
        retry_backoff_seconds=float(dispatcher_config["retry_backoff_seconds"]),
        unrecoverable_incident_threshold=int(
            dispatcher_config["unrecoverable_incident_threshold"]
        ),
        metrics=metrics,
    )
    writer = LedgerWriter(ledger)
    catalog = TierCatalog.from_config(effective["tiers"])
    health_config = effective["tier_health"]
    health = TierHealthBoard(
        failure_threshold=int(health_config["failure_threshold"]),
        window_seconds=float(health_config["window_seconds"]),
        cooldown_seconds=float(health_config["cooldown_seconds"]),
        clock=clock,
        metrics=metrics,
    )
    router = TierRouter.from_config(
        effective["routing"], catalog=catalog, health=health, metrics=metrics
    )
    arbitration_config = effective["arbitration"]
    resolver = ConflictResolver(
        ledger,
        invoker=invoker,
        catalog=catalog,
        health=health,
        locks=locks,
        budgets=budgets,
        tier_chain=[Tier(item) for item in arbitration_config["tier_chain"]],
        auto_resolve_whitespace=bool(arbitration_config["auto_resolve_whitespace"]),
        clock=clock,
    )
    dispatcher = Dispatcher(
        ledger=ledger,
        locks=locks,
        router=router,
        resolver=resolver,
        worker=worker,
        writer=writer,
        budgets=budgets,
        settings=DispatcherSettings.from_config(effective),
        clock=clock,
        sleep=sleep,
        prober=tier_prober(invoker, catalog),
        metrics=metrics,
    )
    operator = OperatorAPI(
        ledger=ledger,
        locks=locks,
        budgets=budgets,
        default_daily_budget_usd=float(budgets_config["default_daily_usd"]),
        default_monthly_budget_usd=float(budgets_config["default_monthly_usd"]),
        default_routing_policy=str(effective["routing"]["default_policy"]),
    )
    return Orchestrator(
        config=effective,
        store=backend,
        metrics=metrics,
        locks=locks,
        budgets=budgets,
        ledger=ledger,
        writer=writer,
        catalog=catalog,
        health=health,
        router=router,
        resolver=resolver,
        dispatcher=dispatcher,
        operator=operator,
    )


__all__ = [
    "Orchestrator",
    "PROBE_PROMPT",
    "build_orchestrator",
    "build_store",
    "tier_prober",
]
