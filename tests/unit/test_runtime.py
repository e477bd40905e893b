"""Unit tests for replica wiring."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeClock, make_sleep, task_spec
from forge_orchestrator.config.schema import ConfigValidationError, default_config, merge_config
from forge_orchestrator.coordination.sqlite_store import SQLiteCoordinationStore
from forge_orchestrator.coordination.store import InMemoryCoordinationStore
from forge_orchestrator.domain.models import RoutingPolicy, Tier
from forge_orchestrator.runtime import PROBE_PROMPT, build_orchestrator, build_store, tier_prober
from forge_orchestrator.synthesis_plane.interfaces import TierInvocation
from forge_orchestrator.synthesis_plane.offline import DeterministicWorker, ScriptedTierInvoker
from forge_orchestrator.synthesis_plane.tier_catalog import default_tier_catalog


def test_build_store_selects_backend(tmp_path: Path, clock: FakeClock) -> None:
    config = default_config()
    assert isinstance(build_store(config, clock=clock), InMemoryCoordinationStore)

    config["store"]["backend"] = "sqlite"
    config["store"]["sqlite_path"] = str(tmp_path / "db" / "forge.sqlite")
    store = build_store(config, clock=clock)
    assert isinstance(store, SQLiteCoordinationStore)
    assert store.path == tmp_path / "db" / "forge.sqlite"

    config["store"]["backend"] = "redis"
    with pytest.raises(ValueError, match="unsupported store backend: 'redis'"):
        build_store(config, clock=clock)


def test_build_orchestrator_wires_shared_components(clock: FakeClock) -> None:
    config = default_config()
    config["routing"]["default_policy"] = "performance"
    config["tiers"]["mid"]["timeout_seconds"] = 12.0

    orchestrator = build_orchestrator(
        config,
        worker=DeterministicWorker(),
        invoker=ScriptedTierInvoker(),
        clock=clock,
        configure_logs=False,
    )

    assert isinstance(orchestrator.store, InMemoryCoordinationStore)
    assert orchestrator.catalog.timeout_for(Tier.MID) == 12.0
    state = orchestrator.operator.create_project("wired")
    assert state.project.routing_policy is RoutingPolicy.PERFORMANCE
    assert [stage.name for stage in state.stages][:2] == ["authentication", "security_setup"]


def test_build_orchestrator_rejects_invalid_config() -> None:
    config = default_config()
    config["dispatcher"]["max_concurrency_per_project"] = 0

    with pytest.raises(ConfigValidationError):
        build_orchestrator(
            config,
            worker=DeterministicWorker(),
            invoker=ScriptedTierInvoker(),
            configure_logs=False,
        )


@pytest.mark.asyncio
async def test_tier_prober_reports_invocation_success() -> None:
    invoker = ScriptedTierInvoker.from_mapping(
        {
            Tier.CHEAP: [TierInvocation(success=True, result="ok")],
            Tier.MID: [TierInvocation(success=False)],
            Tier.PREMIUM: [TimeoutError("probe timed out")],
        }
    )
    probe = tier_prober(invoker, default_tier_catalog())

    assert await probe(Tier.CHEAP) is True
    assert await probe(Tier.MID) is False
    with pytest.raises(TimeoutError):
        await probe(Tier.PREMIUM)
    assert {prompt for _, prompt in invoker.calls} == {PROBE_PROMPT}


@pytest.mark.asyncio
async def test_sqlite_backed_replica_runs_a_project(tmp_path: Path, clock: FakeClock) -> None:
    config = merge_config(
        default_config(),
        {
            "store": {"backend": "sqlite", "sqlite_path": str(tmp_path / "forge.sqlite")},
            "locks": {
                "ttl_seconds": 30.0,
                "renew_interval_seconds": 5.0,
                "sweep_interval_seconds": 1.0,
            },
        },
    )
    worker = DeterministicWorker()
    orchestrator = build_orchestrator(
        config,
        worker=worker,
        invoker=ScriptedTierInvoker(),
        clock=clock,
        sleep=make_sleep(clock),
        configure_logs=False,
    )
    project_id = orchestrator.operator.create_project(
        "persisted", stage_tasks={2: [task_spec("secure", "/config/security.yaml")]}
    ).project.id

    result = await asyncio.wait_for(orchestrator.run_project(project_id), timeout=30.0)

    assert result.completed
    assert len(worker.calls) == 1
    reopened = SQLiteCoordinationStore(tmp_path / "forge.sqlite", clock=clock)
    assert reopened.read_versioned(f"project:{project_id}:state") is not None
