"""Unit tests for the append-only budget ledger."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from forge_orchestrator.control_plane.budgets import BudgetLedger, RecommendationSeverity
from forge_orchestrator.coordination.store import InMemoryCoordinationStore
from forge_orchestrator.domain.errors import BudgetExceededError
from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.models import BudgetEntry, BudgetPurpose, Project, Tier
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _project(*, daily: float = 10.0, monthly: float = 100.0) -> Project:
    return Project(
        id=new_id(EntityKind.PROJECT),
        name="budgeted",
        story_points=8,
        daily_budget_usd=daily,
        monthly_budget_usd=monthly,
        created_at=NOW,
        updated_at=NOW,
    )


def _ledger(metrics: MetricsRegistry | None = None) -> BudgetLedger:
    store = InMemoryCoordinationStore(clock=NOW.timestamp)
    return BudgetLedger(store, clock=NOW.timestamp, metrics=metrics)


def _entry(project_id: str, cost: float, *, at: datetime = NOW) -> BudgetEntry:
    return BudgetEntry(
        id=new_id(EntityKind.BUDGET_ENTRY),
        project_id=project_id,
        tier=Tier.CHEAP,
        tokens_in=10,
        tokens_out=10,
        cost_usd=cost,
        timestamp=at,
    )


def test_record_usage_appends_entries_and_counts_spend() -> None:
    metrics = MetricsRegistry()
    ledger = _ledger(metrics)
    project = _project()

    entry = ledger.record_usage(
        project_id=project.id,
        tier=Tier.MID,
        tokens_in=100,
        tokens_out=50,
        cost_usd=0.25,
        purpose=BudgetPurpose.ARBITRATION,
    )

    assert ledger.entries(project.id) == (entry,)
    assert entry.timestamp == NOW
    assert metrics.get_counter(
        MetricName.SPEND_USD, labels={"tier": "mid", "purpose": "arbitration"}
    ) == pytest.approx(0.25)


def test_status_splits_daily_and_monthly_spend() -> None:
    ledger = _ledger()
    project = _project(daily=10.0, monthly=100.0)
    ledger.append(_entry(project.id, 4.0))
    ledger.append(_entry(project.id, 20.0, at=NOW - timedelta(days=3)))
    ledger.append(_entry(project.id, 50.0, at=NOW - timedelta(days=40)))

    status = ledger.status(project)

    assert status.daily_spent_usd == pytest.approx(4.0)
    assert status.monthly_spent_usd == pytest.approx(24.0)
    assert status.total_spent_usd == pytest.approx(74.0)
    assert status.ratio == pytest.approx(0.4)
    assert not status.exceeded
    assert status.to_dict()["daily_remaining_usd"] == pytest.approx(6.0)


def test_recommendations_follow_thresholds() -> None:
    ledger = _ledger()
    project = _project(daily=10.0, monthly=1000.0)

    ledger.append(_entry(project.id, 8.5))
    warning = ledger.status(project)
    assert [item.severity for item in warning.recommendations] == [
        RecommendationSeverity.WARNING
    ]

    ledger.append(_entry(project.id, 1.0))
    critical = ledger.status(project)
    assert [item.code for item in critical.recommendations] == ["daily_budget_critical"]


def test_ensure_within_budget_raises_once_ratio_reaches_one() -> None:
    ledger = _ledger()
    project = _project(daily=1.0)
    ledger.append(_entry(project.id, 0.5))
    assert ledger.ensure_within_budget(project).ratio == pytest.approx(0.5)

    ledger.append(_entry(project.id, 0.5))
    with pytest.raises(BudgetExceededError) as excinfo:
        ledger.ensure_within_budget(project)
    assert excinfo.value.ratio == pytest.approx(1.0)


@settings(max_examples=50, deadline=None)
@given(
    costs=st.lists(
        st.floats(min_value=0.0, max_value=50.0, allow_nan=False, allow_infinity=False),
        min_size=1,
        max_size=30,
    ),
    data=st.data(),
)
def test_running_total_is_order_independent_sum_of_entries(
    costs: list[float], data: st.DataObject
) -> None:
    project = _project()
    entries = [_entry(project.id, cost) for cost in costs]
    ordered = data.draw(st.permutations(entries))

    ledger = _ledger()
    totals: list[float] = []
    for entry in ordered:
        ledger.append(entry)
        totals.append(ledger.running_total(project.id))

    assert ledger.entries(project.id) == tuple(ordered)
    assert totals == sorted(totals)
    assert ledger.running_total(project.id) == pytest.approx(math.fsum(costs))
