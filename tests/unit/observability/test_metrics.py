"""
forge-orchestrator — unit tests for observability metrics

File: tests/unit/observability/test_metrics.py
Last updated: 2026-10-19

Purpose
- Verify thread-safe metric updates and deterministic snapshot behavior.

What this test file should cover
- Thread-safe counter increments.
- Label normalization and per-label lookups.
- Gauges, distributions and deterministic snapshot keys.
- Rejection of invalid names, labels and values.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic outputs.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry


def test_thread_safe_counter_increments() -> None:
    registry = MetricsRegistry()

    def worker() -> None:
        for _ in range(2000):
            registry.inc(MetricName.TASK_ATTEMPTS, labels={"tier": "cheap"})

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter(MetricName.TASK_ATTEMPTS, labels={"tier": "cheap"}) == 16000.0


def test_labels_are_order_independent_and_totals_span_labels() -> None:
    registry = MetricsRegistry()
    registry.inc(MetricName.TIER_FALLBACKS, labels={"from": "cheap", "to": "mid"})
    registry.inc(MetricName.TIER_FALLBACKS, 2, labels={"to": "mid", "from": "cheap"})
    registry.inc(MetricName.TIER_FALLBACKS, labels={"from": "mid", "to": "premium"})

    assert registry.get_counter(
        MetricName.TIER_FALLBACKS, labels={"to": "mid", "from": "cheap"}
    ) == 3.0
    assert registry.get_counter(MetricName.TIER_FALLBACKS) == 0.0
    assert registry.counter_total(MetricName.TIER_FALLBACKS) == 4.0
    assert registry.counter_total(MetricName.SPEND_USD) == 0.0


def test_gauges_and_distributions() -> None:
    registry = MetricsRegistry()
    registry.set_gauge(MetricName.TASKS_IN_FLIGHT, 3, labels={"project": "p1"})
    registry.set_gauge(MetricName.TASKS_IN_FLIGHT, 1, labels={"project": "p1"})
    for sample in (0.5, 1.5, 4.0):
        registry.observe(MetricName.TASK_LATENCY_SECONDS, sample)

    assert registry.get_gauge(MetricName.TASKS_IN_FLIGHT, labels={"project": "p1"}) == 1.0
    assert registry.get_gauge(MetricName.TASKS_IN_FLIGHT) is None
    summary = registry.snapshot()["distributions"]["task_latency_seconds"]
    assert summary == {"count": 3, "sum": 6.0, "min": 0.5, "max": 4.0, "avg": 2.0}


def test_snapshot_keys_are_deterministic() -> None:
    def build() -> MetricsRegistry:
        registry = MetricsRegistry()
        registry.inc(MetricName.SPEND_USD, 0.25, labels={"tier": "premium", "project": "p"})
        registry.inc(MetricName.CONFLICTS_DETECTED)
        registry.set_gauge(MetricName.TASKS_IN_FLIGHT, 2)
        return registry

    first = build().snapshot()
    second = build().snapshot()

    assert first == second
    assert list(first["counters"]) == [
        "conflicts_detected_total",
        "spend_usd_total{project=p,tier=premium}",
    ]
    assert first["gauges"] == {"tasks_in_flight": 2.0}


@pytest.mark.parametrize(
    ("call", "message"),
    [
        (lambda registry: registry.inc("x", -1), "must be >= 0"),
        (lambda registry: registry.inc("x", float("inf")), "must be finite"),
        (lambda registry: registry.set_gauge("x", True), "must be numeric"),
        (lambda registry: registry.observe("  ", 1.0), "metric name must be"),
        (lambda registry: registry.inc("x", labels={"tier": " "}), "non-empty key and value"),
        (lambda registry: registry.inc("x", labels={"tier": 1}), "string pairs"),
    ],
)
def test_invalid_updates_are_rejected(
    call: Callable[[MetricsRegistry], object], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        call(MetricsRegistry())
