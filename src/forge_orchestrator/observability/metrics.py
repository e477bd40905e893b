"""Thread-safe orchestration metrics with deterministic snapshots."""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

_Labels = tuple[tuple[str, str], ...]

_MAX_NAME_LEN: Final[int] = 128


class MetricName(StrEnum):
    """Metric names emitted by the control and integration planes."""

    TASKS_ROUTED = "tasks_routed_total"
    TIER_FALLBACKS = "tier_fallbacks_total"
    TIER_FAILURES = "tier_failures_total"
    TIER_STATE_CHANGES = "tier_state_changes_total"
    LOCK_CONTENTION = "lock_contention_total"
    LEASES_EXPIRED = "leases_expired_total"
    LEDGER_CAS_RETRIES = "ledger_cas_retries_total"
    CONFLICTS_DETECTED = "conflicts_detected_total"
    CONFLICTS_CLOSED = "conflicts_closed_total"
    TASK_ATTEMPTS = "task_attempts_total"
    SPEND_USD = "spend_usd_total"
    TASKS_IN_FLIGHT = "tasks_in_flight"
    TASK_LATENCY_SECONDS = "task_latency_seconds"


@dataclass(slots=True)
class _Distribution:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def summary(self) -> dict[str, float | int | None]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """Counters, gauges and distributions keyed by name plus sorted labels."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, _Labels], float] = {}
        self._gauges: dict[tuple[str, _Labels], float] = {}
        self._distributions: dict[tuple[str, _Labels], _Distribution] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        delta = _finite(amount, "amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self, name: str, value: float, *, labels: Mapping[str, str] | None = None
    ) -> None:
        key = _key(name, labels)
        with self._lock:
            self._gauges[key] = _finite(value, "value")

    def observe(
        self, name: str, value: float, *, labels: Mapping[str, str] | None = None
    ) -> None:
        key = _key(name, labels)
        sample = _finite(value, "value")
        with self._lock:
            self._distributions.setdefault(key, _Distribution()).add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(_key(name, labels), 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(_key(name, labels))

    def counter_total(self, name: str) -> float:
        """Sum a counter across every label combination."""
        with self._lock:
            return sum(value for (metric, _), value in self._counters.items() if metric == name)

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            distributions = sorted(self._distributions.items(), key=lambda item: item[0])
        return {
            "counters": {_identifier(key): value for key, value in counters},
            "gauges": {_identifier(key): value for key, value in gauges},
            "distributions": {_identifier(key): dist.summary() for key, dist in distributions},
        }


def _key(name: str, labels: Mapping[str, str] | None) -> tuple[str, _Labels]:
    normalized = str(name).strip()
    if not normalized or len(normalized) > _MAX_NAME_LEN:
        raise ValueError(f"metric name must be 1..{_MAX_NAME_LEN} characters")
    if not labels:
        return normalized, ()
    pairs: list[tuple[str, str]] = []
    for label, value in labels.items():
        if not isinstance(label, str) or not isinstance(value, str):
            raise ValueError("metric labels must be string pairs")
        if not label.strip() or not value.strip():
            raise ValueError(f"label {label!r} must have a non-empty key and value")
        pairs.append((label.strip(), value.strip()))
    return normalized, tuple(sorted(pairs))


def _identifier(key: tuple[str, _Labels]) -> str:
    name, labels = key
    if not labels:
        return name
    rendered = ",".join(f"{label}={value}" for label, value in labels)
    return f"{name}{{{rendered}}}"


def _finite(value: float, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = ["MetricName", "MetricsRegistry"]
