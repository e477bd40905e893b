"""
forge-orchestrator — tier router and budget governor.

File: src/forge_orchestrator/control_plane/router.py
Last updated: 2026-10-19

Purpose
- Choose the compute tier for each task from its complexity score, the
  project's budget ratio and per-tier health.

What should be included in this file
- Complexity scoring (input size + task category + context size, capped at 10).
- Threshold-table routing policies loaded from configuration.
- Tier health circuit: consecutive failures in a sliding window flip a tier
  unavailable for a cool-down; a successful probe re-admits it.
- Per-tier in-flight load tracking and a routing summary.

Functional requirements
- Premium is never admitted once the budget ratio reaches the cut-off; premium
  picks are capped to mid.
- Unroutable tiers fall back along cheap -> mid -> premium, counting each
  fallback; nothing routable raises a retryable ``TierUnavailableError``.
- An unavailable tier receives no work until its cool-down elapsed and a probe
  succeeded.

Non-functional requirements
- Health and load are per-replica circuit state; nothing here is authoritative
  project state.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from forge_orchestrator.config.schema import DEFAULT_CONFIG
from forge_orchestrator.constants import (
    DEFAULT_TIER_COOLDOWN_SECONDS,
    DEFAULT_TIER_FAILURE_THRESHOLD,
    DEFAULT_TIER_FAILURE_WINDOW_SECONDS,
    PREMIUM_CUTOFF_RATIO,
)
from forge_orchestrator.coordination.store import Clock
from forge_orchestrator.domain.errors import TierUnavailableError
from forge_orchestrator.domain.models import (
    TIER_HIERARCHY,
    RoutingPolicy,
    Task,
    Tier,
    TierHealth,
    canonical_json,
    payload_files,
)
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry
from forge_orchestrator.synthesis_plane.tier_catalog import TierCatalog

MAX_COMPLEXITY = 10
_TOKENS_PER_CHAR = 4

Prober = Callable[[Tier], Awaitable[bool]]


# --------------------------------------------------------------------------- complexity


@dataclass(frozen=True, slots=True)
class ComplexityWeights:
    input_size_thresholds: tuple[int, ...] = (500, 2000, 8000)
    context_size_per_point: int = 1000
    max_context_points: int = 3
    category_weights: Mapping[str, int] = field(default_factory=dict)
    default_category_weight: int = 2

    @classmethod
    def from_config(cls, complexity: Mapping[str, Any]) -> ComplexityWeights:
        return cls(
            input_size_thresholds=tuple(int(item) for item in complexity["input_size_thresholds"]),
            context_size_per_point=int(complexity["context_size_per_point"]),
            max_context_points=int(complexity["max_context_points"]),
            category_weights={
                str(name): int(weight) for name, weight in complexity["category_weights"].items()
            },
            default_category_weight=int(complexity["default_category_weight"]),
        )

    def input_weight(self, input_tokens: int) -> int:
        return sum(1 for threshold in self.input_size_thresholds if input_tokens >= threshold)

    def category_weight(self, category: str | None) -> int:
        if category is None:
            return self.default_category_weight
        return self.category_weights.get(category, self.default_category_weight)

    def context_weight(self, context_tokens: int) -> int:
        if self.context_size_per_point <= 0:
            return 0
        return min(context_tokens // self.context_size_per_point, self.max_context_points)

    def score(self, request: RoutingRequest) -> int:
        total = (
            self.input_weight(request.input_tokens)
            + self.category_weight(request.category)
            + self.context_weight(request.context_tokens)
        )
        return max(0, min(total, MAX_COMPLEXITY))


@dataclass(frozen=True, slots=True)
class RoutingRequest:
    """Inputs to complexity scoring for one unit of work."""

    input_tokens: int
    category: str | None = None
    context_tokens: int = 0

    @classmethod
    def from_task(cls, task: Task) -> RoutingRequest:
        """Derive sizes from the payload; explicit ``input_tokens``/``context_tokens`` win."""
        payload = task.input_payload
        input_tokens = _int_field(payload, "input_tokens")
        if input_tokens is None:
            input_tokens = len(canonical_json(payload)) // _TOKENS_PER_CHAR
        context_tokens = _int_field(payload, "context_tokens")
        if context_tokens is None:
            merged = payload_files(payload, "merged_files")
            context_tokens = sum(len(text) for text in merged.values()) // _TOKENS_PER_CHAR
        category = payload.get("category")
        return cls(
            input_tokens=input_tokens,
            category=category if isinstance(category, str) else None,
            context_tokens=context_tokens,
        )


def _int_field(payload: Mapping[str, object], key: str) -> int | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


# --------------------------------------------------------------------------- policies


@dataclass(frozen=True, slots=True)
class PolicyRule:
    max_complexity: int
    tier: Tier
    max_load: float | None = None


RoutingTable = Mapping[RoutingPolicy, tuple[PolicyRule, ...]]


def parse_routing_table(policies: Mapping[str, Sequence[Mapping[str, Any]]]) -> RoutingTable:
    table: dict[RoutingPolicy, tuple[PolicyRule, ...]] = {}
    for policy in RoutingPolicy:
        rules = policies.get(policy.value)
        if not rules:
            raise ValueError(f"routing.policies.{policy.value} is required")
        table[policy] = tuple(
            PolicyRule(
                max_complexity=int(rule["max_complexity"]),
                tier=Tier(rule["tier"]),
                max_load=float(rule["max_load"]) if rule.get("max_load") is not None else None,
            )
            for rule in rules
        )
        last = table[policy][-1]
        if last.max_complexity < MAX_COMPLEXITY or last.max_load is not None:
            raise ValueError(
                f"routing.policies.{policy.value} must end with an unconditional rule covering "
                f"complexity {MAX_COMPLEXITY}"
            )
    return table


# --------------------------------------------------------------------------- health


@dataclass(frozen=True, slots=True)
class TierState:
    tier: Tier
    health: TierHealth
    consecutive_failures: int
    unavailable_until: float | None = None


@dataclass(slots=True)
class _Circuit:
    health: TierHealth = TierHealth.HEALTHY
    failures: deque[float] = field(default_factory=deque)
    consecutive_failures: int = 0
    unavailable_until: float | None = None


class TierHealthBoard:
    """Per-tier circuit breaker with sliding-window failure counting."""

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_TIER_FAILURE_THRESHOLD,
        window_seconds: float = DEFAULT_TIER_FAILURE_WINDOW_SECONDS,
        cooldown_seconds: float = DEFAULT_TIER_COOLDOWN_SECONDS,
        clock: Clock = time.time,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if window_seconds <= 0 or cooldown_seconds <= 0:
            raise ValueError("window_seconds and cooldown_seconds must be > 0")
        self._threshold = failure_threshold
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._circuits = {tier: _Circuit() for tier in TIER_HIERARCHY}

    def state(self, tier: Tier) -> TierState:
        with self._lock:
            circuit = self._circuits[Tier(tier)]
            return TierState(
                tier=Tier(tier),
                health=circuit.health,
                consecutive_failures=circuit.consecutive_failures,
                unavailable_until=circuit.unavailable_until,
            )

    def states(self) -> tuple[TierState, ...]:
        return tuple(self.state(tier) for tier in TIER_HIERARCHY)

    def is_available(self, tier: Tier) -> bool:
        with self._lock:
            return self._circuits[Tier(tier)].health is not TierHealth.UNAVAILABLE

    def record_success(self, tier: Tier) -> None:
        with self._lock:
            circuit = self._circuits[Tier(tier)]
            if circuit.health is TierHealth.UNAVAILABLE:
                # Only a probe re-admits an open circuit.
                return
            circuit.failures.clear()
            circuit.consecutive_failures = 0
            previous = circuit.health
            circuit.health = TierHealth.HEALTHY
        if previous is not TierHealth.HEALTHY:
            self._state_changed(Tier(tier), TierHealth.HEALTHY)

    def record_failure(self, tier: Tier) -> TierHealth:
        tier = Tier(tier)
        now = self._clock()
        with self._lock:
            circuit = self._circuits[tier]
            if circuit.health is TierHealth.UNAVAILABLE:
                return circuit.health
            circuit.consecutive_failures += 1
            circuit.failures.append(now)
            while circuit.failures and circuit.failures[0] <= now - self._window:
                circuit.failures.popleft()
            previous = circuit.health
            if len(circuit.failures) >= self._threshold:
                circuit.health = TierHealth.UNAVAILABLE
                circuit.unavailable_until = now + self._cooldown
            else:
                circuit.health = TierHealth.DEGRADED
            health = circuit.health
            consecutive = circuit.consecutive_failures
        if self._metrics is not None:
            self._metrics.inc(MetricName.TIER_FAILURES, labels={"tier": tier.value})
        self._logger.info(
            "tier_failure_recorded",
            tier=tier.value,
            consecutive_failures=consecutive,
            health=health.value,
        )
        if health is not previous:
            self._state_changed(tier, health)
        return health

    def probe_due(self) -> tuple[Tier, ...]:
        """Unavailable tiers whose cool-down has elapsed."""
        now = self._clock()
        with self._lock:
            return tuple(
                tier
                for tier, circuit in self._circuits.items()
                if circuit.health is TierHealth.UNAVAILABLE
                and circuit.unavailable_until is not None
                and now >= circuit.unavailable_until
            )

    def record_probe(self, tier: Tier, succeeded: bool) -> TierHealth:
        tier = Tier(tier)
        with self._lock:
            circuit = self._circuits[tier]
            if circuit.health is not TierHealth.UNAVAILABLE:
                return circuit.health
            if succeeded:
                circuit.health = TierHealth.HEALTHY
                circuit.failures.clear()
                circuit.consecutive_failures = 0
                circuit.unavailable_until = None
            else:
                circuit.unavailable_until = self._clock() + self._cooldown
            health = circuit.health
        self._logger.info("tier_probe", tier=tier.value, succeeded=succeeded)
        if succeeded:
            self._state_changed(tier, health)
        return health

    async def probe(self, prober: Prober) -> dict[Tier, bool]:
        """Probe every tier whose cool-down elapsed; a raising probe counts as failed."""
        results: dict[Tier, bool] = {}
        for tier in self.probe_due():
            try:
                succeeded = bool(await prober(tier))
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("tier_probe_error", tier=tier.value, error=str(exc))
                succeeded = False
            self.record_probe(tier, succeeded)
            results[tier] = succeeded
        return results

    def _state_changed(self, tier: Tier, health: TierHealth) -> None:
        if self._metrics is not None:
            self._metrics.inc(
                MetricName.TIER_STATE_CHANGES, labels={"tier": tier.value, "health": health.value}
            )
        self._logger.warning("tier_health_changed", tier=tier.value, health=health.value)


# --------------------------------------------------------------------------- router


@dataclass(frozen=True, slots=True)
class RouteDecision:
    tier: Tier
    requested_tier: Tier
    complexity: int
    policy: RoutingPolicy
    budget_ratio: float
    premium_capped: bool = False

    @property
    def fell_back(self) -> bool:
        return self.tier is not self.requested_tier


class TierRouter:
    """Policy-table tier selection with budget cap, fallback and load tracking."""

    def __init__(
        self,
        *,
        catalog: TierCatalog,
        health: TierHealthBoard,
        routing_table: RoutingTable | None = None,
        complexity: ComplexityWeights | None = None,
        premium_cutoff_ratio: float = PREMIUM_CUTOFF_RATIO,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if not 0.0 < premium_cutoff_ratio <= 1.0:
            raise ValueError("premium_cutoff_ratio must be in (0, 1]")
        routing = DEFAULT_CONFIG["routing"]
        self._catalog = catalog
        self._health = health
        self._table = (
            routing_table
            if routing_table is not None
            else parse_routing_table(routing["policies"])  # type: ignore[arg-type]
        )
        self._complexity = (
            complexity
            if complexity is not None
            else ComplexityWeights.from_config(routing["complexity"])  # type: ignore[arg-type]
        )
        self._premium_cutoff = premium_cutoff_ratio
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._in_flight = {tier: 0 for tier in TIER_HIERARCHY}
        self._routed = {tier: 0 for tier in TIER_HIERARCHY}
        self._fallbacks = 0

    @classmethod
    def from_config(
        cls,
        routing: Mapping[str, Any],
        *,
        catalog: TierCatalog,
        health: TierHealthBoard,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> TierRouter:
        return cls(
            catalog=catalog,
            health=health,
            routing_table=parse_routing_table(routing["policies"]),
            complexity=ComplexityWeights.from_config(routing["complexity"]),
            premium_cutoff_ratio=float(routing["premium_cutoff_ratio"]),
            metrics=metrics,
            logger=logger,
        )

    @property
    def health(self) -> TierHealthBoard:
        return self._health

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    def score(self, request: RoutingRequest) -> int:
        return self._complexity.score(request)

    def load(self, tier: Tier) -> float:
        with self._lock:
            return self._in_flight[Tier(tier)] / self._catalog.capacity_for(tier)

    def preferred_tier(self, complexity: int, policy: RoutingPolicy) -> Tier:
        for rule in self._table[policy]:
            if complexity > rule.max_complexity:
                continue
            if rule.max_load is not None and self.load(rule.tier) >= rule.max_load:
                continue
            return rule.tier
        return self._table[policy][-1].tier

    def route(
        self,
        request: RoutingRequest,
        *,
        policy: RoutingPolicy,
        budget_ratio: float,
    ) -> RouteDecision:
        """Pick a tier and reserve one in-flight slot on it.

        Callers must hand the decision back through ``finish``.
        """
        complexity = self.score(request)
        requested = self.preferred_tier(complexity, policy)
        premium_allowed = budget_ratio < self._premium_cutoff
        capped = False
        if requested is Tier.PREMIUM and not premium_allowed:
            requested = Tier.MID
            capped = True

        chosen: Tier | None = None
        in_flight = 0
        with self._lock:
            for tier in TIER_HIERARCHY[requested.rank :]:
                if tier is Tier.PREMIUM and not premium_allowed:
                    break
                if not self._health.is_available(tier):
                    continue
                if self._in_flight[tier] >= self._catalog.capacity_for(tier):
                    continue
                chosen = tier
                break
            if chosen is not None:
                self._in_flight[chosen] += 1
                in_flight = self._in_flight[chosen]
                self._routed[chosen] += 1
                if chosen is not requested:
                    self._fallbacks += 1

        if chosen is None:
            self._logger.warning(
                "tier_unavailable",
                requested_tier=requested.value,
                complexity=complexity,
                budget_ratio=budget_ratio,
            )
            raise TierUnavailableError(
                f"no routable tier at or above {requested.value}",
                requested_tier=requested.value,
            )

        decision = RouteDecision(
            tier=chosen,
            requested_tier=requested,
            complexity=complexity,
            policy=policy,
            budget_ratio=budget_ratio,
            premium_capped=capped,
        )
        if self._metrics is not None:
            self._metrics.inc(MetricName.TASKS_ROUTED, labels={"tier": chosen.value})
            self._metrics.set_gauge(
                MetricName.TASKS_IN_FLIGHT, float(in_flight), labels={"tier": chosen.value}
            )
            if decision.fell_back:
                self._metrics.inc(
                    MetricName.TIER_FALLBACKS,
                    labels={"from": requested.value, "to": chosen.value},
                )
        if decision.fell_back:
            self._logger.info(
                "tier_fallback", requested_tier=requested.value, tier=chosen.value
            )
        if capped:
            self._logger.info("premium_capped", budget_ratio=budget_ratio, tier=chosen.value)
        return decision

    def finish(self, decision: RouteDecision, *, succeeded: bool | None) -> None:
        """Release the slot; ``succeeded=None`` records no health signal (cancelled work)."""
        with self._lock:
            self._in_flight[decision.tier] = max(0, self._in_flight[decision.tier] - 1)
            in_flight = self._in_flight[decision.tier]
        if self._metrics is not None:
            self._metrics.set_gauge(
                MetricName.TASKS_IN_FLIGHT, float(in_flight), labels={"tier": decision.tier.value}
            )
        if succeeded is True:
            self._health.record_success(decision.tier)
        elif succeeded is False:
            self._health.record_failure(decision.tier)

    def estimate_cost(self, tier: Tier, tokens_in: int, tokens_out: int) -> float:
        return self._catalog.estimate_cost(tier, tokens_in + tokens_out)

    def routing_summary(self) -> dict[str, object]:
        with self._lock:
            routed = dict(self._routed)
            fallbacks = self._fallbacks
            in_flight = dict(self._in_flight)
        total = sum(routed.values())
        return {
            "total_requests": total,
            "requests_by_tier": {tier.value: routed[tier] for tier in TIER_HIERARCHY},
            "in_flight_by_tier": {tier.value: in_flight[tier] for tier in TIER_HIERARCHY},
            "fallback_count": fallbacks,
            "fallback_rate": fallbacks / total if total else 0.0,
            "health": {state.tier.value: state.health.value for state in self._health.states()},
        }


__all__ = [
    "ComplexityWeights",
    "MAX_COMPLEXITY",
    "PolicyRule",
    "Prober",
    "RouteDecision",
    "RoutingRequest",
    "RoutingTable",
    "TierHealthBoard",
    "TierRouter",
    "TierState",
    "parse_routing_table",
]
