"""
forge-orchestrator — compute tier catalog.

File: src/forge_orchestrator/synthesis_plane/tier_catalog.py
Last updated: 2026-10-19

Purpose
- Expose per-tier cost, call timeout and capacity metadata used by routing,
  arbitration and cost estimation.

Functional requirements
- Cover every member of ``Tier``; cheaper tiers carry shorter timeouts.
- Cost estimates are deterministic: ``tokens / 1000 * unit_cost``.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from forge_orchestrator.config.schema import DEFAULT_CONFIG
from forge_orchestrator.domain.models import TIER_HIERARCHY, Tier


def _validate_non_negative_float(value: object, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be numeric")
    parsed = float(value)
    if parsed < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return parsed


@dataclass(frozen=True, slots=True)
class TierSpec:
    tier: Tier
    unit_cost_per_1k_usd: float
    timeout_seconds: float
    capacity: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(
            self,
            "unit_cost_per_1k_usd",
            _validate_non_negative_float(
                self.unit_cost_per_1k_usd, "TierSpec.unit_cost_per_1k_usd"
            ),
        )
        timeout = _validate_non_negative_float(self.timeout_seconds, "TierSpec.timeout_seconds")
        if timeout == 0:
            raise ValueError("TierSpec.timeout_seconds must be > 0")
        object.__setattr__(self, "timeout_seconds", timeout)
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int):
            raise TypeError("TierSpec.capacity must be an integer")
        if self.capacity <= 0:
            raise ValueError("TierSpec.capacity must be > 0")

    def estimate_cost(self, total_tokens: int) -> float:
        if total_tokens < 0:
            raise ValueError("total_tokens must be >= 0")
        return total_tokens / 1000.0 * self.unit_cost_per_1k_usd


class TierCatalog:
    """Immutable lookup of ``TierSpec`` by tier."""

    def __init__(self, specs: Mapping[Tier, TierSpec]) -> None:
        missing = [tier.value for tier in TIER_HIERARCHY if tier not in specs]
        if missing:
            raise ValueError(f"tier catalog is missing tiers: {missing}")
        self._specs = MappingProxyType({tier: specs[tier] for tier in TIER_HIERARCHY})

    @classmethod
    def from_config(cls, tiers: Mapping[str, Mapping[str, object]]) -> TierCatalog:
        specs: dict[Tier, TierSpec] = {}
        for tier in TIER_HIERARCHY:
            raw = tiers.get(tier.value)
            if raw is None:
                raise ValueError(f"tiers.{tier.value} is required")
            specs[tier] = TierSpec(
                tier=tier,
                unit_cost_per_1k_usd=raw["unit_cost_per_1k_usd"],  # type: ignore[arg-type]
                timeout_seconds=raw["timeout_seconds"],  # type: ignore[arg-type]
                capacity=raw["capacity"],  # type: ignore[arg-type]
            )
        return cls(specs)

    def spec(self, tier: Tier) -> TierSpec:
        return self._specs[Tier(tier)]

    def timeout_for(self, tier: Tier) -> float:
        return self.spec(tier).timeout_seconds

    def capacity_for(self, tier: Tier) -> int:
        return self.spec(tier).capacity

    def estimate_cost(self, tier: Tier, total_tokens: int) -> float:
        return self.spec(tier).estimate_cost(total_tokens)

    def __iter__(self) -> Iterator[TierSpec]:
        return iter(self._specs.values())


def default_tier_catalog() -> TierCatalog:
    return TierCatalog.from_config(DEFAULT_CONFIG["tiers"])  # type: ignore[arg-type]


__all__ = ["TierCatalog", "TierSpec", "default_tier_catalog"]
