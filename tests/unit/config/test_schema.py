"""
forge-orchestrator — unit tests for config schema

File: tests/unit/config/test_schema.py
Last updated: 2026-10-19

Purpose
- Validate defaults, strict field rules, cross-field rules, and merge/redaction helpers.

What this test file should cover
- Built-in defaults validate cleanly.
- Unknown fields, embedded secrets, and schema version mismatches are reported.
- Lease renewal, routing table and budget ratio cross-field rules.
- Deterministic merge (lists replaced) and redaction.

Functional requirements
- Issues carry dotted field paths.

Non-functional requirements
- Deterministic issue ordering.
"""

from __future__ import annotations

from typing import Any

import pytest

from forge_orchestrator.config.schema import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issues(config: Any) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_default_config_is_valid_and_isolated() -> None:
    first = default_config()
    first["locks"]["ttl_seconds"] = 1.0

    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["locks"]["ttl_seconds"] == 300.0
    assert result.config["paths"] == {"stage_plan": None}


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}


def test_unknown_fields_and_embedded_secrets_are_reported() -> None:
    config = default_config()
    config["dispatcher"]["turbo"] = True  # type: ignore[typeddict-unknown-key]
    config["tiers"]["premium"]["apiKey"] = "sk-123"  # type: ignore[typeddict-unknown-key]

    issues = _issues(config)

    assert issues["dispatcher.turbo"] == "unknown field"
    assert issues["tiers.premium.apiKey"] == "embedded secret values are forbidden"


def test_missing_required_sections_are_reported() -> None:
    config = default_config()
    del config["ledger"]  # type: ignore[misc]

    assert _issues(config) == {"ledger": "missing required field"}


@pytest.mark.parametrize("version", [0, 2])
def test_schema_version_mismatch_carries_migration_guidance(version: int) -> None:
    config = default_config()
    config["meta"]["schema_version"] = version

    issues = _issues(config)

    if version == 0:
        assert issues["meta.schema_version"] == "must be >= 1"
    else:
        assert issues["meta.schema_version"] == migration_guidance(2)
        assert "upgrade the forge-orchestrator runtime" in migration_guidance(2)


def test_lease_renewal_must_stay_below_half_the_ttl() -> None:
    config = default_config()
    config["locks"]["ttl_seconds"] = 30.0
    config["locks"]["renew_interval_seconds"] = 15.0

    assert _issues(config) == {
        "locks.renew_interval_seconds": "must be < ttl_seconds / 2 (15.0)"
    }

    config["locks"]["renew_interval_seconds"] = 14.9
    assert validate_config(config).is_valid


@pytest.mark.parametrize(
    ("rules", "message"),
    [
        ([], "expected a non-empty list of rules"),
        (
            [
                {"max_complexity": 8, "tier": "mid"},
                {"max_complexity": 3, "tier": "cheap"},
                {"max_complexity": 10, "tier": "premium"},
            ],
            "rules must be ordered by ascending max_complexity",
        ),
        ([{"max_complexity": 9, "tier": "premium"}], "last rule must cover max_complexity 10"),
        (
            [{"max_complexity": 10, "tier": "cheap", "max_load": 0.5}],
            "last rule must not be load-gated",
        ),
    ],
)
def test_policy_rules_must_cover_every_score(rules: list[dict[str, Any]], message: str) -> None:
    config = default_config()
    config["routing"]["policies"]["performance"] = rules  # type: ignore[typeddict-item]

    assert _issues(config)["routing.policies.performance"] == message


def test_complexity_and_ratio_constraints() -> None:
    config = default_config()
    config["routing"]["complexity"]["input_size_thresholds"] = [500, 500, 8000]
    config["routing"]["complexity"]["category_weights"]["Bad-Name"] = 1
    config["routing"]["premium_cutoff_ratio"] = 1.5
    config["budgets"]["warning_ratio"] = 0.95

    issues = _issues(config)

    assert issues["routing.complexity.input_size_thresholds"] == "must be strictly increasing"
    assert issues["routing.complexity.category_weights.Bad-Name"].startswith("category must match")
    assert issues["routing.premium_cutoff_ratio"] == "must be <= 1.0"
    assert issues["budgets.warning_ratio"] == "must be < critical_ratio"


def test_tier_chain_and_enums_are_checked() -> None:
    config = default_config()
    config["arbitration"]["tier_chain"] = ["cheap", "cheap"]
    config["store"]["backend"] = "redis"
    config["observability"]["redact_secrets"] = "yes"  # type: ignore[typeddict-item]

    issues = _issues(config)

    assert issues["arbitration.tier_chain"] == "tiers must not repeat"
    assert issues["store.backend"] == "invalid value 'redis'; expected one of: memory, sqlite"
    assert issues["observability.redact_secrets"] == "expected boolean, got str"


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    config = default_config()
    config["dispatcher"]["max_concurrency_per_project"] = 0

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert "- dispatcher.max_concurrency_per_project: must be >= 1" in str(excinfo.value)
    assert len(excinfo.value.issues) == 1


def test_merge_config_replaces_lists_and_leaves_inputs_untouched() -> None:
    base = {"arbitration": {"tier_chain": ["cheap", "mid", "premium"], "keep": 1}}
    overlay = {"arbitration": {"tier_chain": ["premium"]}, "extra": {"nested": [1]}}

    merged = merge_config(base, overlay)

    assert merged == {
        "arbitration": {"tier_chain": ["premium"], "keep": 1},
        "extra": {"nested": [1]},
    }
    assert base["arbitration"]["tier_chain"] == ["cheap", "mid", "premium"]
    merged["extra"]["nested"].append(2)
    assert overlay["extra"]["nested"] == [1]


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config(
        {"store": {"backend": "sqlite", "password": "hunter2"}, "clientSecret": "s"}
    )

    assert redacted == {
        "clientSecret": "<redacted>",
        "store": {"backend": "sqlite", "password": "<redacted>"},
    }
    assert redact_config("nope") == {}
