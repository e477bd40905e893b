"""
forge-orchestrator — configuration schema and validation.

File: src/forge_orchestrator/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Cross-field rules (lease renewal vs TTL, routing tables covering every score).
- Deterministic deep-merge and redaction helpers.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secrets and unknown fields.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from forge_orchestrator.constants import (
    BUDGET_CRITICAL_RATIO,
    BUDGET_WARNING_RATIO,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DAILY_BUDGET_USD,
    DEFAULT_LEDGER_BACKOFF_BASE_SECONDS,
    DEFAULT_LEDGER_MAX_ATTEMPTS,
    DEFAULT_LOCK_RENEW_INTERVAL_SECONDS,
    DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_MAX_TASK_ATTEMPTS,
    DEFAULT_MONTHLY_BUDGET_USD,
    DEFAULT_TIER_COOLDOWN_SECONDS,
    DEFAULT_TIER_FAILURE_THRESHOLD,
    DEFAULT_TIER_FAILURE_WINDOW_SECONDS,
    DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD,
    PREMIUM_CUTOFF_RATIO,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

TIER_NAMES: Final[tuple[str, ...]] = ("cheap", "mid", "premium")
POLICY_NAMES: Final[tuple[str, ...]] = ("cost_optimized", "balanced", "performance")
MAX_COMPLEXITY: Final[int] = 10

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_CATEGORY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("store", "sqlite_path"),
    ("paths", "stage_plan"),
    ("observability", "log_file"),
)


class MetaConfig(TypedDict):
    schema_version: int


class StoreConfig(TypedDict):
    backend: Literal["memory", "sqlite"]
    sqlite_path: str
    busy_timeout_ms: int


class LocksConfig(TypedDict):
    ttl_seconds: float
    renew_interval_seconds: float
    sweep_interval_seconds: float


class LedgerConfig(TypedDict):
    max_attempts: int
    backoff_base_seconds: float


class DispatcherConfig(TypedDict):
    max_concurrency_per_project: int
    max_task_attempts: int
    retry_backoff_seconds: float
    poll_interval_seconds: float
    unrecoverable_incident_threshold: int
    stage_deadline_seconds: NotRequired[float | None]


class TierSettings(TypedDict):
    unit_cost_per_1k_usd: float
    timeout_seconds: float
    capacity: int


class TiersConfig(TypedDict):
    cheap: TierSettings
    mid: TierSettings
    premium: TierSettings


class TierHealthConfig(TypedDict):
    failure_threshold: int
    window_seconds: float
    cooldown_seconds: float


class ComplexityConfig(TypedDict):
    input_size_thresholds: list[int]
    context_size_per_point: int
    max_context_points: int
    category_weights: dict[str, int]
    default_category_weight: int


class PolicyRule(TypedDict):
    max_complexity: int
    tier: str
    max_load: NotRequired[float]


class RoutingConfig(TypedDict):
    default_policy: Literal["cost_optimized", "balanced", "performance"]
    premium_cutoff_ratio: float
    complexity: ComplexityConfig
    policies: dict[str, list[PolicyRule]]


class ArbitrationConfig(TypedDict):
    tier_chain: list[str]
    auto_resolve_whitespace: bool


class BudgetsConfig(TypedDict):
    default_daily_usd: float
    default_monthly_usd: float
    warning_ratio: float
    critical_ratio: float


class PathsConfig(TypedDict):
    stage_plan: NotRequired[str | None]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "console"]
    redact_secrets: bool
    log_file: NotRequired[str | None]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    store: StoreConfig
    locks: LocksConfig
    ledger: LedgerConfig
    dispatcher: DispatcherConfig
    tiers: TiersConfig
    tier_health: TierHealthConfig
    routing: RoutingConfig
    arbitration: ArbitrationConfig
    budgets: BudgetsConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "store": {
        "backend": "memory",
        "sqlite_path": "state/forge.sqlite",
        "busy_timeout_ms": 5000,
    },
    "locks": {
        "ttl_seconds": DEFAULT_LOCK_TTL_SECONDS,
        "renew_interval_seconds": DEFAULT_LOCK_RENEW_INTERVAL_SECONDS,
        "sweep_interval_seconds": DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS,
    },
    "ledger": {
        "max_attempts": DEFAULT_LEDGER_MAX_ATTEMPTS,
        "backoff_base_seconds": DEFAULT_LEDGER_BACKOFF_BASE_SECONDS,
    },
    "dispatcher": {
        "max_concurrency_per_project": 4,
        "max_task_attempts": DEFAULT_MAX_TASK_ATTEMPTS,
        "retry_backoff_seconds": 1.0,
        "poll_interval_seconds": 0.05,
        "unrecoverable_incident_threshold": DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD,
        "stage_deadline_seconds": None,
    },
    "tiers": {
        "cheap": {"unit_cost_per_1k_usd": 0.001, "timeout_seconds": 10.0, "capacity": 50},
        "mid": {"unit_cost_per_1k_usd": 0.005, "timeout_seconds": 15.0, "capacity": 200},
        "premium": {"unit_cost_per_1k_usd": 0.03, "timeout_seconds": 30.0, "capacity": 1000},
    },
    "tier_health": {
        "failure_threshold": DEFAULT_TIER_FAILURE_THRESHOLD,
        "window_seconds": DEFAULT_TIER_FAILURE_WINDOW_SECONDS,
        "cooldown_seconds": DEFAULT_TIER_COOLDOWN_SECONDS,
    },
    "routing": {
        "default_policy": "balanced",
        "premium_cutoff_ratio": PREMIUM_CUTOFF_RATIO,
        "complexity": {
            "input_size_thresholds": [500, 2000, 8000],
            "context_size_per_point": 1000,
            "max_context_points": 3,
            "category_weights": {
                "simple_qa": 0,
                "documentation": 1,
                "code_generation": 2,
                "refactoring": 3,
                "complex_reasoning": 3,
                "multi_step_planning": 4,
            },
            "default_category_weight": 2,
        },
        "policies": {
            "cost_optimized": [
                {"max_complexity": 3, "tier": "cheap"},
                {"max_complexity": 7, "tier": "mid"},
                {"max_complexity": 10, "tier": "premium"},
            ],
            "balanced": [
                {"max_complexity": 5, "tier": "cheap", "max_load": 0.8},
                {"max_complexity": 8, "tier": "mid"},
                {"max_complexity": 10, "tier": "premium"},
            ],
            "performance": [
                {"max_complexity": 8, "tier": "mid"},
                {"max_complexity": 10, "tier": "premium"},
            ],
        },
    },
    "arbitration": {
        "tier_chain": ["cheap", "mid", "premium"],
        "auto_resolve_whitespace": True,
    },
    "budgets": {
        "default_daily_usd": DEFAULT_DAILY_BUDGET_USD,
        "default_monthly_usd": DEFAULT_MONTHLY_BUDGET_USD,
        "warning_ratio": BUDGET_WARNING_RATIO,
        "critical_ratio": BUDGET_CRITICAL_RATIO,
    },
    "paths": {
        "stage_plan": None,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
        "log_file": None,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_Parser = Callable[[object, str, _IssueCollector], object | None]


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade forge.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the forge-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``.

    Lists are replaced wholesale, never concatenated.
    """

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "store": _validate_store,
        "locks": _validate_locks,
        "ledger": _validate_ledger,
        "dispatcher": _validate_dispatcher,
        "tiers": _validate_tiers,
        "tier_health": _validate_tier_health,
        "routing": _validate_routing,
        "arbitration": _validate_arbitration,
        "budgets": _validate_budgets,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators) - {"paths"}, "", issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "schema_version", path, issues, out, _int_parser(minimum=1))
    version = out.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add(_join(path, "schema_version"), migration_guidance(version))
    return out


def _validate_store(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"backend", "sqlite_path", "busy_timeout_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "backend", path, issues, out, _enum_parser(("memory", "sqlite")))
    _take(payload, "sqlite_path", path, issues, out, _as_path_text)
    _take(payload, "busy_timeout_ms", path, issues, out, _int_parser(minimum=1))
    return out


def _validate_locks(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"ttl_seconds", "renew_interval_seconds", "sweep_interval_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        _take(payload, key, path, issues, out, _float_parser(exclusive_minimum=0.0))

    ttl = out.get("ttl_seconds")
    renew = out.get("renew_interval_seconds")
    if ttl is not None and renew is not None and renew >= ttl / 2:
        issues.add(
            _join(path, "renew_interval_seconds"),
            f"must be < ttl_seconds / 2 ({ttl / 2})",
        )
    return out


def _validate_ledger(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_attempts", "backoff_base_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "max_attempts", path, issues, out, _int_parser(minimum=1))
    _take(payload, "backoff_base_seconds", path, issues, out, _float_parser(minimum=0.0))
    return out


def _validate_dispatcher(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {
        "max_concurrency_per_project",
        "max_task_attempts",
        "retry_backoff_seconds",
        "poll_interval_seconds",
        "unrecoverable_incident_threshold",
    }
    _reject_unknown_keys(payload, required | {"stage_deadline_seconds"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "max_concurrency_per_project", path, issues, out, _int_parser(minimum=1))
    _take(payload, "max_task_attempts", path, issues, out, _int_parser(minimum=1))
    _take(payload, "retry_backoff_seconds", path, issues, out, _float_parser(minimum=0.0))
    _take(
        payload, "poll_interval_seconds", path, issues, out, _float_parser(exclusive_minimum=0.0)
    )
    _take(payload, "unrecoverable_incident_threshold", path, issues, out, _int_parser(minimum=1))
    if payload.get("stage_deadline_seconds") is None:
        out["stage_deadline_seconds"] = None
    else:
        _take(
            payload,
            "stage_deadline_seconds",
            path,
            issues,
            out,
            _float_parser(exclusive_minimum=0.0),
        )
    return out


def _validate_tiers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(TIER_NAMES), path, issues)
    _require_keys(payload, set(TIER_NAMES), path, issues)
    allowed = {"unit_cost_per_1k_usd", "timeout_seconds", "capacity"}
    out: dict[str, Any] = {}
    for tier in TIER_NAMES:
        raw = payload.get(tier)
        if raw is None:
            continue
        tier_path = _join(path, tier)
        section = _as_object(raw, tier_path, issues)
        if section is None:
            continue
        _reject_unknown_keys(section, allowed, tier_path, issues)
        _require_keys(section, allowed, tier_path, issues)
        parsed: dict[str, Any] = {}
        _take(section, "unit_cost_per_1k_usd", tier_path, issues, parsed, _float_parser(0.0))
        _take(
            section,
            "timeout_seconds",
            tier_path,
            issues,
            parsed,
            _float_parser(exclusive_minimum=0.0),
        )
        _take(section, "capacity", tier_path, issues, parsed, _int_parser(minimum=1))
        out[tier] = parsed
    return out


def _validate_tier_health(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"failure_threshold", "window_seconds", "cooldown_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "failure_threshold", path, issues, out, _int_parser(minimum=1))
    _take(payload, "window_seconds", path, issues, out, _float_parser(exclusive_minimum=0.0))
    _take(payload, "cooldown_seconds", path, issues, out, _float_parser(exclusive_minimum=0.0))
    return out


def _validate_routing(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"default_policy", "premium_cutoff_ratio", "complexity", "policies"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "default_policy", path, issues, out, _enum_parser(POLICY_NAMES))
    _take(payload, "premium_cutoff_ratio", path, issues, out, _ratio_parser)

    complexity_raw = payload.get("complexity")
    if complexity_raw is not None:
        complexity_path = _join(path, "complexity")
        complexity = _as_object(complexity_raw, complexity_path, issues)
        if complexity is not None:
            out["complexity"] = _validate_complexity(complexity, complexity_path, issues)

    policies_raw = payload.get("policies")
    if policies_raw is not None:
        policies_path = _join(path, "policies")
        policies = _as_object(policies_raw, policies_path, issues)
        if policies is not None:
            _reject_unknown_keys(policies, set(POLICY_NAMES), policies_path, issues)
            _require_keys(policies, set(POLICY_NAMES), policies_path, issues)
            out["policies"] = {
                name: _validate_policy_rules(
                    policies[name], _join(policies_path, name), issues
                )
                for name in POLICY_NAMES
                if name in policies
            }
    return out


def _validate_complexity(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "input_size_thresholds",
        "context_size_per_point",
        "max_context_points",
        "category_weights",
        "default_category_weight",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}

    if "input_size_thresholds" in payload:
        thresholds_path = _join(path, "input_size_thresholds")
        raw = payload["input_size_thresholds"]
        if not isinstance(raw, list) or len(raw) != 3:
            issues.add(thresholds_path, "expected a list of three integers")
        else:
            parsed = [
                _as_int(item, f"{thresholds_path}[{index}]", issues, minimum=1)
                for index, item in enumerate(raw)
            ]
            if all(item is not None for item in parsed):
                if parsed != sorted(set(parsed)):
                    issues.add(thresholds_path, "must be strictly increasing")
                else:
                    out["input_size_thresholds"] = parsed

    _take(payload, "context_size_per_point", path, issues, out, _int_parser(minimum=1))
    _take(payload, "max_context_points", path, issues, out, _int_parser(minimum=0, maximum=3))
    _take(
        payload, "default_category_weight", path, issues, out, _int_parser(minimum=0, maximum=4)
    )

    if "category_weights" in payload:
        weights_path = _join(path, "category_weights")
        weights = _as_object(payload["category_weights"], weights_path, issues)
        if weights is not None:
            parsed_weights: dict[str, int] = {}
            for category in sorted(weights):
                category_path = _join(weights_path, category)
                if not _CATEGORY_PATTERN.fullmatch(category):
                    issues.add(category_path, "category must match ^[a-z][a-z0-9_]*$")
                    continue
                weight = _as_int(weights[category], category_path, issues, minimum=0, maximum=4)
                if weight is not None:
                    parsed_weights[category] = weight
            out["category_weights"] = parsed_weights
    return out


def _validate_policy_rules(
    value: object, path: str, issues: _IssueCollector
) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not value:
        issues.add(path, "expected a non-empty list of rules")
        return []
    rules: list[dict[str, Any]] = []
    for index, raw in enumerate(value):
        rule_path = f"{path}[{index}]"
        rule = _as_object(raw, rule_path, issues)
        if rule is None:
            continue
        _reject_unknown_keys(rule, {"max_complexity", "tier", "max_load"}, rule_path, issues)
        _require_keys(rule, {"max_complexity", "tier"}, rule_path, issues)
        parsed: dict[str, Any] = {}
        _take(
            rule, "max_complexity", rule_path, issues, parsed, _int_parser(0, MAX_COMPLEXITY)
        )
        _take(rule, "tier", rule_path, issues, parsed, _enum_parser(TIER_NAMES))
        _take(rule, "max_load", rule_path, issues, parsed, _ratio_parser)
        if {"max_complexity", "tier"} <= parsed.keys():
            rules.append(parsed)

    ceilings = [rule["max_complexity"] for rule in rules]
    if ceilings != sorted(ceilings):
        issues.add(path, "rules must be ordered by ascending max_complexity")
    if rules and rules[-1]["max_complexity"] != MAX_COMPLEXITY:
        issues.add(path, f"last rule must cover max_complexity {MAX_COMPLEXITY}")
    if rules and "max_load" in rules[-1]:
        issues.add(path, "last rule must not be load-gated")
    return rules


def _validate_arbitration(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"tier_chain", "auto_resolve_whitespace"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}

    if "tier_chain" in payload:
        chain_path = _join(path, "tier_chain")
        raw = payload["tier_chain"]
        if not isinstance(raw, list) or not raw:
            issues.add(chain_path, "expected a non-empty list of tiers")
        else:
            parser = _enum_parser(TIER_NAMES)
            chain = [parser(item, f"{chain_path}[{i}]", issues) for i, item in enumerate(raw)]
            if all(item is not None for item in chain):
                if len(set(chain)) != len(chain):
                    issues.add(chain_path, "tiers must not repeat")
                else:
                    out["tier_chain"] = chain

    _take(payload, "auto_resolve_whitespace", path, issues, out, _as_bool)
    return out


def _validate_budgets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"default_daily_usd", "default_monthly_usd", "warning_ratio", "critical_ratio"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _take(payload, "default_daily_usd", path, issues, out, _float_parser(exclusive_minimum=0.0))
    _take(payload, "default_monthly_usd", path, issues, out, _float_parser(exclusive_minimum=0.0))
    _take(payload, "warning_ratio", path, issues, out, _ratio_parser)
    _take(payload, "critical_ratio", path, issues, out, _ratio_parser)

    warning = out.get("warning_ratio")
    critical = out.get("critical_ratio")
    if warning is not None and critical is not None and warning >= critical:
        issues.add(_join(path, "warning_ratio"), "must be < critical_ratio")
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"stage_plan"}, path, issues)
    out: dict[str, Any] = {"stage_plan": None}
    if payload.get("stage_plan") is not None:
        _take(payload, "stage_plan", path, issues, out, _as_path_text)
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {"log_level", "log_format", "redact_secrets"}
    _reject_unknown_keys(payload, required | {"log_file"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {"log_file": None}
    _take(
        payload,
        "log_level",
        path,
        issues,
        out,
        _enum_parser(("DEBUG", "INFO", "WARNING", "ERROR")),
    )
    _take(payload, "log_format", path, issues, out, _enum_parser(("json", "console")))
    _take(payload, "redact_secrets", path, issues, out, _as_bool)
    if payload.get("log_file") is not None:
        _take(payload, "log_file", path, issues, out, _as_path_text)
    return out


def _take(
    payload: Mapping[str, object],
    key: str,
    path: str,
    issues: _IssueCollector,
    out: dict[str, Any],
    parser: _Parser,
) -> None:
    if key not in payload:
        return
    parsed = parser(payload[key], _join(path, key), issues)
    if parsed is not None:
        out[key] = parsed


def _int_parser(minimum: int | None = None, maximum: int | None = None) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> int | None:
        return _as_int(value, path, issues, minimum=minimum, maximum=maximum)

    return parse


def _float_parser(
    minimum: float | None = None, *, exclusive_minimum: float | None = None
) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> float | None:
        parsed = _as_float(value, path, issues, minimum=minimum)
        if parsed is not None and exclusive_minimum is not None and parsed <= exclusive_minimum:
            issues.add(path, f"must be > {exclusive_minimum}")
            return None
        return parsed

    return parse


def _enum_parser(allowed_values: tuple[str, ...]) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> str | None:
        return _as_enum(value, path, issues, allowed_values=allowed_values)

    return parse


def _ratio_parser(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues, minimum=0.0)
    if parsed is not None and parsed > 1.0:
        issues.add(path, "must be <= 1.0")
        return None
    return parsed


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "MAX_COMPLEXITY",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "POLICY_NAMES",
    "PolicyRule",
    "TIER_NAMES",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
