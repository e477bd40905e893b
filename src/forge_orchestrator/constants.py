"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
LEDGER_SNAPSHOT_SCHEMA_VERSION: Final[int] = 1
COORDINATION_DB_SCHEMA_VERSION: Final[int] = 1
STAGE_PLAN_SCHEMA_VERSION: Final[int] = 1

# Project workflow shape.
STAGE_COUNT: Final[int] = 10
FIRST_STAGE: Final[int] = 1
LAST_STAGE: Final[int] = STAGE_COUNT
DEFAULT_STORY_POINTS: Final[int] = 8

# Lease defaults (seconds). Renewal must stay below half the TTL.
DEFAULT_LOCK_TTL_SECONDS: Final[float] = 300.0
DEFAULT_LOCK_RENEW_INTERVAL_SECONDS: Final[float] = 60.0
DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS: Final[float] = 15.0

# Context ledger optimistic-concurrency retry envelope.
DEFAULT_LEDGER_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_LEDGER_BACKOFF_BASE_SECONDS: Final[float] = 0.05

# Task retry envelope.
DEFAULT_MAX_TASK_ATTEMPTS: Final[int] = 3
DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD: Final[int] = 10

# Tier health circuit.
DEFAULT_TIER_FAILURE_THRESHOLD: Final[int] = 5
DEFAULT_TIER_FAILURE_WINDOW_SECONDS: Final[float] = 60.0
DEFAULT_TIER_COOLDOWN_SECONDS: Final[float] = 30.0

# Budget governor.
DEFAULT_DAILY_BUDGET_USD: Final[float] = 50.0
DEFAULT_MONTHLY_BUDGET_USD: Final[float] = 1000.0
PREMIUM_CUTOFF_RATIO: Final[float] = 0.95
BUDGET_WARNING_RATIO: Final[float] = 0.80
BUDGET_CRITICAL_RATIO: Final[float] = 0.90

# Coordination store key namespaces.
LOCK_KEY_PREFIX: Final[str] = "lock"
PROJECT_STATE_KEY_PREFIX: Final[str] = "project"
CONFLICT_INDEX_KEY_PREFIX: Final[str] = "conflict-index"
BUDGET_LOG_KEY_PREFIX: Final[str] = "budget"
TASK_RESULT_QUEUE: Final[str] = "ledger:task-results"
CONFLICT_QUEUE: Final[str] = "conflicts:pending"

__all__ = [
    "BUDGET_CRITICAL_RATIO",
    "BUDGET_LOG_KEY_PREFIX",
    "BUDGET_WARNING_RATIO",
    "CONFIG_SCHEMA_VERSION",
    "CONFLICT_INDEX_KEY_PREFIX",
    "CONFLICT_QUEUE",
    "COORDINATION_DB_SCHEMA_VERSION",
    "DEFAULT_DAILY_BUDGET_USD",
    "DEFAULT_LEDGER_BACKOFF_BASE_SECONDS",
    "DEFAULT_LEDGER_MAX_ATTEMPTS",
    "DEFAULT_LOCK_RENEW_INTERVAL_SECONDS",
    "DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_LOCK_TTL_SECONDS",
    "DEFAULT_MAX_TASK_ATTEMPTS",
    "DEFAULT_MONTHLY_BUDGET_USD",
    "DEFAULT_STORY_POINTS",
    "DEFAULT_TIER_COOLDOWN_SECONDS",
    "DEFAULT_TIER_FAILURE_THRESHOLD",
    "DEFAULT_TIER_FAILURE_WINDOW_SECONDS",
    "DEFAULT_UNRECOVERABLE_INCIDENT_THRESHOLD",
    "FIRST_STAGE",
    "LAST_STAGE",
    "LEDGER_SNAPSHOT_SCHEMA_VERSION",
    "LOCK_KEY_PREFIX",
    "PREMIUM_CUTOFF_RATIO",
    "PROJECT_STATE_KEY_PREFIX",
    "STAGE_COUNT",
    "STAGE_PLAN_SCHEMA_VERSION",
    "TASK_RESULT_QUEUE",
]
