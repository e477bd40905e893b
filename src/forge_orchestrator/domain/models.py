"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePosixPath
from typing import Final, NoReturn, TypeVar, cast

from forge_orchestrator.constants import LAST_STAGE, LEDGER_SNAPSHOT_SCHEMA_VERSION
from forge_orchestrator.domain.ids import EntityKind, validate_id

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION: Final[int] = LEDGER_SNAPSHOT_SCHEMA_VERSION
_MAX_TEXT: Final[int] = 8192
_MAX_CONTENT: Final[int] = 2_000_000
_MAX_JSON_DEPTH: Final[int] = 16
_MAX_JSON_COLLECTION: Final[int] = 4096


class ProjectStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProjectPhase(StrEnum):
    """Dispatcher state machine position for a project."""

    PLANNING = "planning"
    STAGE_RUNNING = "stage_running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ConflictStatus(StrEnum):
    PENDING = "pending"
    AUTO_RESOLVED = "auto-resolved"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FAILED = "failed"


class ConflictKind(StrEnum):
    LOCK_CONTENTION = "lock_contention"
    DIVERGENT_OUTPUT = "divergent_output"


class Tier(StrEnum):
    """Compute tiers ordered cheapest first."""

    CHEAP = "cheap"
    MID = "mid"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return TIER_HIERARCHY.index(self)


TIER_HIERARCHY: Final[tuple[Tier, ...]] = (Tier.CHEAP, Tier.MID, Tier.PREMIUM)


class TierHealth(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class RoutingPolicy(StrEnum):
    COST_OPTIMIZED = "cost_optimized"
    BALANCED = "balanced"
    PERFORMANCE = "performance"


class BudgetPurpose(StrEnum):
    TASK = "task"
    ARBITRATION = "arbitration"


class IncidentKind(StrEnum):
    TASK_FAILED = "task_failed"
    CONFLICT_UNRESOLVABLE = "conflict_unresolvable"
    CROSS_STAGE_CONFLICT = "cross_stage_conflict"
    BUDGET_EXCEEDED = "budget_exceeded"
    STAGE_DEADLINE_EXCEEDED = "stage_deadline_exceeded"
    STAGE_STALLED = "stage_stalled"


class ArbitrationOutcome(StrEnum):
    """Result of one tier attempt inside the arbitration chain."""

    MERGED = "merged"
    PICKED_OURS = "picked_ours"
    PICKED_THEIRS = "picked_theirs"
    TIMEOUT = "timeout"
    ERROR = "error"
    INVALID = "invalid"
    EMPTY = "empty"
    IRRECONCILABLE = "irreconcilable"
    SKIPPED = "skipped"

    @property
    def succeeded(self) -> bool:
        return self in _SUCCESSFUL_ARBITRATION


_SUCCESSFUL_ARBITRATION: Final[frozenset[ArbitrationOutcome]] = frozenset(
    {ArbitrationOutcome.MERGED, ArbitrationOutcome.PICKED_OURS, ArbitrationOutcome.PICKED_THEIRS}
)

TERMINAL_PROJECT_PHASES: Final[frozenset[ProjectPhase]] = frozenset(
    {ProjectPhase.COMPLETED, ProjectPhase.FAILED, ProjectPhase.CANCELLED}
)
OPEN_CONFLICT_STATUSES: Final[frozenset[ConflictStatus]] = frozenset(
    {ConflictStatus.PENDING, ConflictStatus.ESCALATED}
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_files(payload: Mapping[str, object] | None, key: str = "files") -> dict[str, str]:
    """Return the ``{path: content}`` mapping stored under ``key`` of a task payload."""
    if not payload:
        return {}
    raw = payload.get(key)
    if not isinstance(raw, Mapping):
        return {}
    return {str(path): content for path, content in raw.items() if isinstance(content, str)}


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_int(
    value: object,
    path: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        _fail(path, f"must be <= {maximum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    if value is None:
        return None
    return _as_enum(enum_type, value, path)


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
) -> tuple[str, ...]:
    values = _as_sequence(value, path)
    if not allow_empty and not values:
        _fail(path, "must not be empty")
    if len(values) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(values))
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _as_id(value: object, path: str, kind: EntityKind) -> str:
    parsed = _as_str(value, path, max_len=64)
    try:
        return validate_id(parsed, kind)
    except ValueError as exc:
        _fail(path, str(exc))


def _as_id_tuple(
    value: object, path: str, kind: EntityKind, *, min_items: int = 0
) -> tuple[str, ...]:
    parsed = _as_str_tuple(value, path, allow_empty=min_items == 0, unique=True)
    if len(parsed) < min_items:
        _fail(path, f"must contain at least {min_items} item(s)")
    for index, item in enumerate(parsed):
        _as_id(item, f"{path}[{index}]", kind)
    return parsed


def _as_file_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=1024)
    if "\x00" in parsed:
        _fail(path, "must not contain NUL bytes")
    if any(part == ".." for part in PurePosixPath(parsed).parts):
        _fail(path, "must not contain '..' traversal")
    return parsed


def _as_stage(value: object, path: str) -> int:
    return _as_int(value, path, minimum=1, maximum=LAST_STAGE)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        if len(value) > _MAX_CONTENT:
            _fail(path, f"string exceeds max length {_MAX_CONTENT}")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("str", value.value)
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


@dataclass(slots=True)
class Project(CanonicalModel):
    id: str
    name: str
    story_points: int
    daily_budget_usd: float
    monthly_budget_usd: float
    created_at: datetime
    updated_at: datetime
    status: ProjectStatus = ProjectStatus.ACTIVE
    phase: ProjectPhase = ProjectPhase.PLANNING
    current_stage: int = 0
    routing_policy: RoutingPolicy = RoutingPolicy.BALANCED
    blocked_reason: str | None = None
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "Project.id", EntityKind.PROJECT)
        self.name = _as_str(self.name, "Project.name", max_len=256)
        self.story_points = _as_int(self.story_points, "Project.story_points", minimum=0)
        self.daily_budget_usd = _as_float(
            self.daily_budget_usd, "Project.daily_budget_usd", minimum=0.0
        )
        self.monthly_budget_usd = _as_float(
            self.monthly_budget_usd, "Project.monthly_budget_usd", minimum=0.0
        )
        self.created_at = _as_datetime(self.created_at, "Project.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Project.updated_at")
        self.status = _as_enum(ProjectStatus, self.status, "Project.status")
        self.phase = _as_enum(ProjectPhase, self.phase, "Project.phase")
        self.current_stage = _as_int(
            self.current_stage, "Project.current_stage", minimum=0, maximum=LAST_STAGE
        )
        self.routing_policy = _as_enum(RoutingPolicy, self.routing_policy, "Project.routing_policy")
        self.blocked_reason = _as_optional_str(self.blocked_reason, "Project.blocked_reason")
        self.schema_version = _as_int(self.schema_version, "Project.schema_version", minimum=1)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PROJECT_PHASES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Project:
        parsed = _expect_object(
            data,
            "Project",
            required={
                "id",
                "name",
                "story_points",
                "daily_budget_usd",
                "monthly_budget_usd",
                "created_at",
                "updated_at",
            },
            optional={
                "status",
                "phase",
                "current_stage",
                "routing_policy",
                "blocked_reason",
                "schema_version",
            },
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class Stage(CanonicalModel):
    ordinal: int
    name: str
    status: StageStatus = StageStatus.PENDING
    required_task_ids: tuple[str, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.ordinal = _as_stage(self.ordinal, "Stage.ordinal")
        self.name = _as_str(self.name, "Stage.name", max_len=128)
        self.status = _as_enum(StageStatus, self.status, "Stage.status")
        self.required_task_ids = _as_id_tuple(
            self.required_task_ids, "Stage.required_task_ids", EntityKind.TASK
        )
        self.started_at = _as_optional_datetime(self.started_at, "Stage.started_at")
        self.completed_at = _as_optional_datetime(self.completed_at, "Stage.completed_at")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Stage:
        parsed = _expect_object(
            data,
            "Stage",
            required={"ordinal", "name"},
            optional={"status", "required_task_ids", "started_at", "completed_at"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class Task(CanonicalModel):
    id: str
    project_id: str
    stage: int
    target_file_paths: tuple[str, ...]
    input_payload: dict[str, JSONValue]
    created_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker: str | None = None
    assigned_tier: Tier | None = None
    output_payload: dict[str, JSONValue] | None = None
    attempt_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    retry_after: datetime | None = None
    last_error: str | None = None
    resolved_conflict_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "Task.id", EntityKind.TASK)
        self.project_id = _as_id(self.project_id, "Task.project_id", EntityKind.PROJECT)
        self.stage = _as_stage(self.stage, "Task.stage")
        paths = _as_str_tuple(
            self.target_file_paths, "Task.target_file_paths", allow_empty=True, unique=True
        )
        self.target_file_paths = tuple(
            _as_file_path(item, f"Task.target_file_paths[{index}]")
            for index, item in enumerate(paths)
        )
        self.input_payload = _as_json_object(self.input_payload, "Task.input_payload")
        self.created_at = _as_datetime(self.created_at, "Task.created_at")
        self.status = _as_enum(TaskStatus, self.status, "Task.status")
        self.assigned_worker = _as_optional_str(self.assigned_worker, "Task.assigned_worker")
        self.assigned_tier = _as_optional_enum(Tier, self.assigned_tier, "Task.assigned_tier")
        if self.output_payload is not None:
            self.output_payload = _as_json_object(self.output_payload, "Task.output_payload")
        self.attempt_count = _as_int(self.attempt_count, "Task.attempt_count", minimum=0)
        self.started_at = _as_optional_datetime(self.started_at, "Task.started_at")
        self.finished_at = _as_optional_datetime(self.finished_at, "Task.finished_at")
        self.retry_after = _as_optional_datetime(self.retry_after, "Task.retry_after")
        self.last_error = _as_optional_str(self.last_error, "Task.last_error")
        self.resolved_conflict_ids = _as_id_tuple(
            self.resolved_conflict_ids, "Task.resolved_conflict_ids", EntityKind.CONFLICT
        )

    def content_for(self, file_path: str) -> str | None:
        """Latest content this task produced or carries for ``file_path``."""
        for candidate in (
            payload_files(self.output_payload),
            payload_files(self.input_payload, "merged_files"),
            payload_files(self.input_payload),
        ):
            if file_path in candidate:
                return candidate[file_path]
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = _expect_object(
            data,
            "Task",
            required={
                "id",
                "project_id",
                "stage",
                "target_file_paths",
                "input_payload",
                "created_at",
            },
            optional={
                "status",
                "assigned_worker",
                "assigned_tier",
                "output_payload",
                "attempt_count",
                "started_at",
                "finished_at",
                "retry_after",
                "last_error",
                "resolved_conflict_ids",
            },
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class ArbitrationAttempt(CanonicalModel):
    tier: Tier
    outcome: ArbitrationOutcome
    attempted_at: datetime
    detail: str | None = None
    confidence: float | None = None
    tokens_in: int = 0
    tokens_out: int = 0

    def __post_init__(self) -> None:
        self.tier = _as_enum(Tier, self.tier, "ArbitrationAttempt.tier")
        self.outcome = _as_enum(ArbitrationOutcome, self.outcome, "ArbitrationAttempt.outcome")
        self.attempted_at = _as_datetime(self.attempted_at, "ArbitrationAttempt.attempted_at")
        self.detail = _as_optional_str(self.detail, "ArbitrationAttempt.detail")
        if self.confidence is not None:
            self.confidence = _as_float(
                self.confidence, "ArbitrationAttempt.confidence", minimum=0.0
            )
        self.tokens_in = _as_int(self.tokens_in, "ArbitrationAttempt.tokens_in", minimum=0)
        self.tokens_out = _as_int(self.tokens_out, "ArbitrationAttempt.tokens_out", minimum=0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ArbitrationAttempt:
        parsed = _expect_object(
            data,
            "ArbitrationAttempt",
            required={"tier", "outcome", "attempted_at"},
            optional={"detail", "confidence", "tokens_in", "tokens_out"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class Conflict(CanonicalModel):
    id: str
    project_id: str
    stage: int
    file_path: str
    competing_task_ids: tuple[str, ...]
    kind: ConflictKind
    detected_at: datetime
    status: ConflictStatus = ConflictStatus.PENDING
    resolution_tier: Tier | None = None
    resolved_at: datetime | None = None
    resolved_output: str | None = None
    requeued_task_id: str | None = None
    attempts: tuple[ArbitrationAttempt, ...] = ()
    note: str | None = None

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "Conflict.id", EntityKind.CONFLICT)
        self.project_id = _as_id(self.project_id, "Conflict.project_id", EntityKind.PROJECT)
        self.stage = _as_stage(self.stage, "Conflict.stage")
        self.file_path = _as_file_path(self.file_path, "Conflict.file_path")
        self.competing_task_ids = _as_id_tuple(
            self.competing_task_ids, "Conflict.competing_task_ids", EntityKind.TASK, min_items=2
        )
        self.kind = _as_enum(ConflictKind, self.kind, "Conflict.kind")
        self.detected_at = _as_datetime(self.detected_at, "Conflict.detected_at")
        self.status = _as_enum(ConflictStatus, self.status, "Conflict.status")
        self.resolution_tier = _as_optional_enum(
            Tier, self.resolution_tier, "Conflict.resolution_tier"
        )
        self.resolved_at = _as_optional_datetime(self.resolved_at, "Conflict.resolved_at")
        if self.resolved_output is not None:
            self.resolved_output = _as_str(
                self.resolved_output,
                "Conflict.resolved_output",
                min_len=0,
                max_len=_MAX_CONTENT,
                strip=False,
            )
        if self.requeued_task_id is not None:
            self.requeued_task_id = _as_id(
                self.requeued_task_id, "Conflict.requeued_task_id", EntityKind.TASK
            )
        self.attempts = tuple(
            item
            if isinstance(item, ArbitrationAttempt)
            else ArbitrationAttempt.from_dict(cast("Mapping[str, object]", item))
            for item in _as_sequence(self.attempts, "Conflict.attempts")
        )
        self.note = _as_optional_str(self.note, "Conflict.note")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_CONFLICT_STATUSES

    @property
    def attempted_tiers(self) -> tuple[Tier, ...]:
        return tuple(
            attempt.tier
            for attempt in self.attempts
            if attempt.outcome is not ArbitrationOutcome.SKIPPED
        )

    def involves(self, *task_ids: str) -> bool:
        return all(task_id in self.competing_task_ids for task_id in task_ids)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Conflict:
        parsed = _expect_object(
            data,
            "Conflict",
            required={
                "id",
                "project_id",
                "stage",
                "file_path",
                "competing_task_ids",
                "kind",
                "detected_at",
            },
            optional={
                "status",
                "resolution_tier",
                "resolved_at",
                "resolved_output",
                "requeued_task_id",
                "attempts",
                "note",
            },
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class BudgetEntry(CanonicalModel):
    id: str
    project_id: str
    tier: Tier
    tokens_in: int
    tokens_out: int
    cost_usd: float
    timestamp: datetime
    task_id: str | None = None
    purpose: BudgetPurpose = BudgetPurpose.TASK

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "BudgetEntry.id", EntityKind.BUDGET_ENTRY)
        self.project_id = _as_id(self.project_id, "BudgetEntry.project_id", EntityKind.PROJECT)
        self.tier = _as_enum(Tier, self.tier, "BudgetEntry.tier")
        self.tokens_in = _as_int(self.tokens_in, "BudgetEntry.tokens_in", minimum=0)
        self.tokens_out = _as_int(self.tokens_out, "BudgetEntry.tokens_out", minimum=0)
        self.cost_usd = _as_float(self.cost_usd, "BudgetEntry.cost_usd", minimum=0.0)
        self.timestamp = _as_datetime(self.timestamp, "BudgetEntry.timestamp")
        if self.task_id is not None:
            self.task_id = _as_id(self.task_id, "BudgetEntry.task_id", EntityKind.TASK)
        self.purpose = _as_enum(BudgetPurpose, self.purpose, "BudgetEntry.purpose")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BudgetEntry:
        parsed = _expect_object(
            data,
            "BudgetEntry",
            required={
                "id", "project_id", "tier", "tokens_in", "tokens_out", "cost_usd", "timestamp"
            },
            optional={"task_id", "purpose"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class Incident(CanonicalModel):
    id: str
    project_id: str
    kind: IncidentKind
    message: str
    created_at: datetime
    stage: int | None = None
    task_ids: tuple[str, ...] = ()
    conflict_id: str | None = None

    def __post_init__(self) -> None:
        self.id = _as_id(self.id, "Incident.id", EntityKind.INCIDENT)
        self.project_id = _as_id(self.project_id, "Incident.project_id", EntityKind.PROJECT)
        self.kind = _as_enum(IncidentKind, self.kind, "Incident.kind")
        self.message = _as_str(self.message, "Incident.message")
        self.created_at = _as_datetime(self.created_at, "Incident.created_at")
        if self.stage is not None:
            self.stage = _as_stage(self.stage, "Incident.stage")
        self.task_ids = _as_id_tuple(self.task_ids, "Incident.task_ids", EntityKind.TASK)
        if self.conflict_id is not None:
            self.conflict_id = _as_id(self.conflict_id, "Incident.conflict_id", EntityKind.CONFLICT)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Incident:
        parsed = _expect_object(
            data,
            "Incident",
            required={"id", "project_id", "kind", "message", "created_at"},
            optional={"stage", "task_ids", "conflict_id"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(slots=True)
class ProjectState(CanonicalModel):
    """Versioned ledger snapshot holding every record of one project."""

    project: Project
    stages: tuple[Stage, ...]
    tasks: dict[str, Task] = field(default_factory=dict)
    conflicts: dict[str, Conflict] = field(default_factory=dict)
    incidents: tuple[Incident, ...] = ()
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        if not isinstance(self.project, Project):
            _fail("ProjectState.project", "expected Project")
        self.stages = tuple(self.stages)
        ordinals = [stage.ordinal for stage in self.stages]
        if ordinals != list(range(1, len(ordinals) + 1)):
            _fail("ProjectState.stages", "stages must be ordered 1..N without gaps")
        for task_id, task in self.tasks.items():
            if task.id != task_id:
                _fail(f"ProjectState.tasks.{task_id}", "key does not match task id")
            if task.project_id != self.project.id:
                _fail(f"ProjectState.tasks.{task_id}", "task belongs to another project")
        for conflict_id, conflict in self.conflicts.items():
            if conflict.id != conflict_id:
                _fail(f"ProjectState.conflicts.{conflict_id}", "key does not match conflict id")
        self.incidents = tuple(self.incidents)
        self.schema_version = _as_int(self.schema_version, "ProjectState.schema_version", minimum=1)

    def stage(self, ordinal: int) -> Stage:
        for stage in self.stages:
            if stage.ordinal == ordinal:
                return stage
        raise KeyError(f"stage {ordinal} not defined for {self.project.id}")

    def task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise KeyError(f"task {task_id} not found in {self.project.id}") from None

    def tasks_in_stage(self, ordinal: int) -> list[Task]:
        return sorted(
            (task for task in self.tasks.values() if task.stage == ordinal),
            key=lambda task: (task.created_at, task.id),
        )

    def conflicts_in_stage(self, ordinal: int) -> list[Conflict]:
        return sorted(
            (conflict for conflict in self.conflicts.values() if conflict.stage == ordinal),
            key=lambda conflict: (conflict.detected_at, conflict.id),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProjectState:
        parsed = _expect_object(
            data,
            "ProjectState",
            required={"project", "stages"},
            optional={"tasks", "conflicts", "incidents", "schema_version"},
        )
        tasks_raw = parsed.get("tasks", {})
        conflicts_raw = parsed.get("conflicts", {})
        if not isinstance(tasks_raw, Mapping) or not isinstance(conflicts_raw, Mapping):
            _fail("ProjectState", "tasks and conflicts must be objects keyed by id")
        return cls(
            project=Project.from_dict(cast("Mapping[str, object]", parsed["project"])),
            stages=tuple(
                Stage.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed["stages"], "ProjectState.stages")
            ),
            tasks={
                str(key): Task.from_dict(cast("Mapping[str, object]", item))
                for key, item in tasks_raw.items()
            },
            conflicts={
                str(key): Conflict.from_dict(cast("Mapping[str, object]", item))
                for key, item in conflicts_raw.items()
            },
            incidents=tuple(
                Incident.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("incidents", []), "ProjectState.incidents")
            ),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION),
                "ProjectState.schema_version",
                minimum=1,
            ),
        )


__all__ = [
    "ArbitrationAttempt",
    "ArbitrationOutcome",
    "BudgetEntry",
    "BudgetPurpose",
    "CanonicalModel",
    "Conflict",
    "ConflictKind",
    "ConflictStatus",
    "Incident",
    "IncidentKind",
    "JSONValue",
    "OPEN_CONFLICT_STATUSES",
    "Project",
    "ProjectPhase",
    "ProjectState",
    "ProjectStatus",
    "RoutingPolicy",
    "Stage",
    "StageStatus",
    "TERMINAL_PROJECT_PHASES",
    "TIER_HIERARCHY",
    "Task",
    "TaskStatus",
    "Tier",
    "TierHealth",
    "canonical_json",
    "payload_files",
]
