"""
forge-orchestrator — stage plan loading.

File: src/forge_orchestrator/planning/stage_plan.py
Last updated: 2026-10-19

Purpose
- Load the ordered ten-stage workflow (names and default task categories) from
  the packaged YAML plan or an operator-supplied override.

Functional requirements
- Exactly ``STAGE_COUNT`` stages with ordinals 1..N in order and unique names.
- Malformed plans raise ``StagePlanError`` with a field path.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

import yaml

from forge_orchestrator.constants import STAGE_COUNT, STAGE_PLAN_SCHEMA_VERSION

_PACKAGED_PLAN = "stage_plan.yaml"
_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class StagePlanError(ValueError):
    """Raised when a stage plan cannot be read or fails validation."""


@dataclass(frozen=True, slots=True)
class StageDefinition:
    ordinal: int
    name: str
    task_category: str


@dataclass(frozen=True, slots=True)
class StagePlan:
    stages: tuple[StageDefinition, ...]

    def definition(self, ordinal: int) -> StageDefinition:
        if not 1 <= ordinal <= len(self.stages):
            raise KeyError(ordinal)
        return self.stages[ordinal - 1]

    def name_of(self, ordinal: int) -> str:
        return self.definition(ordinal).name

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)


def load_stage_plan(path: str | Path | None = None) -> StagePlan:
    """Load the packaged plan, or the YAML document at ``path`` when given."""
    if path is None:
        source = "<packaged stage_plan.yaml>"
        text = resources.files(__package__).joinpath(_PACKAGED_PLAN).read_text(encoding="utf-8")
    else:
        source = str(path)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise StagePlanError(f"unable to read stage plan {source}: {exc}") from exc
    return parse_stage_plan(text, source=source)


def parse_stage_plan(text: str, *, source: str = "<string>") -> StagePlan:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise StagePlanError(f"invalid YAML in {source}: {exc}") from exc

    if not isinstance(document, dict):
        raise StagePlanError(f"{source}: root must be a mapping")
    version = document.get("schema_version")
    if version != STAGE_PLAN_SCHEMA_VERSION:
        raise StagePlanError(
            f"{source}: schema_version must be {STAGE_PLAN_SCHEMA_VERSION}, got {version!r}"
        )
    raw_stages = document.get("stages")
    if not isinstance(raw_stages, list) or len(raw_stages) != STAGE_COUNT:
        raise StagePlanError(f"{source}: stages must be a list of {STAGE_COUNT} entries")

    stages: list[StageDefinition] = []
    seen_names: set[str] = set()
    for index, raw in enumerate(raw_stages):
        path = f"{source}: stages[{index}]"
        if not isinstance(raw, dict):
            raise StagePlanError(f"{path} must be a mapping")
        ordinal = raw.get("ordinal")
        if ordinal != index + 1:
            raise StagePlanError(f"{path}.ordinal must be {index + 1}, got {ordinal!r}")
        name = raw.get("name")
        if not isinstance(name, str) or not _NAME_PATTERN.fullmatch(name):
            raise StagePlanError(f"{path}.name must match {_NAME_PATTERN.pattern}")
        if name in seen_names:
            raise StagePlanError(f"{path}.name {name!r} is duplicated")
        category = raw.get("task_category")
        if not isinstance(category, str) or not _NAME_PATTERN.fullmatch(category):
            raise StagePlanError(f"{path}.task_category must match {_NAME_PATTERN.pattern}")
        seen_names.add(name)
        stages.append(StageDefinition(ordinal=ordinal, name=name, task_category=category))
    return StagePlan(stages=tuple(stages))


__all__ = [
    "StageDefinition",
    "StagePlan",
    "StagePlanError",
    "load_stage_plan",
    "parse_stage_plan",
]
