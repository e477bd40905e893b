"""Unit tests for domain model validation and canonical serialization."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from forge_orchestrator.domain.ids import EntityKind, new_id
from forge_orchestrator.domain.messages import ConflictMessage, TaskOutcome, TaskResultMessage
from forge_orchestrator.domain.models import (
    ArbitrationAttempt,
    ArbitrationOutcome,
    BudgetEntry,
    Conflict,
    ConflictKind,
    ConflictStatus,
    Incident,
    IncidentKind,
    Project,
    ProjectPhase,
    ProjectState,
    Stage,
    Task,
    Tier,
    payload_files,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _project(**overrides: object) -> Project:
    values: dict[str, object] = {
        "id": new_id(EntityKind.PROJECT),
        "name": "storefront",
        "story_points": 8,
        "daily_budget_usd": 50.0,
        "monthly_budget_usd": 1000.0,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return Project(**values)  # type: ignore[arg-type]


def _task(project_id: str, **overrides: object) -> Task:
    values: dict[str, object] = {
        "id": new_id(EntityKind.TASK),
        "project_id": project_id,
        "stage": 7,
        "target_file_paths": ["/src/app.js"],
        "input_payload": {"category": "code_generation", "files": {"/src/app.js": "v0\n"}},
        "created_at": NOW,
    }
    values.update(overrides)
    return Task(**values)  # type: ignore[arg-type]


def test_project_normalizes_fields_and_serializes_canonically() -> None:
    project = _project(
        created_at="2026-10-19T14:00:00+02:00",
        phase="stage_running",
        routing_policy="performance",
    )

    assert project.created_at == NOW
    assert project.phase is ProjectPhase.STAGE_RUNNING
    assert not project.is_terminal

    payload = project.to_dict()
    assert payload["created_at"] == "2026-10-19T12:00:00.000000Z"
    assert payload["routing_policy"] == "performance"
    assert Project.from_json(project.to_json()) == project


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"id": "proj-123"}, "Project.id"),
        ({"name": "   "}, "Project.name: must be at least 1 character"),
        ({"story_points": -1}, "Project.story_points: must be >= 0"),
        ({"daily_budget_usd": float("nan")}, "Project.daily_budget_usd: must be finite"),
        ({"created_at": datetime(2026, 10, 19)}, "timezone-aware UTC"),
        ({"phase": "sleeping"}, "Project.phase: invalid value 'sleeping'"),
        ({"current_stage": 11}, "Project.current_stage: must be <= 10"),
    ],
)
def test_project_rejects_invalid_fields(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _project(**overrides)


def test_task_validates_paths_and_payload() -> None:
    project_id = new_id(EntityKind.PROJECT)

    with pytest.raises(ValueError, match="traversal"):
        _task(project_id, target_file_paths=["/src/../etc/passwd"])
    with pytest.raises(ValueError, match="duplicate"):
        _task(project_id, target_file_paths=["/a.py", "/a.py"])
    with pytest.raises(ValueError, match="not JSON-serializable"):
        _task(project_id, input_payload={"handle": object()})
    with pytest.raises(ValueError, match="Task.stage: must be >= 1"):
        _task(project_id, stage=0)

    task = _task(project_id, target_file_paths=[])
    assert task.target_file_paths == ()


def test_task_content_prefers_output_then_merged_then_input() -> None:
    task = _task(new_id(EntityKind.PROJECT))
    assert task.content_for("/src/app.js") == "v0\n"

    task.input_payload["merged_files"] = {"/src/app.js": "merged\n"}
    assert task.content_for("/src/app.js") == "merged\n"

    task.output_payload = {"files": {"/src/app.js": "output\n"}}
    assert task.content_for("/src/app.js") == "output\n"
    assert task.content_for("/src/other.js") is None


def test_payload_files_ignores_non_text_entries() -> None:
    assert payload_files(None) == {}
    assert payload_files({"files": ["not", "a", "map"]}) == {}
    assert payload_files({"files": {"/a": "x", "/b": 3}}) == {"/a": "x"}


def test_conflict_requires_two_distinct_tasks_and_rebuilds_attempts() -> None:
    project_id = new_id(EntityKind.PROJECT)
    first, second = new_id(EntityKind.TASK), new_id(EntityKind.TASK)

    with pytest.raises(ValueError, match="at least 2"):
        Conflict(
            id=new_id(EntityKind.CONFLICT),
            project_id=project_id,
            stage=3,
            file_path="/docs/findings.md",
            competing_task_ids=(first,),
            kind=ConflictKind.DIVERGENT_OUTPUT,
            detected_at=NOW,
        )

    conflict = Conflict(
        id=new_id(EntityKind.CONFLICT),
        project_id=project_id,
        stage=3,
        file_path="/docs/findings.md",
        competing_task_ids=[first, second],
        kind="divergent_output",
        detected_at=NOW,
        status="escalated",
        resolved_output="",
        attempts=[
            {"tier": "cheap", "outcome": "skipped", "attempted_at": "2026-10-19T12:00:00Z"},
            ArbitrationAttempt(
                tier=Tier.MID, outcome=ArbitrationOutcome.TIMEOUT, attempted_at=NOW
            ),
        ],
    )

    assert conflict.competing_task_ids == (first, second)
    assert conflict.is_open
    assert conflict.status is ConflictStatus.ESCALATED
    assert conflict.resolved_output == ""
    assert conflict.attempted_tiers == (Tier.MID,)
    assert conflict.involves(second, first)
    assert not conflict.involves(new_id(EntityKind.TASK))
    assert Conflict.from_dict(conflict.to_dict()) == conflict


def test_arbitration_outcome_success_set() -> None:
    assert {outcome for outcome in ArbitrationOutcome if outcome.succeeded} == {
        ArbitrationOutcome.MERGED,
        ArbitrationOutcome.PICKED_OURS,
        ArbitrationOutcome.PICKED_THEIRS,
    }


def test_budget_entry_and_incident_validation() -> None:
    project_id = new_id(EntityKind.PROJECT)

    entry = BudgetEntry(
        id=new_id(EntityKind.BUDGET_ENTRY),
        project_id=project_id,
        tier="premium",
        tokens_in=10,
        tokens_out=5,
        cost_usd=1,
        timestamp=NOW.astimezone(timezone(timedelta(hours=-5))),
    )
    assert entry.cost_usd == 1.0
    assert entry.timestamp.tzinfo is UTC
    with pytest.raises(ValueError, match="BudgetEntry.cost_usd: must be >= 0.0"):
        BudgetEntry(
            id=new_id(EntityKind.BUDGET_ENTRY),
            project_id=project_id,
            tier=Tier.CHEAP,
            tokens_in=0,
            tokens_out=0,
            cost_usd=-0.01,
            timestamp=NOW,
        )

    with pytest.raises(ValueError, match="Incident.conflict_id"):
        Incident(
            id=new_id(EntityKind.INCIDENT),
            project_id=project_id,
            kind=IncidentKind.CONFLICT_UNRESOLVABLE,
            message="arbitration exhausted",
            created_at=NOW,
            conflict_id=new_id(EntityKind.TASK),
        )


def test_from_dict_rejects_unknown_and_missing_fields() -> None:
    payload = _project().to_dict()

    with pytest.raises(ValueError, match=r"unexpected fields: \['colour'\]"):
        Project.from_dict({**payload, "colour": "blue"})
    del payload["name"]
    with pytest.raises(ValueError, match=r"missing required fields: \['name'\]"):
        Project.from_dict(payload)
    with pytest.raises(ValueError, match="JSON root must be an object"):
        Project.from_json("[]")


def test_project_state_consistency_and_round_trip() -> None:
    project = _project()
    task = _task(project.id)
    stages = tuple(Stage(ordinal=index, name=f"stage {index}") for index in range(1, 11))
    incident = Incident(
        id=new_id(EntityKind.INCIDENT),
        project_id=project.id,
        kind=IncidentKind.TASK_FAILED,
        message="worker crashed",
        created_at=NOW,
        stage=7,
        task_ids=(task.id,),
    )

    state = ProjectState(
        project=project, stages=stages, tasks={task.id: task}, incidents=(incident,)
    )

    assert state.stage(7).name == "stage 7"
    assert state.tasks_in_stage(7) == [task]
    assert ProjectState.from_json(state.to_json()).to_dict() == state.to_dict()
    with pytest.raises(KeyError):
        state.task(new_id(EntityKind.TASK))
    with pytest.raises(ValueError, match="without gaps"):
        ProjectState(project=project, stages=stages[1:])
    with pytest.raises(ValueError, match="another project"):
        foreign = _task(new_id(EntityKind.PROJECT))
        ProjectState(project=project, stages=stages, tasks={foreign.id: foreign})


def test_queue_messages_validate_and_round_trip() -> None:
    message = TaskResultMessage(
        id=new_id(EntityKind.MESSAGE),
        project_id=new_id(EntityKind.PROJECT),
        task_id=new_id(EntityKind.TASK),
        tier="mid",
        outcome="succeeded",
        finished_at=NOW,
        output={"files": {"/a.py": "print()\n"}},
        tokens_in=12,
    )

    assert message.succeeded
    assert message.outcome is TaskOutcome.SUCCEEDED
    assert TaskResultMessage.from_json(message.to_json()) == message
    with pytest.raises(ValueError, match="ConflictMessage.conflict_id"):
        ConflictMessage(project_id=message.project_id, conflict_id=message.task_id)
