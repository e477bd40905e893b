"""
forge-orchestrator — tiered conflict arbitration.

File: src/forge_orchestrator/integration_plane/arbitrator.py
Last updated: 2026-10-19

Purpose
- Resolve competing edits to one path by walking an ordered tier chain
  (cheap -> mid -> premium by default) until one tier returns a usable verdict.

What should be included in this file
- Ripeness check: every competing task completed or blocked, one completed.
- Deterministic trivial proofs (identical or whitespace-only divergence, a
  single proposal) that resolve without invoking a tier.
- Prompt rendering through a strict Jinja2 template with unified diffs of each
  side against the last known good version of the file.
- Verdict parsing into merge / pick-one-side / irreconcilable decisions.

Functional requirements
- Escalate only on hard failure: timeout, exception, unsuccessful invocation,
  unparsable verdict, empty merge, irreconcilable. A low-confidence success
  is accepted.
- Unavailable tiers are skipped and recorded as skipped attempts.
- Success writes one consolidated output, requeues exactly one task and
  releases the original locks. Exhausting the chain fails the conflict and
  blocks the project.
- Arbitration token usage is billed to the budget ledger.
"""

from __future__ import annotations

import difflib
import json
import math
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from jinja2 import Environment, PackageLoader, StrictUndefined

from forge_orchestrator.control_plane.budgets import BudgetLedger
from forge_orchestrator.control_plane.ledger import ContextLedger
from forge_orchestrator.control_plane.locks import LockManager
from forge_orchestrator.control_plane.router import TierHealthBoard
from forge_orchestrator.coordination.store import Clock
from forge_orchestrator.domain.errors import ConflictNotFoundError, LedgerWriteConflictError
from forge_orchestrator.domain.messages import ConflictMessage
from forge_orchestrator.domain.models import (
    TIER_HIERARCHY,
    ArbitrationAttempt,
    ArbitrationOutcome,
    BudgetPurpose,
    Conflict,
    ConflictStatus,
    ProjectState,
    TaskStatus,
    Tier,
)
from forge_orchestrator.observability.logging import correlation_scope
from forge_orchestrator.synthesis_plane.interfaces import TierInvocation, TierInvoker
from forge_orchestrator.synthesis_plane.tier_catalog import TierCatalog
from forge_orchestrator.utils.concurrency import call_with_deadline

TEMPLATE_NAME = "arbitration.md.j2"
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class MergeDecision(StrEnum):
    MERGED = "merged"
    OURS = "ours"
    THEIRS = "theirs"
    IRRECONCILABLE = "irreconcilable"


class TrivialProof(StrEnum):
    """Why a conflict could be closed without invoking any tier."""

    IDENTICAL = "identical"
    WHITESPACE_ONLY = "whitespace_only"
    SINGLE_PROPOSAL = "single_proposal"


@dataclass(frozen=True, slots=True)
class ArbitrationRequest:
    """Both sides of one conflict plus the last known good version."""

    conflict_id: str
    project_id: str
    stage: int
    file_path: str
    kind: str
    ours_task_id: str
    theirs_task_id: str
    ours: str | None
    theirs: str | None
    base: str | None = None

    @classmethod
    def from_state(cls, state: ProjectState, conflict: Conflict) -> ArbitrationRequest:
        ours_id = conflict.competing_task_ids[0]
        theirs_id = conflict.competing_task_ids[-1]
        return cls(
            conflict_id=conflict.id,
            project_id=conflict.project_id,
            stage=conflict.stage,
            file_path=conflict.file_path,
            kind=conflict.kind.value,
            ours_task_id=ours_id,
            theirs_task_id=theirs_id,
            ours=_content_of(state, ours_id, conflict.file_path),
            theirs=_content_of(state, theirs_id, conflict.file_path),
            base=last_known_good(state, conflict),
        )

    def diff_against_base(self, side: str | None, label: str) -> str:
        return _unified_diff(
            path=self.file_path, before=self.base or "", after=side or "", to_label=label
        )


@dataclass(frozen=True, slots=True)
class Verdict:
    outcome: ArbitrationOutcome
    content: str | None = None
    confidence: float | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class ResolutionOutcome:
    conflict_id: str
    project_id: str
    status: ConflictStatus
    tier: Tier | None = None
    attempts: tuple[ArbitrationAttempt, ...] = ()
    output: str | None = None
    requeued_task_id: str | None = None
    trivial_proof: TrivialProof | None = None

    @property
    def resolved(self) -> bool:
        return self.status in (ConflictStatus.RESOLVED, ConflictStatus.AUTO_RESOLVED)


def is_ripe(state: ProjectState, conflict: Conflict) -> bool:
    """Every competing task is completed or blocked and at least one completed."""
    statuses = [
        state.tasks[task_id].status
        for task_id in conflict.competing_task_ids
        if task_id in state.tasks
    ]
    if len(statuses) != len(conflict.competing_task_ids):
        return False
    settled = all(status in (TaskStatus.COMPLETED, TaskStatus.BLOCKED) for status in statuses)
    return settled and TaskStatus.COMPLETED in statuses


def last_known_good(state: ProjectState, conflict: Conflict) -> str | None:
    """Latest completed output for the path from a task outside the conflict."""
    latest: tuple[datetime, str] | None = None
    for task in state.tasks.values():
        if task.id in conflict.competing_task_ids or task.status is not TaskStatus.COMPLETED:
            continue
        content = task.content_for(conflict.file_path)
        if content is None or task.output_payload is None:
            continue
        stamp = task.finished_at or task.created_at
        if latest is None or stamp > latest[0]:
            latest = (stamp, content)
    return latest[1] if latest is not None else None


def parse_verdict(raw: str, request: ArbitrationRequest) -> Verdict:
    """Turn a tier's JSON reply into an attempt outcome and the content it selects."""
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced is not None:
        text = fenced.group(1)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        return Verdict(ArbitrationOutcome.INVALID, detail=f"unparsable verdict: {exc.msg}")
    if not isinstance(payload, dict):
        return Verdict(ArbitrationOutcome.INVALID, detail="verdict must be a JSON object")

    try:
        decision = MergeDecision(payload.get("decision"))
    except ValueError:
        return Verdict(
            ArbitrationOutcome.INVALID, detail=f"unknown decision {payload.get('decision')!r}"
        )

    confidence = payload.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or not math.isfinite(confidence)
    ):
        confidence = None
    else:
        confidence = min(max(float(confidence), 0.0), 1.0)

    match decision:
        case MergeDecision.MERGED:
            content = payload.get("content")
            if not isinstance(content, str) or not content.strip():
                return Verdict(ArbitrationOutcome.EMPTY, detail="merge produced no content")
            return Verdict(ArbitrationOutcome.MERGED, content=content, confidence=confidence)
        case MergeDecision.OURS:
            if request.ours is None:
                return Verdict(ArbitrationOutcome.INVALID, detail="picked a missing side")
            return Verdict(
                ArbitrationOutcome.PICKED_OURS, content=request.ours, confidence=confidence
            )
        case MergeDecision.THEIRS:
            if request.theirs is None:
                return Verdict(ArbitrationOutcome.INVALID, detail="picked a missing side")
            return Verdict(
                ArbitrationOutcome.PICKED_THEIRS, content=request.theirs, confidence=confidence
            )
        case MergeDecision.IRRECONCILABLE:
            detail = payload.get("content")
            return Verdict(
                ArbitrationOutcome.IRRECONCILABLE,
                confidence=confidence,
                detail=detail if isinstance(detail, str) and detail.strip() else None,
            )


def trivial_proof(request: ArbitrationRequest, *, allow_whitespace: bool) -> TrivialProof | None:
    if not request.ours or not request.theirs:
        # An empty side is no proposal; two empty sides leave nothing to keep.
        return TrivialProof.SINGLE_PROPOSAL if request.ours or request.theirs else None
    if request.ours == request.theirs:
        return TrivialProof.IDENTICAL
    if allow_whitespace and _is_whitespace_only_change(request.ours, request.theirs):
        return TrivialProof.WHITESPACE_ONLY
    return None


class ConflictResolver:
    """Consumes conflict messages and walks the tier chain for each ripe conflict."""

    def __init__(
        self,
        ledger: ContextLedger,
        *,
        invoker: TierInvoker,
        catalog: TierCatalog,
        health: TierHealthBoard,
        locks: LockManager,
        budgets: BudgetLedger | None = None,
        tier_chain: Sequence[Tier] = TIER_HIERARCHY,
        auto_resolve_whitespace: bool = True,
        clock: Clock = time.time,
        logger: Any | None = None,
    ) -> None:
        chain = tuple(Tier(tier) for tier in tier_chain)
        if not chain:
            raise ValueError("tier_chain must not be empty")
        if len(set(chain)) != len(chain):
            raise ValueError("tier_chain must not repeat tiers")
        self._ledger = ledger
        self._invoker = invoker
        self._catalog = catalog
        self._health = health
        self._locks = locks
        self._budgets = budgets if budgets is not None else ledger.budgets
        self._chain = chain
        self._auto_whitespace = auto_resolve_whitespace
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._templates = Environment(
            loader=PackageLoader("forge_orchestrator.integration_plane", "templates"),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    @property
    def tier_chain(self) -> tuple[Tier, ...]:
        return self._chain

    def render_prompt(self, request: ArbitrationRequest) -> str:
        template = self._templates.get_template(TEMPLATE_NAME)
        return template.render(
            project_id=request.project_id,
            stage=request.stage,
            file_path=request.file_path,
            conflict_id=request.conflict_id,
            kind=request.kind,
            base=request.base,
            ours_task_id=request.ours_task_id,
            theirs_task_id=request.theirs_task_id,
            ours=request.ours or "",
            theirs=request.theirs or "",
            ours_diff=request.diff_against_base(request.ours, "ours"),
            theirs_diff=request.diff_against_base(request.theirs, "theirs"),
        )

    async def resolve_pending(self, max_messages: int | None = None) -> list[ResolutionOutcome]:
        """Drain the conflict queue once; unripe conflicts go back on the queue."""
        outcomes: list[ResolutionOutcome] = []
        deferred: list[ConflictMessage] = []
        handled = 0
        while max_messages is None or handled < max_messages:
            message = self._ledger.dequeue_conflict()
            if message is None:
                break
            handled += 1
            state = self._ledger.get_project_state(message.project_id)
            conflict = state.conflicts.get(message.conflict_id)
            if conflict is None or not conflict.is_open or state.project.is_terminal:
                continue
            if not is_ripe(state, conflict):
                deferred.append(message)
                continue
            try:
                outcomes.append(await self.resolve(message.project_id, message.conflict_id))
            except LedgerWriteConflictError:
                self._logger.warning(
                    "conflict_resolution_requeued",
                    project_id=message.project_id,
                    conflict_id=message.conflict_id,
                )
                deferred.append(message)
        for message in deferred:
            self._ledger.requeue_conflict_message(message)
        return outcomes

    async def resolve(self, project_id: str, conflict_id: str) -> ResolutionOutcome:
        state = self._ledger.get_project_state(project_id)
        conflict = state.conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        if not conflict.is_open:
            return _outcome_of(conflict)

        request = ArbitrationRequest.from_state(state, conflict)
        scope = correlation_scope(
            project_id=project_id, conflict_id=conflict_id, stage=conflict.stage
        )
        with scope:
            if not request.ours and not request.theirs:
                return self._fail_without_proposals(conflict)
            proof = trivial_proof(request, allow_whitespace=self._auto_whitespace)
            if proof is not None:
                return self._auto_resolve(conflict, request, proof)
            return await self._arbitrate(conflict, request)

    def _auto_resolve(
        self, conflict: Conflict, request: ArbitrationRequest, proof: TrivialProof
    ) -> ResolutionOutcome:
        output = request.ours or request.theirs
        closed = self._ledger.apply_resolution(
            conflict.project_id,
            conflict.id,
            output=output or "",
            tier=None,
            status=ConflictStatus.AUTO_RESOLVED,
            note=proof.value,
        )
        self._release_locks(closed)
        self._logger.info("conflict_auto_resolved", proof=proof.value)
        return _outcome_of(closed, proof=proof)

    def _fail_without_proposals(self, conflict: Conflict) -> ResolutionOutcome:
        failed = self._ledger.fail_conflict(
            conflict.project_id,
            conflict.id,
            attempts=conflict.attempts,
            note="no competing task proposed content",
        )
        self._release_locks(failed)
        self._logger.warning("conflict_without_proposals", file_path=conflict.file_path)
        return _outcome_of(failed)

    async def _arbitrate(
        self, conflict: Conflict, request: ArbitrationRequest
    ) -> ResolutionOutcome:
        prompt = self.render_prompt(request)
        attempts: list[ArbitrationAttempt] = list(conflict.attempts)
        for tier in self._chain:
            if not self._health.is_available(tier):
                attempts.append(self._attempt(tier, ArbitrationOutcome.SKIPPED, "tier unavailable"))
                continue

            verdict, invocation = await self._attempt_tier(tier, prompt, request)
            attempts.append(
                self._attempt(
                    tier,
                    verdict.outcome,
                    verdict.detail,
                    confidence=verdict.confidence,
                    invocation=invocation,
                )
            )
            if verdict.outcome.succeeded and verdict.content is not None:
                closed = self._ledger.apply_resolution(
                    conflict.project_id,
                    conflict.id,
                    output=verdict.content,
                    tier=tier,
                    status=ConflictStatus.RESOLVED,
                    attempts=attempts,
                )
                self._release_locks(closed)
                return _outcome_of(closed)

            self._ledger.escalate_conflict(conflict.project_id, conflict.id, attempts=attempts)
            self._logger.info(
                "conflict_escalated", tier=tier.value, outcome=verdict.outcome.value
            )

        failed = self._ledger.fail_conflict(conflict.project_id, conflict.id, attempts=attempts)
        self._release_locks(failed)
        return _outcome_of(failed)

    async def _attempt_tier(
        self, tier: Tier, prompt: str, request: ArbitrationRequest
    ) -> tuple[Verdict, TierInvocation | None]:
        timeout = self._catalog.timeout_for(tier)
        try:
            invocation = await call_with_deadline(
                self._invoker.invoke(tier, prompt, timeout), timeout
            )
        except TimeoutError:
            self._health.record_failure(tier)
            return Verdict(ArbitrationOutcome.TIMEOUT, detail=f"no verdict in {timeout}s"), None
        except Exception as exc:  # noqa: BLE001
            self._health.record_failure(tier)
            return Verdict(ArbitrationOutcome.ERROR, detail=f"{type(exc).__name__}: {exc}"), None

        self._bill(request, tier, invocation)
        if not invocation.success:
            self._health.record_failure(tier)
            return Verdict(ArbitrationOutcome.ERROR, detail="unsuccessful invocation"), invocation
        self._health.record_success(tier)
        return parse_verdict(invocation.result, request), invocation

    def _bill(self, request: ArbitrationRequest, tier: Tier, invocation: TierInvocation) -> None:
        tokens = invocation.tokens_in + invocation.tokens_out
        if tokens == 0:
            return
        self._budgets.record_usage(
            project_id=request.project_id,
            tier=tier,
            tokens_in=invocation.tokens_in,
            tokens_out=invocation.tokens_out,
            cost_usd=self._catalog.estimate_cost(tier, tokens),
            purpose=BudgetPurpose.ARBITRATION,
        )

    def _attempt(
        self,
        tier: Tier,
        outcome: ArbitrationOutcome,
        detail: str | None,
        *,
        confidence: float | None = None,
        invocation: TierInvocation | None = None,
    ) -> ArbitrationAttempt:
        return ArbitrationAttempt(
            tier=tier,
            outcome=outcome,
            attempted_at=datetime.fromtimestamp(self._clock(), tz=UTC),
            detail=detail[:500] if detail else None,
            confidence=confidence,
            tokens_in=invocation.tokens_in if invocation is not None else 0,
            tokens_out=invocation.tokens_out if invocation is not None else 0,
        )

    def _release_locks(self, conflict: Conflict) -> None:
        for task_id in conflict.competing_task_ids:
            self._locks.release(conflict.project_id, conflict.file_path, task_id)


def _outcome_of(
    conflict: Conflict, *, proof: TrivialProof | None = None
) -> ResolutionOutcome:
    return ResolutionOutcome(
        conflict_id=conflict.id,
        project_id=conflict.project_id,
        status=conflict.status,
        tier=conflict.resolution_tier,
        attempts=conflict.attempts,
        output=conflict.resolved_output,
        requeued_task_id=conflict.requeued_task_id,
        trivial_proof=proof,
    )


def _content_of(state: ProjectState, task_id: str, file_path: str) -> str | None:
    task = state.tasks.get(task_id)
    return task.content_for(file_path) if task is not None else None


def _unified_diff(*, path: str, before: str, after: str, to_label: str) -> str:
    if before == after:
        return ""
    lines = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"base/{path.lstrip('/')}",
        tofile=f"{to_label}/{path.lstrip('/')}",
        lineterm="",
    )
    return "\n".join(line.rstrip("\n") for line in lines)


def _is_whitespace_only_change(left: str, right: str) -> bool:
    if left == right:
        return False
    matcher = difflib.SequenceMatcher(a=left, b=right, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if left[i1:i2].strip() or right[j1:j2].strip():
            return False
    return True


__all__ = [
    "ArbitrationRequest",
    "ConflictResolver",
    "MergeDecision",
    "ResolutionOutcome",
    "TrivialProof",
    "Verdict",
    "is_ripe",
    "last_known_good",
    "parse_verdict",
    "trivial_proof",
]
