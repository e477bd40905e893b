"""Deterministic offline worker and tier invoker for local runs and tests."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from forge_orchestrator.domain.models import Tier, canonical_json, payload_files
from forge_orchestrator.synthesis_plane.interfaces import (
    TierInvocation,
    WorkerRequest,
    WorkerResult,
    WorkerStatus,
)

ScriptedResponse = TierInvocation | BaseException


def verdict_json(decision: str, content: str = "", confidence: float = 0.9) -> str:
    """Render an arbitration verdict in the JSON shape the arbitrator parses."""
    return json.dumps({"decision": decision, "content": content, "confidence": confidence})


def _approx_tokens(text: str) -> int:
    return max(1, len(text) // 4)


@dataclass(slots=True)
class DeterministicWorker:
    """Worker that writes each task's proposed files, merged content first.

    ``failures`` maps a task label (``payload["label"]``, falling back to the
    task id) to the number of leading calls that fail before success.
    """

    failures: dict[str, int] = field(default_factory=dict)
    raise_on_failure: bool = False
    delay_seconds: float = 0.0
    calls: list[WorkerRequest] = field(default_factory=list)

    async def execute(self, request: WorkerRequest) -> WorkerResult:
        self.calls.append(request)
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        key = _label_of(request)
        remaining = self.failures.get(key, 0)
        if remaining > 0:
            self.failures[key] = remaining - 1
            if self.raise_on_failure:
                raise RuntimeError(f"scripted worker crash for {key}")
            return WorkerResult(status=WorkerStatus.FAILED, error=f"scripted failure for {key}")

        files = payload_files(request.payload)
        files.update(payload_files(request.payload, "merged_files"))
        for path in request.target_files:
            files.setdefault(path, f"// {key}: {path}\n")
        return WorkerResult(
            status=WorkerStatus.SUCCEEDED,
            output={"files": dict(sorted(files.items()))},
            tokens_in=_approx_tokens(canonical_json(dict(request.payload))),
            tokens_out=_approx_tokens("".join(files.values())),
        )


@dataclass(slots=True)
class ScriptedTierInvoker:
    """Tier invoker replaying per-tier scripted responses in order.

    Exceptions in a script are raised; an exhausted script returns ``default``
    or an unsuccessful invocation.
    """

    scripts: dict[Tier, deque[ScriptedResponse]] = field(default_factory=dict)
    default: TierInvocation | None = None
    calls: list[tuple[Tier, str]] = field(default_factory=list)

    @classmethod
    def from_mapping(
        cls,
        scripts: Mapping[Tier, Iterable[ScriptedResponse]],
        *,
        default: TierInvocation | None = None,
    ) -> ScriptedTierInvoker:
        return cls(
            scripts={Tier(tier): deque(items) for tier, items in scripts.items()},
            default=default,
        )

    async def invoke(self, tier: Tier, prompt: str, timeout_seconds: float) -> TierInvocation:
        self.calls.append((Tier(tier), prompt))
        queue = self.scripts.get(Tier(tier))
        if queue:
            response = queue.popleft()
            if isinstance(response, BaseException):
                raise response
            return response
        if self.default is not None:
            return self.default
        return TierInvocation(success=False, result=f"no scripted response for {tier}")

    def tiers_called(self) -> list[Tier]:
        return [tier for tier, _ in self.calls]


def _label_of(request: WorkerRequest) -> str:
    label = request.payload.get("label")
    return label if isinstance(label, str) and label else request.task_id


__all__ = ["DeterministicWorker", "ScriptedTierInvoker", "verdict_json"]
