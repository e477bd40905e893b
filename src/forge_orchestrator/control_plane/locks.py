"""
forge-orchestrator — per-file lease locks.

File: src/forge_orchestrator/control_plane/locks.py
Last updated: 2026-10-19

Purpose
- Grant mutual exclusion over (project, file path) pairs through TTL leases held
  in the coordination store.

Functional requirements
- ``acquire`` is an atomic conditional set; a refused acquire reports the
  current holder. Re-acquire by the same holder refreshes the lease.
- ``release`` is idempotent and never deletes another holder's lease.
- ``acquire_all`` takes paths in sorted order and rolls back on the first
  contention so two tasks can never deadlock on overlapping path sets.
- ``sweep`` reports running tasks whose leases expired or were taken over and
  purges expired store entries.

Non-functional requirements
- Lease renewal interval must stay below half the TTL.
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from forge_orchestrator.constants import (
    DEFAULT_LOCK_RENEW_INTERVAL_SECONDS,
    DEFAULT_LOCK_TTL_SECONDS,
    LOCK_KEY_PREFIX,
)
from forge_orchestrator.coordination.store import Clock, CoordinationStore
from forge_orchestrator.domain.errors import LockContentionError
from forge_orchestrator.observability.metrics import MetricName, MetricsRegistry

_ACQUIRE_RACE_RETRIES = 3


class LockOutcome(StrEnum):
    GRANTED = "granted"
    CONFLICT = "conflict"
    OK = "ok"
    LOST = "lost"


@dataclass(frozen=True, slots=True)
class FileLease:
    project_id: str
    file_path: str
    holder_task_id: str
    acquired_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps(
            {
                "holder": self.holder_task_id,
                "acquired_at": self.acquired_at,
                "expires_at": self.expires_at,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, project_id: str, file_path: str, raw: str) -> FileLease:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"lease for {file_path!r} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("holder"), str):
            raise ValueError(f"lease for {file_path!r} has no holder")
        return cls(
            project_id=project_id,
            file_path=file_path,
            holder_task_id=payload["holder"],
            acquired_at=float(payload.get("acquired_at", 0.0)),
            expires_at=float(payload.get("expires_at", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class LockAcquisition:
    outcome: LockOutcome
    lease: FileLease | None = None
    current_holder: str | None = None

    @property
    def granted(self) -> bool:
        return self.outcome is LockOutcome.GRANTED


@dataclass(frozen=True, slots=True)
class LostLease:
    """A running task that no longer holds every lease it was admitted with."""

    task_id: str
    file_paths: tuple[str, ...]
    current_holders: tuple[str | None, ...]


def lock_key(project_id: str, file_path: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{project_id}:{file_path}"


class LockManager:
    """Lease-based file locks over a ``CoordinationStore``."""

    def __init__(
        self,
        store: CoordinationStore,
        *,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        renew_interval_seconds: float = DEFAULT_LOCK_RENEW_INTERVAL_SECONDS,
        clock: Clock = time.time,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if renew_interval_seconds <= 0:
            raise ValueError("renew_interval_seconds must be > 0")
        if renew_interval_seconds >= ttl_seconds / 2:
            raise ValueError(
                f"renew_interval_seconds ({renew_interval_seconds}) must be < ttl_seconds / 2 "
                f"({ttl_seconds / 2})"
            )
        self._store = store
        self._ttl = ttl_seconds
        self._renew_interval = renew_interval_seconds
        self._clock = clock
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def renew_interval_seconds(self) -> float:
        return self._renew_interval

    def acquire(
        self,
        project_id: str,
        file_path: str,
        holder_task_id: str,
        ttl_seconds: float | None = None,
    ) -> LockAcquisition:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        key = lock_key(project_id, file_path)
        current_holder: str | None = None

        for _ in range(_ACQUIRE_RACE_RETRIES):
            now = self._clock()
            lease = FileLease(project_id, file_path, holder_task_id, now, now + ttl)
            if self._store.set_if_absent(key, lease.to_json(), ttl):
                self._logger.debug(
                    "lock_acquired",
                    project_id=project_id,
                    file_path=file_path,
                    task_id=holder_task_id,
                )
                return LockAcquisition(LockOutcome.GRANTED, lease=lease)

            raw = self._store.get(key)
            if raw is None:
                # Expired between the conditional set and the read.
                continue
            current = FileLease.from_json(project_id, file_path, raw)
            current_holder = current.holder_task_id
            if current_holder != holder_task_id:
                break
            refreshed = FileLease(
                project_id, file_path, holder_task_id, current.acquired_at, now + ttl
            )
            if self._store.refresh_if_equal(key, raw, refreshed.to_json(), ttl):
                return LockAcquisition(LockOutcome.GRANTED, lease=refreshed)

        if self._metrics is not None:
            self._metrics.inc(MetricName.LOCK_CONTENTION)
        self._logger.info(
            "lock_contention",
            project_id=project_id,
            file_path=file_path,
            task_id=holder_task_id,
            holder_task_id=current_holder,
        )
        return LockAcquisition(LockOutcome.CONFLICT, current_holder=current_holder)

    def renew(self, project_id: str, file_path: str, holder_task_id: str) -> LockOutcome:
        key = lock_key(project_id, file_path)
        raw = self._store.get(key)
        if raw is None:
            return LockOutcome.LOST
        current = FileLease.from_json(project_id, file_path, raw)
        if current.holder_task_id != holder_task_id:
            return LockOutcome.LOST
        renewed = FileLease(
            project_id, file_path, holder_task_id, current.acquired_at, self._clock() + self._ttl
        )
        if self._store.refresh_if_equal(key, raw, renewed.to_json(), self._ttl):
            return LockOutcome.OK
        return LockOutcome.LOST

    def renew_all(
        self, project_id: str, file_paths: Sequence[str], holder_task_id: str
    ) -> LockOutcome:
        for file_path in sorted(set(file_paths)):
            if self.renew(project_id, file_path, holder_task_id) is LockOutcome.LOST:
                self._logger.warning(
                    "lock_lost", project_id=project_id, file_path=file_path, task_id=holder_task_id
                )
                return LockOutcome.LOST
        return LockOutcome.OK

    def release(self, project_id: str, file_path: str, holder_task_id: str) -> LockOutcome:
        key = lock_key(project_id, file_path)
        raw = self._store.get(key)
        if raw is not None:
            current = FileLease.from_json(project_id, file_path, raw)
            if current.holder_task_id == holder_task_id:
                self._store.delete_if_equal(key, raw)
                self._logger.debug(
                    "lock_released",
                    project_id=project_id,
                    file_path=file_path,
                    task_id=holder_task_id,
                )
        return LockOutcome.OK

    def acquire_all(
        self, project_id: str, file_paths: Sequence[str], holder_task_id: str
    ) -> tuple[FileLease, ...]:
        """Acquire every path in sorted order or none of them.

        Raises ``LockContentionError`` naming the first contended path.
        """
        granted: list[FileLease] = []
        for file_path in sorted(set(file_paths)):
            result = self.acquire(project_id, file_path, holder_task_id)
            if not result.granted or result.lease is None:
                for lease in reversed(granted):
                    self.release(project_id, lease.file_path, holder_task_id)
                raise LockContentionError(
                    project_id=project_id,
                    file_path=file_path,
                    holder_task_id=result.current_holder,
                )
            granted.append(result.lease)
        return tuple(granted)

    def release_all(
        self, project_id: str, file_paths: Sequence[str], holder_task_id: str
    ) -> None:
        for file_path in sorted(set(file_paths)):
            self.release(project_id, file_path, holder_task_id)

    def holder_of(self, project_id: str, file_path: str) -> str | None:
        raw = self._store.get(lock_key(project_id, file_path))
        if raw is None:
            return None
        return FileLease.from_json(project_id, file_path, raw).holder_task_id

    def leases(self, project_id: str) -> list[FileLease]:
        prefix = lock_key(project_id, "")
        return [
            FileLease.from_json(project_id, record.key[len(prefix) :], record.value)
            for record in self._store.scan_leases(prefix)
        ]

    def sweep(
        self, project_id: str, running_tasks: Mapping[str, Sequence[str]]
    ) -> list[LostLease]:
        """Report running tasks that lost a lease, then purge expired entries."""
        lost: list[LostLease] = []
        for task_id in sorted(running_tasks):
            paths: list[str] = []
            holders: list[str | None] = []
            for file_path in sorted(set(running_tasks[task_id])):
                holder = self.holder_of(project_id, file_path)
                if holder != task_id:
                    paths.append(file_path)
                    holders.append(holder)
            if paths:
                lost.append(LostLease(task_id, tuple(paths), tuple(holders)))

        purged = self._store.purge_expired()
        if self._metrics is not None and lost:
            self._metrics.inc(MetricName.LEASES_EXPIRED, float(len(lost)))
        if lost or purged:
            self._logger.info(
                "lock_sweep",
                project_id=project_id,
                lost_task_ids=[item.task_id for item in lost],
                purged=purged,
            )
        return lost


__all__ = [
    "FileLease",
    "LockAcquisition",
    "LockManager",
    "LockOutcome",
    "LostLease",
    "lock_key",
]
