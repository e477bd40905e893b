"""
forge-orchestrator — coordination store contract and in-memory backend

File: src/forge_orchestrator/coordination/store.py
Last updated: 2026-10-19

Purpose
- Define the primitives every orchestrator replica shares: lease keys with TTL,
  versioned blobs with compare-and-swap, and append-only FIFO queues.

Functional requirements
- ``set_if_absent`` is atomic; an expired lease counts as absent.
- ``compare_and_swap`` succeeds only when the stored version equals the expected
  version (0 means "key absent") and bumps the version by exactly one.
- Queues are FIFO; ``peek_all`` never consumes.

Non-functional requirements
- All operations are synchronous and thread-safe; time is read from an injected
  clock so lease expiry is deterministic under test.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

Clock = Callable[[], float]


class StoreError(RuntimeError):
    """Base class for coordination store failures."""


class StoreBusyError(StoreError):
    """Raised when a backend stays locked past its bounded retries."""


@dataclass(frozen=True, slots=True)
class VersionedValue:
    value: str
    version: int


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    key: str
    value: str
    expires_at: float | None


@runtime_checkable
class CoordinationStore(Protocol):
    """Shared-state primitives consumed by the lock manager and context ledger."""

    def set_if_absent(self, key: str, value: str, ttl_seconds: float | None) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def refresh_if_equal(
        self, key: str, expected: str, value: str, ttl_seconds: float | None
    ) -> bool: ...

    def delete_if_equal(self, key: str, expected: str) -> bool: ...

    def scan_leases(self, prefix: str) -> list[LeaseRecord]: ...

    def purge_expired(self) -> int: ...

    def read_versioned(self, key: str) -> VersionedValue | None: ...

    def compare_and_swap(self, key: str, expected_version: int, value: str) -> bool: ...

    def push(self, queue: str, value: str) -> None: ...

    def pop(self, queue: str) -> str | None: ...

    def peek_all(self, queue: str) -> tuple[str, ...]: ...

    def queue_length(self, queue: str) -> int: ...


class InMemoryCoordinationStore:
    """Process-local store; suitable for a single replica and for tests."""

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._leases: dict[str, tuple[str, float | None]] = {}
        self._versioned: dict[str, VersionedValue] = {}
        self._queues: dict[str, deque[str]] = {}

    def set_if_absent(self, key: str, value: str, ttl_seconds: float | None) -> bool:
        validate_ttl(ttl_seconds)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._leases[key] = (value, self._expiry(ttl_seconds))
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def refresh_if_equal(
        self, key: str, expected: str, value: str, ttl_seconds: float | None
    ) -> bool:
        validate_ttl(ttl_seconds)
        with self._lock:
            if self._live(key) != expected:
                return False
            self._leases[key] = (value, self._expiry(ttl_seconds))
            return True

    def delete_if_equal(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live(key) != expected:
                return False
            del self._leases[key]
            return True

    def scan_leases(self, prefix: str) -> list[LeaseRecord]:
        with self._lock:
            now = self._clock()
            return [
                LeaseRecord(key=key, value=value, expires_at=expires_at)
                for key, (value, expires_at) in sorted(self._leases.items())
                if key.startswith(prefix) and (expires_at is None or expires_at > now)
            ]

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, (_, expires_at) in self._leases.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._leases[key]
            return len(expired)

    def read_versioned(self, key: str) -> VersionedValue | None:
        with self._lock:
            return self._versioned.get(key)

    def compare_and_swap(self, key: str, expected_version: int, value: str) -> bool:
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")
        with self._lock:
            current = self._versioned.get(key)
            current_version = 0 if current is None else current.version
            if current_version != expected_version:
                return False
            self._versioned[key] = VersionedValue(value=value, version=current_version + 1)
            return True

    def push(self, queue: str, value: str) -> None:
        with self._lock:
            self._queues.setdefault(queue, deque()).append(value)

    def pop(self, queue: str) -> str | None:
        with self._lock:
            items = self._queues.get(queue)
            if not items:
                return None
            return items.popleft()

    def peek_all(self, queue: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._queues.get(queue, ()))

    def queue_length(self, queue: str) -> int:
        with self._lock:
            return len(self._queues.get(queue, ()))

    def _live(self, key: str) -> str | None:
        entry = self._leases.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            return None
        return value

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds


def validate_ttl(ttl_seconds: float | None) -> None:
    if ttl_seconds is not None and ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be > 0 when provided")


__all__ = [
    "Clock",
    "CoordinationStore",
    "InMemoryCoordinationStore",
    "LeaseRecord",
    "StoreBusyError",
    "StoreError",
    "VersionedValue",
    "validate_ttl",
]
