"""Coordination store backends (lease keys, versioned blobs, append-only queues)."""

from forge_orchestrator.coordination.sqlite_store import SQLiteCoordinationStore
from forge_orchestrator.coordination.store import (
    CoordinationStore,
    InMemoryCoordinationStore,
    LeaseRecord,
    StoreBusyError,
    StoreError,
    VersionedValue,
)

__all__ = [
    "CoordinationStore",
    "InMemoryCoordinationStore",
    "LeaseRecord",
    "SQLiteCoordinationStore",
    "StoreBusyError",
    "StoreError",
    "VersionedValue",
]
