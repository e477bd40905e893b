"""
forge-orchestrator — SQLite coordination store

File: src/forge_orchestrator/coordination/sqlite_store.py
Last updated: 2026-10-19

Purpose
- Relational backend for the coordination store: lease rows with expiry columns,
  versioned blobs guarded by an optimistic-locking version column, and queue rows
  ordered by an autoincrement id.

What should be included in this file
- Schema version table and checksummed migration runner.
- Busy-timeout handling with bounded exponential retry.
- One short ``BEGIN IMMEDIATE`` transaction per primitive.

Functional requirements
- Must behave identically to ``InMemoryCoordinationStore`` for every primitive.
- Must let several orchestrator processes share one database file.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from forge_orchestrator.constants import COORDINATION_DB_SCHEMA_VERSION
from forge_orchestrator.coordination.store import (
    Clock,
    LeaseRecord,
    StoreBusyError,
    StoreError,
    VersionedValue,
    validate_ttl,
)

SQLValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS leases (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at REAL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_leases_expires_at
    ON leases(expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS versioned_blobs (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 1)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS queue_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        queue TEXT NOT NULL,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_items_queue
    ON queue_items(queue, id)
    """,
)


class StoreMigrationError(StoreError):
    """Raised when the database schema cannot be brought up to date safely."""


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="coordination_primitives",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "coordination_primitives", _MIGRATION_0001_STATEMENTS),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)


class SQLiteCoordinationStore:
    """Coordination primitives over a WAL-mode SQLite file."""

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Clock = time.time,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._clock = clock
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.migrate()

    @property
    def path(self) -> Path:
        return self._path

    def migrate(self) -> int:
        """Apply migrations idempotently and return the current schema version."""

        with self._connection() as conn:
            self._execute(conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions")
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._execute(
                    conn,
                    "SELECT version, checksum FROM schema_versions ORDER BY version ASC",
                    (),
                    operation="load schema_versions",
                ).fetchall()
            }
            current = max(applied, default=0)
            if current > COORDINATION_DB_SCHEMA_VERSION:
                raise StoreMigrationError(
                    "database schema is newer than supported by this runtime "
                    f"(db={current}, code={COORDINATION_DB_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise StoreMigrationError(
                            f"migration checksum mismatch for version {migration.version}"
                        )
                    continue
                with self._transaction(conn):
                    for statement in migration.statements:
                        self._execute(
                            conn, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute(
                        conn,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (
                            migration.version,
                            migration.name,
                            migration.checksum,
                            datetime.now(tz=UTC).isoformat(),
                        ),
                        operation=f"record migration {migration.version}",
                    )
                applied[migration.version] = migration.checksum
            return max(applied, default=0)

    def set_if_absent(self, key: str, value: str, ttl_seconds: float | None) -> bool:
        validate_ttl(ttl_seconds)
        now = self._clock()
        with self._connection() as conn, self._transaction(conn):
            if self._live_value(conn, key, now) is not None:
                return False
            self._execute(
                conn,
                "INSERT OR REPLACE INTO leases (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, None if ttl_seconds is None else now + ttl_seconds),
                operation="set lease",
            )
            return True

    def get(self, key: str) -> str | None:
        with self._connection() as conn:
            return self._live_value(conn, key, self._clock())

    def refresh_if_equal(
        self, key: str, expected: str, value: str, ttl_seconds: float | None
    ) -> bool:
        validate_ttl(ttl_seconds)
        now = self._clock()
        with self._connection() as conn, self._transaction(conn):
            if self._live_value(conn, key, now) != expected:
                return False
            self._execute(
                conn,
                "UPDATE leases SET value = ?, expires_at = ? WHERE key = ?",
                (value, None if ttl_seconds is None else now + ttl_seconds, key),
                operation="refresh lease",
            )
            return True

    def delete_if_equal(self, key: str, expected: str) -> bool:
        now = self._clock()
        with self._connection() as conn, self._transaction(conn):
            if self._live_value(conn, key, now) != expected:
                return False
            self._execute(
                conn, "DELETE FROM leases WHERE key = ?", (key,), operation="delete lease"
            )
            return True

    def scan_leases(self, prefix: str) -> list[LeaseRecord]:
        now = self._clock()
        with self._connection() as conn:
            rows = self._execute(
                conn,
                """
                SELECT key, value, expires_at FROM leases
                WHERE substr(key, 1, ?) = ? AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key ASC
                """,
                (len(prefix), prefix, now),
                operation="scan leases",
            ).fetchall()
        return [
            LeaseRecord(key=row["key"], value=row["value"], expires_at=row["expires_at"])
            for row in rows
        ]

    def purge_expired(self) -> int:
        with self._connection() as conn, self._transaction(conn):
            cursor = self._execute(
                conn,
                "DELETE FROM leases WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
                operation="purge leases",
            )
            return cursor.rowcount

    def read_versioned(self, key: str) -> VersionedValue | None:
        with self._connection() as conn:
            row = self._execute(
                conn,
                "SELECT value, version FROM versioned_blobs WHERE key = ?",
                (key,),
                operation="read versioned blob",
            ).fetchone()
        if row is None:
            return None
        return VersionedValue(value=row["value"], version=int(row["version"]))

    def compare_and_swap(self, key: str, expected_version: int, value: str) -> bool:
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")
        with self._connection() as conn, self._transaction(conn):
            if expected_version == 0:
                cursor = self._execute(
                    conn,
                    """
                    INSERT INTO versioned_blobs (key, value, version) VALUES (?, ?, 1)
                    ON CONFLICT(key) DO NOTHING
                    """,
                    (key, value),
                    operation="insert versioned blob",
                )
            else:
                cursor = self._execute(
                    conn,
                    """
                    UPDATE versioned_blobs SET value = ?, version = version + 1
                    WHERE key = ? AND version = ?
                    """,
                    (value, key, expected_version),
                    operation="swap versioned blob",
                )
            return cursor.rowcount == 1

    def push(self, queue: str, value: str) -> None:
        with self._connection() as conn, self._transaction(conn):
            self._execute(
                conn,
                "INSERT INTO queue_items (queue, value) VALUES (?, ?)",
                (queue, value),
                operation="push queue item",
            )

    def pop(self, queue: str) -> str | None:
        with self._connection() as conn, self._transaction(conn):
            row = self._execute(
                conn,
                "SELECT id, value FROM queue_items WHERE queue = ? ORDER BY id ASC LIMIT 1",
                (queue,),
                operation="peek queue head",
            ).fetchone()
            if row is None:
                return None
            self._execute(
                conn, "DELETE FROM queue_items WHERE id = ?", (row["id"],), operation="pop queue"
            )
            return str(row["value"])

    def peek_all(self, queue: str) -> tuple[str, ...]:
        with self._connection() as conn:
            rows = self._execute(
                conn,
                "SELECT value FROM queue_items WHERE queue = ? ORDER BY id ASC",
                (queue,),
                operation="list queue",
            ).fetchall()
        return tuple(str(row["value"]) for row in rows)

    def queue_length(self, queue: str) -> int:
        with self._connection() as conn:
            row = self._execute(
                conn,
                "SELECT COUNT(*) AS total FROM queue_items WHERE queue = ?",
                (queue,),
                operation="count queue",
            ).fetchone()
        return 0 if row is None else int(row["total"])

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
            if journal_row is None or str(journal_row[0]).lower() != "wal":
                raise StoreError(f"journal_mode must be WAL for {self._path}")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        self._execute(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute(conn, "COMMIT", (), operation="commit transaction")

    def _live_value(self, conn: sqlite3.Connection, key: str, now: float) -> str | None:
        row = self._execute(
            conn,
            "SELECT value, expires_at FROM leases WHERE key = ?",
            (key,),
            operation="read lease",
        ).fetchone()
        if row is None:
            return None
        expires_at = row["expires_at"]
        if expires_at is not None and float(expires_at) <= now:
            return None
        return str(row["value"])

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[SQLValue],
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                if _is_busy_error(exc):
                    raise StoreBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after "
                        f"{self._busy_retry_limit + 1} attempt(s): {exc}"
                    ) from exc
                raise StoreError(f"{operation} failed for {self._path}: {exc}") from exc
        raise StoreBusyError(f"{operation} exhausted retries unexpectedly")


def _is_busy_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "SQLiteCoordinationStore",
    "StoreMigrationError",
]
