"""Prefixed ULID identifiers for projects, tasks, conflicts and ledger entries."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]


class EntityKind(StrEnum):
    """Stable ID prefix per entity type."""

    PROJECT = "proj"
    TASK = "task"
    CONFLICT = "cfl"
    BUDGET_ENTRY = "bud"
    INCIDENT = "inc"
    MESSAGE = "msg"


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(ts_ms, bool) or not isinstance(ts_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(ts_ms).__name__}")
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")

    provider = secrets.token_bytes if randbytes is None else randbytes
    raw = bytes(provider(ULID_RANDOM_BYTES))
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(raw, "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    decoded = 0
    for index, char in enumerate(value):
        digit = _DECODE_TABLE.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        decoded = (decoded << 5) | digit
    if decoded >> 128:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def new_id(
    kind: EntityKind,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Return ``<prefix>-<ulid>`` for ``kind``."""
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{kind.value}{_PREFIX_SEPARATOR}{ulid}"


def validate_id(value: str, kind: EntityKind) -> str:
    """Validate ``<prefix>-<ulid>`` format for ``kind`` and return ``value``."""
    if not isinstance(value, str):
        raise ValueError(f"{kind.name.lower()} id must be a string, got {type(value).__name__}")
    lead = f"{kind.value}{_PREFIX_SEPARATOR}"
    if not value.startswith(lead):
        raise ValueError(f"expected prefix '{lead}'")
    try:
        validate_ulid(value[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{kind.value}': {exc}") from exc
    return value


def short_id(value: str) -> str:
    """Return the last 8 characters of an ID for compact log fields."""
    if len(value) < 8:
        raise ValueError("id must be at least 8 characters")
    return value[-8:]


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EntityKind",
    "RandBytes",
    "ULID_LENGTH",
    "generate_ulid",
    "new_id",
    "short_id",
    "validate_id",
    "validate_ulid",
]
