"""Unit tests for canonical ID helpers."""

from __future__ import annotations

import pytest

from forge_orchestrator.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)

    for invalid in ["I" + "0" * 25, "O" + "0" * 25, "U" + "0" * 25, "*" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_bounds() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * 26
    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS + 1)
    with pytest.raises(ValueError, match="must be an int"):
        ids.generate_ulid(timestamp_ms=True)
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))


def test_ulids_sort_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later


@pytest.mark.parametrize("kind", list(ids.EntityKind))
def test_new_id_round_trips_through_validation(kind: ids.EntityKind) -> None:
    value = ids.new_id(kind, timestamp_ms=42, randbytes=_zero_bytes)

    assert value.startswith(f"{kind.value}-")
    assert ids.validate_id(value, kind) == value


def test_validate_id_rejects_wrong_prefix_and_bad_ulid() -> None:
    task_id = ids.new_id(ids.EntityKind.TASK)

    with pytest.raises(ValueError, match="expected prefix 'proj-'"):
        ids.validate_id(task_id, ids.EntityKind.PROJECT)
    with pytest.raises(ValueError, match="invalid ULID part for prefix 'cfl'"):
        ids.validate_id("cfl-not-a-ulid", ids.EntityKind.CONFLICT)
    with pytest.raises(ValueError, match="must be a string"):
        ids.validate_id(7, ids.EntityKind.TASK)  # type: ignore[arg-type]


def test_short_id_returns_suffix() -> None:
    value = ids.new_id(ids.EntityKind.INCIDENT, timestamp_ms=0, randbytes=_ff_bytes)

    assert ids.short_id(value) == value[-8:]
    with pytest.raises(ValueError, match="at least 8"):
        ids.short_id("abc")
