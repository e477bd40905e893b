"""
forge-orchestrator — unit tests for concurrency utilities

File: tests/unit/utils/test_concurrency.py
Last updated: 2026-10-19

Purpose
- Validate bounded admission, deadlines, and cooperative cancellation primitives.

What this test file should cover
- ConcurrencyCap admission accounting and waiting slots.
- call_with_deadline success, timeout, token cancellation, and argument checks.
- CancellationToken keeps its first reason.

Functional requirements
- Deterministic and offline.

Non-functional requirements
- Each test finishes well under a second.
"""

from __future__ import annotations

import asyncio

import pytest

from forge_orchestrator.utils.concurrency import (
    CancellationToken,
    ConcurrencyCap,
    call_with_deadline,
)


def test_cap_try_acquire_and_release_accounting() -> None:
    cap = ConcurrencyCap(2)

    assert cap.try_acquire()
    assert cap.try_acquire()
    assert not cap.try_acquire()
    assert (cap.limit, cap.in_use, cap.available) == (2, 2, 0)

    cap.release()
    cap.release()
    assert cap.available == 2
    with pytest.raises(RuntimeError, match="more times than acquire"):
        cap.release()
    with pytest.raises(ValueError, match="limit must be > 0"):
        ConcurrencyCap(0)


@pytest.mark.asyncio
async def test_cap_slot_waits_for_free_permit() -> None:
    cap = ConcurrencyCap(1)
    peak = 0

    async def job() -> None:
        nonlocal peak
        async with cap.slot(poll_seconds=0.001):
            peak = max(peak, cap.in_use)
            await asyncio.sleep(0.005)

    await asyncio.gather(*(job() for _ in range(4)))

    assert peak == 1
    assert cap.in_use == 0


@pytest.mark.asyncio
async def test_call_with_deadline_returns_result_and_propagates_errors() -> None:
    async def answer() -> int:
        await asyncio.sleep(0)
        return 42

    async def explode() -> int:
        raise RuntimeError("worker crashed")

    assert await call_with_deadline(answer(), 1.0) == 42
    with pytest.raises(RuntimeError, match="worker crashed"):
        await call_with_deadline(explode(), 1.0)


@pytest.mark.asyncio
async def test_call_with_deadline_times_out_and_cancels_inner_call() -> None:
    inner_cancelled = asyncio.Event()

    async def slow() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            inner_cancelled.set()
            raise

    with pytest.raises(TimeoutError, match="exceeded 0.01 seconds"):
        await call_with_deadline(slow(), 0.01)
    assert inner_cancelled.is_set()


@pytest.mark.asyncio
async def test_call_with_deadline_honours_cancellation_token() -> None:
    token = CancellationToken()

    async def slow() -> None:
        await asyncio.sleep(10)

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel("project cancelled")

    canceller = asyncio.ensure_future(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await call_with_deadline(slow(), 5.0, token)
    await canceller

    assert token.is_cancelled
    assert token.reason == "project cancelled"


@pytest.mark.asyncio
async def test_call_with_deadline_rejects_bad_arguments_without_leaking() -> None:
    token = CancellationToken()
    token.cancel("stop")
    token.cancel("ignored")

    async def never() -> None:
        raise AssertionError("must not run")

    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        await call_with_deadline(never(), 0)
    with pytest.raises(asyncio.CancelledError):
        await call_with_deadline(never(), 1.0, token)
    assert token.reason == "stop"
