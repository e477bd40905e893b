"""Async primitives for bounded task execution and cooperative cancellation."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


class ConcurrencyCap:
    """Per-project admission cap with in-use accounting.

    Admission is non-blocking (``try_acquire``) for the dispatcher loop;
    ``slot`` waits for a free permit.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._in_use = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    def try_acquire(self) -> bool:
        """Take a slot without waiting; ``False`` when the cap is reached."""
        if self._in_use >= self._limit:
            return False
        self._in_use += 1
        return True

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1

    @asynccontextmanager
    async def slot(self, poll_seconds: float = 0.01) -> AsyncIterator[None]:
        while not self.try_acquire():
            await asyncio.sleep(poll_seconds)
        try:
            yield
        finally:
            self.release()


async def call_with_deadline(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` until it finishes, times out, or ``cancel_token`` fires.

    Raises ``TimeoutError`` on deadline and ``asyncio.CancelledError`` on token
    cancellation; the inner call is cancelled in both cases.
    """
    if timeout_seconds <= 0:
        _close_unscheduled(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled(awaitable)
        raise asyncio.CancelledError(token.reason or "cancelled")

    call = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {call, watcher}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if call in done:
            return call.result()
        call.cancel()
        with suppress(asyncio.CancelledError):
            await call
        if watcher in done:
            raise asyncio.CancelledError(token.reason or "cancelled")
        raise TimeoutError(f"call exceeded {timeout_seconds} seconds")
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


def _close_unscheduled(awaitable: Awaitable[object]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = ["CancellationToken", "ConcurrencyCap", "call_with_deadline"]
