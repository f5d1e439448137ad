"""Cooperative cancellation token shared by a job run."""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import JobCancelled

T = TypeVar("T")


class CancellationToken:
    """A one-shot flag observed at explicit check points.

    ``check`` raises :class:`JobCancelled` once ``cancel`` has been called;
    ``sleep`` and ``guard`` turn waits into check points as well.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancel requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self.reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first."""

        self.check()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.check()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, abandoning it if the token fires first."""

        self.check()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            self.check()
            raise asyncio.CancelledError()
        # Results that raced cancellation are returned; the next check point unwinds.
        return task.result()
