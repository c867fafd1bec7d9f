"""Cooperative cancellation shared by every phase of one generation cycle.

One AbortSignal is created per user action and passed by reference through
the pipeline, the retrieval tasks and every model call. Calling abort()
cancels whatever network call is currently in flight under guard().
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class AbortError(Exception):
    """Raised when work is abandoned because its signal was aborted."""


class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AbortError(self.reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, cancelling it if the signal fires first."""
        self.raise_if_aborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise AbortError(self.reason or "aborted")


async def guarded(signal: AbortSignal | None, awaitable: Awaitable[T]) -> T:
    """guard() when a signal is present, plain await otherwise."""
    if signal is None:
        return await awaitable
    return await signal.guard(awaitable)
