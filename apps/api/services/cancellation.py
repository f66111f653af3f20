"""Cooperative cancellation for long-running extractions."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from services.errors import ExtractionCancelled

T = TypeVar("T")


class CancelToken:
    """
    Cancellation signal threaded through every suspension point of a run.

    Awaiting through `guard()` or `sleep()` aborts promptly once `cancel()` is called,
    raising ExtractionCancelled in the awaiting task.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExtractionCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless cancellation fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        raise ExtractionCancelled(self.reason or "cancelled")
