"""Admission-counted worker pool."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from services.errors import ExtractionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BoundedWorkerPool:
    """
    Runs one coroutine per item with at most `size` in flight.

    Results come back in input order regardless of completion order. An exception
    escaping a worker is turned into a result via `on_error` so it never cancels
    sibling items; cancellation is the only thing that propagates.
    """

    def __init__(self, size: int, name: str = "pool") -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.size = size
        self.name = name
        self._semaphore = asyncio.Semaphore(size)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def map(
        self,
        worker: Callable[[T], Awaitable[R]],
        items: Sequence[T],
        on_error: Callable[[T, BaseException], R] | None = None,
    ) -> list[R | None]:
        stopped = asyncio.Event()

        async def run(item: T) -> R | None:
            async with self._semaphore:
                # A sibling was cancelled while this item queued for a slot.
                if stopped.is_set():
                    return None
                self._in_flight += 1
                try:
                    return await worker(item)
                except (asyncio.CancelledError, ExtractionCancelled):
                    stopped.set()
                    raise
                except Exception as e:
                    logger.warning("%s worker failed for %r: %s", self.name, item, e)
                    return on_error(item, e) if on_error else None
                finally:
                    self._in_flight -= 1

        tasks = [asyncio.create_task(run(item)) for item in items]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
