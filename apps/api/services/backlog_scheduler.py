"""Periodic retry of chapters that are not fully downloaded."""

import asyncio
import logging
from dataclasses import dataclass, field

from core.config import get_settings
from db.models import ChapterDownloadRequest
from services.chapter_tracker import ChapterTracker
from services.download_service import ChapterDownloadService
from services.locks import SingleRunLock

logger = logging.getLogger(__name__)


@dataclass
class BacklogRunSummary:
    """What one backlog sweep did."""

    skipped: bool = False
    completed: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.completed) + len(self.incomplete) + len(self.failed)


class BacklogScheduler:
    """
    Sweeps incomplete chapters on a fixed interval.

    Chapters in one sweep run one after another; a sweep that is still running
    when the next tick fires causes that tick to be skipped, not queued.
    """

    def __init__(
        self,
        service: ChapterDownloadService,
        tracker: ChapterTracker | None = None,
        interval_seconds: float | None = None,
        limit: int | None = None,
    ) -> None:
        settings = get_settings()
        self.service = service
        self.tracker = tracker or service.tracker
        self.interval = interval_seconds if interval_seconds is not None else settings.backlog_interval_seconds
        self.limit = limit if limit is not None else settings.backlog_limit
        self._run_lock = SingleRunLock()
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._run_lock.locked

    def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="backlog-scheduler")
        logger.info("Backlog scheduler started (every %.0fs, limit %d)", self.interval, self.limit)

    async def stop(self) -> None:
        """Stop the loop, cancelling a sweep in progress."""
        self._stopping.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Backlog scheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception:
                logger.exception("Backlog sweep crashed")

    async def run_once(self) -> BacklogRunSummary:
        """Run one sweep unless another is already in progress."""
        async with self._run_lock.hold() as acquired:
            if not acquired:
                logger.info("Backlog sweep already running, skipping")
                return BacklogRunSummary(skipped=True)
            return await self._sweep()

    async def _sweep(self) -> BacklogRunSummary:
        summary = BacklogRunSummary()
        logger.info("Start backlog sweep")

        records = await self.tracker.get_incomplete(self.limit)
        if not records:
            logger.info("No chapter waiting for download")
            return summary

        logger.info(
            "There are [%s] chapters waiting for download",
            ", ".join(str(r.chapter_id) for r in records),
        )

        for record in records:
            request = ChapterDownloadRequest(manga_id=record.manga_id, chapter_id=record.chapter_id)
            key = request.process_id
            try:
                result = await self.service.download_chapter(request)
            except Exception:
                logger.exception("Backlog download of %s failed", key)
                result = None
            finally:
                await self._mark_attempted(record.manga_id, record.chapter_id)

            if result is None:
                summary.failed.append(key)
            elif result.is_downloaded:
                summary.completed.append(key)
            else:
                summary.incomplete.append(key)

        logger.info(
            "Backlog sweep completed: %d complete, %d incomplete, %d failed",
            len(summary.completed),
            len(summary.incomplete),
            len(summary.failed),
        )
        return summary

    async def _mark_attempted(self, manga_id: int, chapter_id: int) -> None:
        # Chapters the source no longer serves would otherwise hold the head of every sweep.
        try:
            await self.tracker.touch(manga_id, chapter_id)
        except Exception as e:
            logger.warning("Could not stamp backlog attempt for %s_%s: %s", manga_id, chapter_id, e)
