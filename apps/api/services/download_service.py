"""Chapter download orchestration: dedup check, extraction, storage and bookkeeping."""

import logging
from typing import Any

from db.models import (
    ChapterDownloadRequest,
    ChapterDownloadResult,
    ChapterProgress,
    ChapterRecord,
)
from services.browser_session import BrowserSessionManager
from services.cancellation import CancelToken
from services.chapter_extractor import ChapterExtractor
from services.chapter_storage import ChapterStorage
from services.chapter_tracker import ChapterTracker
from services.errors import ExtractionCancelled
from services.locks import KeyedLock
from services.progress_broadcaster import ProcessBroadcaster, ProgressReporter
from services.source_client import SourceClient

logger = logging.getLogger(__name__)


class ChapterDownloadService:
    """
    Entry point for downloading a chapter.

    Downloads of the same (manga_id, chapter_id) are serialized through a per-key
    lock; a caller that waited re-runs the dedup check and usually returns the
    files the first caller saved.
    """

    def __init__(
        self,
        sessions: BrowserSessionManager,
        broadcaster: ProcessBroadcaster | None = None,
        tracker: ChapterTracker | None = None,
        storage: ChapterStorage | None = None,
        source: SourceClient | None = None,
        extractor: ChapterExtractor | None = None,
    ) -> None:
        self.sessions = sessions
        self.broadcaster = broadcaster
        self.tracker = tracker or ChapterTracker()
        self.storage = storage or ChapterStorage()
        self.source = source or SourceClient(sessions)
        self.extractor = extractor or ChapterExtractor(sessions)
        self._chapter_locks = KeyedLock()
        self._cancel_tokens: dict[str, CancelToken] = {}

    def active_downloads(self) -> list[str]:
        return sorted(self._cancel_tokens)

    def cancel(self, process_id: str) -> bool:
        """Abort the running download published under `process_id`."""
        token = self._cancel_tokens.get(process_id)
        if token is None:
            return False
        token.cancel(f"Cancelled by request ({process_id})")
        logger.info("Cancellation requested for %s", process_id)
        return True

    async def download_chapter(self, request: ChapterDownloadRequest) -> ChapterDownloadResult | None:
        """
        Download one chapter, or return its saved files if already complete.

        Never raises for pipeline failures: they are logged, reported on the
        process channel and answered with None.
        """
        reporter = ProgressReporter(self.broadcaster, request.process_id)
        key = (request.manga_id, request.chapter_id)

        if self._chapter_locks.is_locked(key):
            await reporter.status("Waiting for another download of this chapter")

        async with self._chapter_locks.acquire(key):
            try:
                return await self._download(request, reporter)
            except ExtractionCancelled as e:
                logger.info("Download %s cancelled: %s", request.process_id, e)
                await reporter.status("Cancelled")
                await reporter.notify(f"Download cancelled: {e}")
                return None
            except Exception as e:
                logger.exception(
                    "Download failed for chapter %s of manga %s", request.chapter_id, request.manga_id
                )
                await reporter.status("Failed")
                await reporter.notify(f"Download failed: {e}")
                return None

    async def _download(
        self,
        request: ChapterDownloadRequest,
        reporter: ProgressReporter,
    ) -> ChapterDownloadResult | None:
        manga_id, chapter_id = request.manga_id, request.chapter_id

        await reporter.status("Checking saved files")
        record = await self.tracker.get(manga_id, chapter_id)
        cached = await self._saved_result(record)
        if cached is not None:
            logger.info("Chapter %s_%s already downloaded, skipping", manga_id, chapter_id)
            await reporter.status_with_progress("Already downloaded", 100)
            return cached

        await reporter.status("Fetching chapter info")
        chapter = await self.source.get_chapter(chapter_id)
        if not chapter:
            logger.warning("Source returned no data for chapter %s", chapter_id)
            await reporter.status("Failed")
            await reporter.notify(f"No data found for chapter {chapter_id}")
            return None

        number = _text(chapter.get("number"))
        name = _text(chapter.get("name"))
        pages = chapter.get("pages")
        expected = len(pages) if isinstance(pages, list) and pages else None

        token = CancelToken()
        self._cancel_tokens[request.process_id] = token
        try:
            results = await self.extractor.extract(
                self.source.chapter_url(manga_id, chapter_id),
                expected_image_count=expected,
                reporter=reporter,
                cancel=token,
            )
        except Exception:
            # Keep whatever is already on disk recorded before giving up.
            total = expected or (record.total_images if record else 0)
            saved = len(self.storage.list_saved(manga_id, chapter_id, limit=total or None))
            await self._record(manga_id, chapter_id, total, saved, number, name)
            raise
        finally:
            self._cancel_tokens.pop(request.process_id, None)

        total = len(results)
        await reporter.status("Saving images")
        await self.storage.write_images(manga_id, chapter_id, number, results)
        images = self.storage.list_saved(manga_id, chapter_id, limit=total or None)
        saved_record = await self._record(manga_id, chapter_id, total, len(images), number, name)

        is_downloaded = saved_record.is_downloaded if saved_record else False
        if is_downloaded:
            await reporter.status_with_progress("Completed", 100)
        else:
            await reporter.status_with_progress(f"Incomplete ({len(images)}/{total})", 100)
        await reporter.notify(f"Downloaded chapter {number or chapter_id} - {name or 'Untitled'}")

        return ChapterDownloadResult(
            manga_id=manga_id,
            chapter_id=chapter_id,
            chapter_number=number,
            chapter_name=name,
            total_images=saved_record.total_images if saved_record else total,
            total_saved_images=len(images),
            is_downloaded=is_downloaded,
            images=images,
        )

    async def _saved_result(self, record: ChapterRecord | None) -> ChapterDownloadResult | None:
        """Fast path: the record's total is known and every page is on disk."""
        if record is None or record.total_images <= 0:
            return None
        images = self.storage.list_saved(record.manga_id, record.chapter_id, limit=record.total_images)
        if len(images) != record.total_images:
            return None

        if not record.is_downloaded:
            # Files caught up with the record (e.g. written by a concurrent run).
            await self._record(
                record.manga_id, record.chapter_id, record.total_images, len(images),
                record.chapter_number, record.chapter_name,
            )

        return ChapterDownloadResult(
            manga_id=record.manga_id,
            chapter_id=record.chapter_id,
            chapter_number=record.chapter_number,
            chapter_name=record.chapter_name,
            total_images=record.total_images,
            total_saved_images=len(images),
            is_downloaded=True,
            images=images,
            from_cache=True,
        )

    async def _record(
        self,
        manga_id: int,
        chapter_id: int,
        total: int,
        saved: int,
        number: str | None,
        name: str | None,
    ) -> ChapterRecord | None:
        await self.tracker.upsert(
            manga_id,
            [
                ChapterProgress(
                    chapter_id=chapter_id,
                    total_images=total,
                    total_saved_images=saved,
                    chapter_number=number,
                    chapter_name=name,
                )
            ],
        )
        return await self.tracker.get(manga_id, chapter_id)

    async def list_chapters(self, manga_id: int) -> list[dict[str, Any]] | None:
        """
        Source chapter list with a `process_id` hint on every chapter not yet
        fully downloaded.
        """
        chapters = await self.source.get_manga_chapters(manga_id)
        if chapters is None:
            return None

        saved = await self.tracker.get_by_manga(manga_id)
        downloaded = {c.chapter_id for c in saved.chapters if c.is_downloaded}

        for chapter in chapters:
            try:
                chapter_id = int(chapter.get("id"))
            except (TypeError, ValueError):
                continue
            if chapter_id not in downloaded:
                chapter["process_id"] = f"{manga_id}_{chapter_id}"
        return chapters

    async def backlog_status(self, limit: int = 10) -> list[ChapterRecord]:
        return await self.tracker.get_incomplete(limit)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
