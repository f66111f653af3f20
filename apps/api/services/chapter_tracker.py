"""Persistence of per-chapter download completeness."""

import logging
from collections.abc import Callable, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ChapterProgress, ChapterRecord, ChapterStatus, MangaChapterStatus, utc_now
from db.session import async_session_maker
from services.errors import PersistenceWriteError

logger = logging.getLogger(__name__)


def merge_count(incoming: int | None, existing: int | None) -> int:
    """A positive incoming count replaces the stored one; zero or missing never regresses it."""
    if incoming is not None and incoming > 0:
        return incoming
    return existing or 0


class ChapterTracker:
    """
    Owns ChapterRecord rows.

    Every chapter in an upsert batch is written in its own transaction, so a
    failing item is logged and skipped without blocking the rest of the batch.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_maker

    async def upsert(self, manga_id: int, chapters: Sequence[ChapterProgress]) -> list[str]:
        """
        Insert or update chapter counts for one manga.

        Returns:
            Keys ("<manga_id>_<chapter_id>") of the chapters that were written.
        """
        keys: list[str] = []
        for chapter in chapters:
            try:
                record = await self._upsert_one(manga_id, chapter)
            except PersistenceWriteError as e:
                logger.error("Upsert failed for %s_%s: %s", manga_id, chapter.chapter_id, e)
                continue
            keys.append(record.key)
        return keys

    async def _upsert_one(self, manga_id: int, chapter: ChapterProgress) -> ChapterRecord:
        # One retry covers a concurrent insert of the same key winning the unique constraint.
        for attempt in (1, 2):
            try:
                async with self._session_factory() as session:
                    record = await self._merge(session, manga_id, chapter)
                    await session.commit()
                    return record
            except IntegrityError as e:
                if attempt == 2:
                    raise PersistenceWriteError(str(e)) from e
                logger.debug("Concurrent insert for %s_%s, retrying", manga_id, chapter.chapter_id)
            except Exception as e:
                raise PersistenceWriteError(str(e)) from e
        raise PersistenceWriteError("unreachable")

    async def _merge(
        self,
        session: AsyncSession,
        manga_id: int,
        chapter: ChapterProgress,
    ) -> ChapterRecord:
        stmt = select(ChapterRecord).where(
            ChapterRecord.manga_id == manga_id,
            ChapterRecord.chapter_id == chapter.chapter_id,
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            record = ChapterRecord(manga_id=manga_id, chapter_id=chapter.chapter_id)

        record.total_images = merge_count(chapter.total_images, record.total_images)
        record.total_saved_images = merge_count(chapter.total_saved_images, record.total_saved_images)
        if chapter.chapter_number:
            record.chapter_number = chapter.chapter_number
        if chapter.chapter_name:
            record.chapter_name = chapter.chapter_name
        record.updated_at = utc_now()
        record.recompute()

        session.add(record)
        await session.flush()
        return record

    async def get(self, manga_id: int, chapter_id: int) -> ChapterRecord | None:
        async with self._session_factory() as session:
            stmt = select(ChapterRecord).where(
                ChapterRecord.manga_id == manga_id,
                ChapterRecord.chapter_id == chapter_id,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def touch(self, manga_id: int, chapter_id: int) -> bool:
        """Stamp a chapter as just attempted so the backlog order rotates past it."""
        async with self._session_factory() as session:
            stmt = (
                update(ChapterRecord)
                .where(
                    ChapterRecord.manga_id == manga_id,
                    ChapterRecord.chapter_id == chapter_id,
                )
                .values(updated_at=utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def get_incomplete(self, limit: int = 10) -> list[ChapterRecord]:
        """Chapters not yet fully downloaded, least recently attempted first."""
        async with self._session_factory() as session:
            stmt = (
                select(ChapterRecord)
                .where(ChapterRecord.is_downloaded == False)  # noqa: E712
                .order_by(ChapterRecord.updated_at.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_by_manga(self, manga_id: int) -> MangaChapterStatus:
        """Saved chapters of a manga with their completeness flag."""
        async with self._session_factory() as session:
            stmt = (
                select(ChapterRecord)
                .where(ChapterRecord.manga_id == manga_id)
                .order_by(ChapterRecord.chapter_id.asc())
            )
            result = await session.execute(stmt)
            records = result.scalars().all()

        return MangaChapterStatus(
            manga_id=manga_id,
            chapters=[
                ChapterStatus(id=r.id, chapter_id=r.chapter_id, is_downloaded=r.is_downloaded)
                for r in records
            ],
        )
