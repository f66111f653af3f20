"""Database module."""

from .models import (
    ChapterDownloadRequest,
    ChapterDownloadResult,
    ChapterProgress,
    ChapterRecord,
    ChapterRecordRead,
    ChapterStatus,
    ChapterUpsertRequest,
    MangaChapterStatus,
    is_complete,
)
from .session import async_session_maker, create_db_and_tables, dispose_engine, get_engine, get_session

__all__ = [
    "ChapterDownloadRequest",
    "ChapterDownloadResult",
    "ChapterProgress",
    "ChapterRecord",
    "ChapterRecordRead",
    "ChapterStatus",
    "ChapterUpsertRequest",
    "MangaChapterStatus",
    "async_session_maker",
    "create_db_and_tables",
    "dispose_engine",
    "get_engine",
    "get_session",
    "is_complete",
]
