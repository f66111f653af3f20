"""Chapter download endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.routes.processes import broadcaster
from db.models import (
    ChapterDownloadRequest,
    ChapterDownloadResult,
    ChapterRecordRead,
    ChapterUpsertRequest,
    MangaChapterStatus,
)
from services.browser_session import BrowserSessionManager
from services.download_service import ChapterDownloadService

router = APIRouter()

# Global browser session (torn down on shutdown)
session_manager = BrowserSessionManager()

_download_service: ChapterDownloadService | None = None


def get_download_service() -> ChapterDownloadService:
    """Get or create the download service singleton."""
    global _download_service
    if _download_service is None:
        _download_service = ChapterDownloadService(session_manager, broadcaster)
    return _download_service


class DownloadResponse(BaseModel):
    """Download result; `result` is null when the source had no data or the run failed."""

    process_id: str
    result: ChapterDownloadResult | None


class UpsertResponse(BaseModel):
    keys: list[str]


class CancelResponse(BaseModel):
    process_id: str
    cancelled: bool


@router.post("/download", response_model=DownloadResponse)
async def download_chapter(
    request: ChapterDownloadRequest,
    service: ChapterDownloadService = Depends(get_download_service),
) -> DownloadResponse:
    """Download a chapter, publishing progress on its process id."""
    result = await service.download_chapter(request)
    return DownloadResponse(process_id=request.process_id or "", result=result)


@router.get("/manga/{manga_id}")
async def list_chapters(
    manga_id: int,
    service: ChapterDownloadService = Depends(get_download_service),
) -> list[dict[str, Any]]:
    """Source chapter list; chapters not yet downloaded carry a `process_id`."""
    chapters = await service.list_chapters(manga_id)
    if chapters is None:
        raise HTTPException(status_code=502, detail=f"Source returned no chapters for manga {manga_id}")
    return chapters


@router.get("/backlog", response_model=list[ChapterRecordRead])
async def backlog_status(
    limit: int = Query(default=10, ge=1, le=200),
    service: ChapterDownloadService = Depends(get_download_service),
) -> list[ChapterRecordRead]:
    """Chapters that are not fully downloaded, oldest first."""
    records = await service.backlog_status(limit)
    return [ChapterRecordRead.model_validate(r, from_attributes=True) for r in records]


@router.get("/downloaded/{manga_id}", response_model=MangaChapterStatus)
async def downloaded_chapters(
    manga_id: int,
    service: ChapterDownloadService = Depends(get_download_service),
) -> MangaChapterStatus:
    return await service.tracker.get_by_manga(manga_id)


@router.post("/upsert", response_model=UpsertResponse)
async def upsert_chapters(
    request: ChapterUpsertRequest,
    service: ChapterDownloadService = Depends(get_download_service),
) -> UpsertResponse:
    """Record chapter counts reported by a client."""
    keys = await service.tracker.upsert(request.manga_id, request.chapters)
    return UpsertResponse(keys=keys)


@router.post("/cancel/{process_id}", response_model=CancelResponse)
async def cancel_download(
    process_id: str,
    service: ChapterDownloadService = Depends(get_download_service),
) -> CancelResponse:
    cancelled = service.cancel(process_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"No running download for {process_id}")
    return CancelResponse(process_id=process_id, cancelled=True)
