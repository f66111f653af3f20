"""Database models using SQLModel."""

from datetime import datetime, timezone

import sqlalchemy as sa
from pydantic import BaseModel, Field as PydanticField, model_validator
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_complete(total_images: int, total_saved_images: int) -> bool:
    """A chapter is downloaded once every discovered page is saved."""
    return total_images > 0 and total_images == total_saved_images


class ChapterRecordBase(SQLModel):
    """Base chapter record with common fields."""

    manga_id: int = Field(index=True, description="Manga id on the source site")
    chapter_id: int = Field(index=True, description="Chapter id on the source site")
    total_images: int = Field(default=0, ge=0, description="Pages discovered in the chapter")
    total_saved_images: int = Field(default=0, ge=0, description="Pages saved to disk")
    is_downloaded: bool = Field(default=False, index=True, description="Derived completeness flag")
    chapter_number: str | None = Field(default=None, description="Chapter number as shown by the source")
    chapter_name: str | None = Field(default=None, description="Chapter title")


class ChapterRecord(ChapterRecordBase, table=True):
    """Saved chapter table model."""

    __tablename__ = "saved_manga_chapters"
    __table_args__ = (sa.UniqueConstraint("manga_id", "chapter_id", name="uq_saved_chapter"),)

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=sa.DateTime(timezone=True))
    updated_at: datetime = Field(
        default_factory=utc_now, index=True, sa_type=sa.DateTime(timezone=True)
    )

    @property
    def key(self) -> str:
        return f"{self.manga_id}_{self.chapter_id}"

    def recompute(self) -> None:
        """Clamp saved to total and re-derive is_downloaded."""
        if self.total_images > 0:
            self.total_saved_images = min(self.total_saved_images, self.total_images)
        self.is_downloaded = is_complete(self.total_images, self.total_saved_images)


class ChapterRecordRead(ChapterRecordBase):
    """Schema for reading a chapter record."""

    id: int
    created_at: datetime
    updated_at: datetime


class ChapterProgress(BaseModel):
    """Counts reported for one chapter in an upsert batch."""

    chapter_id: int
    total_images: int | None = PydanticField(default=None, ge=0)
    total_saved_images: int | None = PydanticField(default=None, ge=0)
    chapter_number: str | None = None
    chapter_name: str | None = None


class ChapterUpsertRequest(BaseModel):
    """Batch of chapter counts for one manga."""

    manga_id: int
    chapters: list[ChapterProgress]


class ChapterDownloadRequest(BaseModel):
    """Request to download one chapter."""

    manga_id: int
    chapter_id: int
    process_id: str | None = None

    @model_validator(mode="after")
    def _default_process_id(self) -> "ChapterDownloadRequest":
        if not self.process_id:
            self.process_id = f"{self.manga_id}_{self.chapter_id}"
        return self


class ChapterDownloadResult(BaseModel):
    """Outcome of a chapter download: metadata plus saved file references."""

    manga_id: int
    chapter_id: int
    chapter_number: str | None = None
    chapter_name: str | None = None
    total_images: int
    total_saved_images: int
    is_downloaded: bool
    images: list[str] = PydanticField(default_factory=list)
    from_cache: bool = False


class ChapterStatus(BaseModel):
    """Completeness of one chapter within a manga view."""

    id: int
    chapter_id: int
    is_downloaded: bool


class MangaChapterStatus(BaseModel):
    """Saved chapters of one manga, ordered by chapter id."""

    manga_id: int
    chapters: list[ChapterStatus] = PydanticField(default_factory=list)
