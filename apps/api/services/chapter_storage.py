"""On-disk layout of saved chapter images."""

import asyncio
import logging
import re
from pathlib import Path

from core.config import get_settings
from services.chapter_extractor import ImageResult
from services.errors import PersistenceWriteError
from services.worker_pool import BoundedWorkerPool

logger = logging.getLogger(__name__)

PAGE_FILE_RE = re.compile(r"^page_(\d+)\.[A-Za-z0-9]+$")
UNSAFE_CHARS_RE = re.compile(r"[^\w.\-]+")


def page_number(path: Path | str) -> int | None:
    """1-based page number embedded in a page file name."""
    match = PAGE_FILE_RE.match(Path(path).name)
    return int(match.group(1)) if match else None


def _safe_segment(value: str) -> str:
    return UNSAFE_CHARS_RE.sub("_", value).strip("_") or "0"


class ChapterStorage:
    """
    Writes and lists chapter images under
    `<images_dir>/<manga_id>/<chapter_number>_<chapter_id>/page_<index + 1>.<ext>`.

    File references are returned relative to the storage root's parent, e.g.
    `images/12/3_456/page_1.png`.
    """

    def __init__(self, root: Path | None = None, extension: str | None = None) -> None:
        settings = get_settings()
        self.root = root or settings.images_dir
        self.extension = extension or settings.image_extension
        self.pool = BoundedWorkerPool(settings.write_concurrency, name="write")

    def chapter_dir(self, manga_id: int, chapter_id: int, chapter_number: str | int | None) -> Path:
        number = _safe_segment(str(chapter_number)) if chapter_number not in (None, "") else "0"
        return self.root / str(manga_id) / f"{number}_{chapter_id}"

    def find_chapter_dir(self, manga_id: int, chapter_id: int) -> Path | None:
        """Locate a chapter's folder without knowing its chapter number."""
        manga_dir = self.root / str(manga_id)
        if not manga_dir.is_dir():
            return None
        matches = sorted(p for p in manga_dir.glob(f"*_{chapter_id}") if p.is_dir())
        return matches[0] if matches else None

    def reference(self, path: Path) -> str:
        """Relative file reference stored and returned to clients."""
        return (Path(self.root.name) / path.relative_to(self.root)).as_posix()

    def list_saved(self, manga_id: int, chapter_id: int, limit: int | None = None) -> list[str]:
        """
        Saved page references for a chapter, ascending by page number.

        Args:
            limit: Ignore pages numbered above this (pages beyond a recount).
        """
        chapter_dir = self.find_chapter_dir(manga_id, chapter_id)
        if chapter_dir is None:
            return []

        pages: list[tuple[int, Path]] = []
        for path in chapter_dir.iterdir():
            number = page_number(path)
            if number is None or not path.is_file() or path.stat().st_size == 0:
                continue
            if limit is not None and number > limit:
                continue
            pages.append((number, path))

        pages.sort(key=lambda item: item[0])
        return [self.reference(path) for _, path in pages]

    def is_complete(self, manga_id: int, chapter_id: int, expected: int) -> bool:
        """Dedup check: on-disk page count matches the recorded total."""
        if expected <= 0:
            return False
        return len(self.list_saved(manga_id, chapter_id, limit=expected)) == expected

    async def write_images(
        self,
        manga_id: int,
        chapter_id: int,
        chapter_number: str | int | None,
        results: list[ImageResult],
    ) -> list[str]:
        """
        Write every successful result, named by its stable index.

        Returns:
            References of the files written by this call, ascending by page number.
        """
        chapter_dir = self.chapter_dir(manga_id, chapter_id, chapter_number)
        existing = self.find_chapter_dir(manga_id, chapter_id)
        if existing is not None and existing != chapter_dir:
            # Chapter number changed at the source; keep pages in the folder we already have.
            chapter_dir = existing
        await asyncio.to_thread(chapter_dir.mkdir, parents=True, exist_ok=True)

        async def write(result: ImageResult) -> str:
            path = chapter_dir / f"page_{result.index + 1}.{self.extension}"
            tmp = path.with_suffix(path.suffix + ".part")
            try:
                await asyncio.to_thread(tmp.write_bytes, result.data)
                await asyncio.to_thread(tmp.replace, path)
            except OSError as e:
                raise PersistenceWriteError(f"Failed to write {path}: {e}") from e
            return self.reference(path)

        def on_error(result: ImageResult, exc: BaseException) -> None:
            logger.error("Failed to save page %d of chapter %s: %s", result.index + 1, chapter_id, exc)
            return None

        to_write = [r for r in results if r.ok]
        written = await self.pool.map(write, to_write, on_error=on_error)
        refs = [ref for ref in written if ref]
        return sorted(refs, key=lambda ref: page_number(ref) or 0)
