"""Unit tests for BacklogScheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from db.models import ChapterDownloadResult, ChapterProgress, ChapterRecord
from services.backlog_scheduler import BacklogScheduler
from services.chapter_tracker import ChapterTracker


def record(manga_id: int, chapter_id: int) -> ChapterRecord:
    return ChapterRecord(manga_id=manga_id, chapter_id=chapter_id, total_images=5, total_saved_images=2)


def result(chapter_id: int, downloaded: bool) -> ChapterDownloadResult:
    return ChapterDownloadResult(
        manga_id=1,
        chapter_id=chapter_id,
        total_images=5,
        total_saved_images=5 if downloaded else 3,
        is_downloaded=downloaded,
    )


def make_scheduler(records: list[ChapterRecord], download: AsyncMock) -> BacklogScheduler:
    tracker = MagicMock()
    tracker.get_incomplete = AsyncMock(return_value=records)
    tracker.touch = AsyncMock(return_value=True)
    service = MagicMock()
    service.download_chapter = download
    return BacklogScheduler(service, tracker=tracker, interval_seconds=0.01, limit=5)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_processes_chapters_serially_in_order(self) -> None:
        active = 0
        peak = 0
        order: list[str] = []

        async def download(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            order.append(request.process_id)
            await asyncio.sleep(0.005)
            active -= 1
            return result(request.chapter_id, True)

        scheduler = make_scheduler([record(1, 10), record(1, 11), record(2, 20)], AsyncMock(side_effect=download))

        summary = await scheduler.run_once()

        assert order == ["1_10", "1_11", "2_20"]
        assert peak == 1
        assert summary.completed == ["1_10", "1_11", "2_20"]
        scheduler.tracker.get_incomplete.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_sweep(self) -> None:
        """Test one raising chapter is logged and the rest still run."""
        download = AsyncMock(
            side_effect=[RuntimeError("browser crashed"), None, result(12, False), result(13, True)]
        )
        scheduler = make_scheduler(
            [record(1, 10), record(1, 11), record(1, 12), record(1, 13)], download
        )

        summary = await scheduler.run_once()

        assert download.await_count == 4
        assert summary.failed == ["1_10", "1_11"]
        assert summary.incomplete == ["1_12"]
        assert summary.completed == ["1_13"]
        assert summary.processed == 4
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self) -> None:
        release = asyncio.Event()

        async def download(request):
            await release.wait()
            return result(request.chapter_id, True)

        scheduler = make_scheduler([record(1, 10)], AsyncMock(side_effect=download))

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0)
        assert scheduler.running

        second = await scheduler.run_once()
        release.set()
        first_summary = await first

        assert second.skipped is True
        assert second.processed == 0
        assert first_summary.completed == ["1_10"]
        assert scheduler.tracker.get_incomplete.await_count == 1

    @pytest.mark.asyncio
    async def test_lock_released_when_query_fails(self) -> None:
        scheduler = make_scheduler([], AsyncMock())
        scheduler.tracker.get_incomplete = AsyncMock(side_effect=RuntimeError("db locked"))

        with pytest.raises(RuntimeError):
            await scheduler.run_once()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_every_attempt_is_stamped(self) -> None:
        download = AsyncMock(side_effect=[RuntimeError("browser crashed"), None, result(12, True)])
        scheduler = make_scheduler([record(1, 10), record(1, 11), record(1, 12)], download)

        await scheduler.run_once()

        stamped = [c.args for c in scheduler.tracker.touch.await_args_list]
        assert stamped == [(1, 10), (1, 11), (1, 12)]

    @pytest.mark.asyncio
    async def test_unservable_chapters_rotate_out_of_the_head(self, tracker: ChapterTracker) -> None:
        """Test chapters the source returns nothing for do not starve older backlog entries."""
        for chapter_id in range(1, 7):
            await tracker.upsert(1, [ChapterProgress(chapter_id=chapter_id, total_images=5)])

        attempted: list[int] = []

        async def download(request):
            attempted.append(request.chapter_id)
            return None

        scheduler = BacklogScheduler(
            MagicMock(download_chapter=AsyncMock(side_effect=download)),
            tracker=tracker,
            interval_seconds=0.01,
            limit=5,
        )

        await scheduler.run_once()
        assert attempted == [1, 2, 3, 4, 5]

        attempted.clear()
        await scheduler.run_once()
        assert attempted[0] == 6

    @pytest.mark.asyncio
    async def test_stamp_failure_does_not_stop_sweep(self) -> None:
        download = AsyncMock(side_effect=[result(10, True), result(11, True)])
        scheduler = make_scheduler([record(1, 10), record(1, 11)], download)
        scheduler.tracker.touch = AsyncMock(side_effect=RuntimeError("db locked"))

        summary = await scheduler.run_once()

        assert summary.completed == ["1_10", "1_11"]

    @pytest.mark.asyncio
    async def test_empty_backlog(self) -> None:
        download = AsyncMock()
        scheduler = make_scheduler([], download)

        summary = await scheduler.run_once()

        assert summary.processed == 0
        download.assert_not_called()


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_runs_sweeps_until_stopped(self) -> None:
        scheduler = make_scheduler([], AsyncMock())

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.tracker.get_incomplete.await_count >= 1
        assert scheduler._task is None

    @pytest.mark.asyncio
    async def test_loop_survives_crashing_sweep(self) -> None:
        scheduler = make_scheduler([], AsyncMock())
        scheduler.tracker.get_incomplete = AsyncMock(side_effect=RuntimeError("db locked"))

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.tracker.get_incomplete.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        scheduler = make_scheduler([], AsyncMock())

        await scheduler.stop()
