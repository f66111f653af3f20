"""Chapter page extraction: navigate, trigger lazy rendering, pull every page out of the reader."""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.config import get_settings
from services.browser_session import BrowserSessionManager, IsolatedContext
from services.cancellation import CancelToken
from services.errors import (
    ExtractionContextLost,
    ItemEncodeFailed,
    ItemError,
    ItemFetchFailed,
    ItemRenderTimeout,
    NavigationTimeout,
)
from services.page_evaluator import PageEvaluator, is_context_loss
from services.page_scripts import ImageBinding
from services.progress_broadcaster import ProgressReporter
from services.worker_pool import BoundedWorkerPool

logger = logging.getLogger(__name__)

# Progress bands for one extraction run.
LOAD_PHASE_END = 20
FETCH_PHASE_END = 90

# Settle time after re-navigating on a recovered context.
RECOVERY_SETTLE_SECONDS = 3.0


@dataclass
class ImageResult:
    """Outcome for one page. `index` is the 0-based position in reader order."""

    index: int
    data: bytes | None = None
    page_order: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.data is not None


def decode_data_url(index: int, data_url: str) -> bytes:
    """Decode a `data:<mime>;base64,<payload>` string."""
    header, sep, payload = (data_url or "").partition(",")
    if not sep or ";base64" not in header:
        raise ItemEncodeFailed(index, "Malformed data URL")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ItemEncodeFailed(index, f"Invalid base64 payload: {e}") from e
    if not data:
        raise ItemEncodeFailed(index, "Empty image payload")
    return data


class _ExtractionRun:
    """Mutable state of one extract() call: current page, recovery budget, progress."""

    def __init__(
        self,
        url: str,
        reporter: ProgressReporter | None,
        cancel: CancelToken,
        recoveries: int,
    ) -> None:
        self.url = url
        self.reporter = reporter
        self.cancel = cancel
        self.recoveries_left = recoveries
        self.ctx: IsolatedContext | None = None
        self.total = 0
        self.completed = 0

    @property
    def page(self) -> Page:
        assert self.ctx is not None
        return self.ctx.page

    async def progress(self, value: float) -> None:
        if self.reporter is not None:
            await self.reporter.progress(int(value))

    async def status(self, status: str) -> None:
        if self.reporter is not None:
            await self.reporter.status(status)


class ChapterExtractor:
    """
    Extracts every page image of a chapter from the reader.

    Pages are processed concurrently through a bounded pool, each with its own
    retry budget and wall-clock ceiling. A failed page is recorded, never raised.
    Losing the page's execution context reloads the chapter on a fresh context
    and resumes with the pages that were not finished.
    """

    def __init__(
        self,
        sessions: BrowserSessionManager,
        evaluator: PageEvaluator | None = None,
        binding: ImageBinding | None = None,
    ) -> None:
        self.settings = get_settings()
        self.sessions = sessions
        self.evaluator = evaluator or PageEvaluator()
        self.binding = binding or ImageBinding(self.evaluator, codec=self.settings.image_codec)
        self.pool = BoundedWorkerPool(self.settings.extract_concurrency, name="extract")

    async def extract(
        self,
        chapter_url: str,
        expected_image_count: int | None = None,
        reporter: ProgressReporter | None = None,
        cancel: CancelToken | None = None,
    ) -> list[ImageResult]:
        """
        Extract all page images of one chapter.

        Args:
            chapter_url: Reader URL of the chapter.
            expected_image_count: Page count reported by the source API, if known.
            reporter: Progress sink for the caller's process id.
            cancel: Cancellation token checked at every suspension point.

        Returns:
            One ImageResult per discovered page, ordered by index. Failed pages have data=None.

        Raises:
            SessionInitError: Browser could not be launched.
            NavigationTimeout: Chapter page did not load.
            ExtractionContextLost: Context loss persisted past the recovery budget.
            ExtractionCancelled: Cancelled through `cancel`.
        """
        cancel = cancel or CancelToken()
        run = _ExtractionRun(chapter_url, reporter, cancel, self.settings.max_context_recoveries)
        logger.info("Extract images from %s", chapter_url)

        try:
            await self._open(run)
            loaded = await self._prepare_with_recovery(run, expected_image_count)

            results: dict[int, ImageResult] = {}
            pending = list(range(min(loaded, run.total)))
            while pending:
                lost = await self._process_items(run, pending, results)
                if not lost:
                    break
                if run.recoveries_left <= 0:
                    logger.error("Context lost for %d page(s); recovery budget exhausted", len(lost))
                    for index in lost:
                        results[index] = ImageResult(index, error="Execution context lost")
                    break
                await self._recover(run)
                loaded = await self._prepare_with_recovery(run, expected_image_count)
                pending = [index for index in lost if index < loaded]
                for index in lost:
                    if index >= loaded:
                        results[index] = ImageResult(index, error="Page not rendered after recovery")

            ordered = [
                results.get(index) or ImageResult(index, error="Page not rendered")
                for index in range(run.total)
            ]
            saved = sum(1 for r in ordered if r.ok)
            logger.info("Extracted %d/%d pages from %s", saved, run.total, chapter_url)
            return ordered
        finally:
            if run.ctx is not None:
                await run.ctx.close()

    async def _open(self, run: _ExtractionRun) -> None:
        run.ctx = await run.cancel.guard(self.sessions.new_isolated_context())
        await self._navigate(run)

    async def _navigate(self, run: _ExtractionRun) -> None:
        await run.status("Opening chapter page")
        try:
            await run.cancel.guard(
                run.page.goto(
                    run.url,
                    wait_until="networkidle",
                    timeout=self.settings.navigation_timeout_ms,
                )
            )
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Timed out loading {run.url}") from e
        except PlaywrightError as e:
            if is_context_loss(e):
                raise ExtractionContextLost(f"Context lost while loading {run.url}: {e}") from e
            raise

    async def _recover(self, run: _ExtractionRun) -> None:
        """Swap the current context for a fresh one and reload the chapter."""
        run.recoveries_left -= 1
        logger.warning(
            "Context destroyed, attempting recovery (%d left)...", run.recoveries_left
        )
        if run.ctx is not None:
            await run.ctx.close()
            run.ctx = None
        await self._open(run)
        await run.cancel.sleep(RECOVERY_SETTLE_SECONDS)
        logger.info("Recovery successful, continuing...")

    async def _prepare_with_recovery(self, run: _ExtractionRun, expected: int | None) -> int:
        while True:
            try:
                return await self._prepare(run, expected)
            except ExtractionContextLost:
                if run.recoveries_left <= 0:
                    raise
                await self._recover(run)

    async def _prepare(self, run: _ExtractionRun, expected: int | None) -> int:
        """
        Run the setup script and poll until the rendered count reaches the total.

        Returns:
            Number of rendered pages (may be short of run.total).
        """
        setup = await run.cancel.guard(self.binding.setup(run.page))
        if setup is None:
            raise ExtractionContextLost("Failed to set up page")

        discovered = int(setup.get("total") or 0)
        if discovered == 0 and expected:
            logger.warning("No page placeholders found; expecting %d pages", expected)
        elif expected and discovered != expected:
            logger.warning("Discovered %d pages, source reports %d", discovered, expected)
        # A recovered page can report fewer placeholders than the first load did.
        run.total = max(run.total, discovered or (expected or 0))
        logger.info("Total %d pages", run.total)
        if discovered == 0:
            return 0

        loaded = 0
        polls = 0
        max_polls = self.settings.load_poll_max_retries
        while loaded < discovered and polls < max_polls:
            await run.cancel.sleep(self.settings.load_poll_interval_seconds)
            count = await run.cancel.guard(self.binding.count_rendered(run.page))
            if count is None:
                raise ExtractionContextLost("Lost context while waiting for pages to render")
            polls += 1
            if count > loaded:
                polls = 0
            loaded = count
            logger.debug("Loaded %d/%d pages", loaded, discovered)
            await run.progress(LOAD_PHASE_END * min(loaded, discovered) / discovered)

        if loaded < discovered:
            logger.warning("Only loaded %d/%d pages, proceeding anyway", loaded, discovered)
        return min(loaded, discovered)

    async def _process_items(
        self,
        run: _ExtractionRun,
        indices: list[int],
        results: dict[int, ImageResult],
    ) -> list[int]:
        """
        Extract `indices` concurrently, storing outcomes in `results`.

        Returns:
            Indices abandoned because the page context was lost.
        """
        lost: list[int] = []

        def on_error(index: int, exc: BaseException) -> ImageResult:
            if isinstance(exc, ExtractionContextLost):
                lost.append(index)
            return ImageResult(index, error=str(exc))

        outcomes = await self.pool.map(
            lambda index: self._process_item(run, index), indices, on_error=on_error
        )
        for outcome in outcomes:
            if outcome is not None and outcome.index not in lost:
                results[outcome.index] = outcome
        return sorted(lost)

    async def _process_item(self, run: _ExtractionRun, index: int) -> ImageResult:
        settings = self.settings
        last_error: ItemError | None = None

        for attempt in range(1, settings.item_max_attempts + 1):
            run.cancel.raise_if_cancelled()
            page = run.page
            logger.debug("Processing page %d/%d (attempt %d)", index + 1, run.total, attempt)
            try:
                result = await run.cancel.guard(
                    asyncio.wait_for(
                        self._extract_item(page, index), timeout=settings.item_timeout_seconds
                    )
                )
                await self._item_done(run)
                logger.info("Processed page %s (%d/%d)", result.page_order, index + 1, run.total)
                return result
            except asyncio.TimeoutError:
                last_error = ItemRenderTimeout(
                    index, f"Timed out after {settings.item_timeout_seconds:g}s"
                )
            except ItemError as e:
                last_error = e
            except PlaywrightError as e:
                if is_context_loss(e):
                    raise ExtractionContextLost(f"Context lost on page {index + 1}: {e}") from e
                # In-page script errors count against this page's attempts.
                last_error = ItemError(index, str(e))

            logger.warning("Failed page %d (attempt %d): %s", index + 1, attempt, last_error)
            if attempt < settings.item_max_attempts:
                await run.cancel.sleep(settings.item_retry_delay_seconds * attempt)

        await self._item_done(run)
        logger.error("Giving up on page %d: %s", index + 1, last_error)
        return ImageResult(index, error=str(last_error))

    async def _item_done(self, run: _ExtractionRun) -> None:
        run.completed += 1
        if run.total:
            span = FETCH_PHASE_END - LOAD_PHASE_END
            await run.progress(LOAD_PHASE_END + span * min(run.completed, run.total) / run.total)

    async def _extract_item(self, page: Page, index: int) -> ImageResult:
        settings = self.settings
        binding = self.binding

        source = await binding.read_bound_image_source(page, index)
        if source is None:
            raise ExtractionContextLost(f"Context lost reading page {index + 1}")
        url = source.get("url")
        if not url:
            raise ItemFetchFailed(index, "Image URL not bound to page element")

        rebind = await binding.fetch_and_rebind(
            page,
            index,
            url,
            settings.item_fetch_retries,
            int(settings.item_timeout_seconds * 1000),
        )
        if rebind is None:
            raise ExtractionContextLost(f"Context lost fetching page {index + 1}")
        if not rebind.get("ok"):
            raise ItemFetchFailed(index, rebind.get("error") or "Failed to fetch image")

        redraw = await binding.trigger_redraw(page, index)
        if redraw is None:
            raise ExtractionContextLost(f"Context lost redrawing page {index + 1}")
        if not redraw.get("ok"):
            raise ItemError(index, redraw.get("error") or "Redraw failed")

        raster = await binding.rasterize(
            page, index, settings.render_poll_attempts, settings.render_poll_interval_ms
        )
        if raster is None:
            raise ExtractionContextLost(f"Context lost encoding page {index + 1}")
        if not raster.get("ok"):
            message = raster.get("error") or "Render failed"
            if raster.get("reason") == "encode":
                raise ItemEncodeFailed(index, message)
            raise ItemRenderTimeout(index, message)

        data = decode_data_url(index, raster.get("data") or "")
        page_order = raster.get("pageOrder")
        return ImageResult(
            index=index,
            data=data,
            page_order=int(page_order) if page_order is not None else index,
        )
