"""Headless browser lifecycle management."""

import asyncio
import logging
from enum import Enum
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright

from core.config import get_settings
from services.errors import SessionInitError

logger = logging.getLogger(__name__)


USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--no-first-run",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

# Reader preferences the site reads on load; the classic reader renders pages as canvases.
READER_PREFERENCES_SCRIPT = """
localStorage.setItem('UIPreference3', 'classic');
localStorage.setItem('UIPreferenceConfirmed', 'true');
"""

BLOCKED_RESOURCE_TYPES = {"image", "stylesheet", "font", "media"}


class SessionState(str, Enum):
    """Browser session lifecycle state."""

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    INVALID = "INVALID"


class IsolatedContext:
    """A disposable browser context with a single page, one per unit of work."""

    def __init__(self, context: BrowserContext, page: Page) -> None:
        self.context = context
        self.page = page
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Close page and context. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            if not self.page.is_closed():
                await self.page.close()
        except Exception as e:
            logger.warning("Error closing page: %s", e)
        try:
            await self.context.close()
        except Exception as e:
            logger.warning("Error closing browser context: %s", e)

    async def __aenter__(self) -> "IsolatedContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def _block_heavy_resources(route: Route) -> None:
    try:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()
    except Exception as e:
        # Route already handled or page gone.
        logger.debug("Route not handled: %s", e)


class BrowserSessionManager:
    """
    Owns the Playwright driver and browser.

    Lifecycle: UNINITIALIZED -> INITIALIZING -> READY -> (crash) INVALID -> INITIALIZING -> READY.
    Only one launch runs at a time; concurrent `ensure_ready()` callers wait for it.
    """

    def __init__(self) -> None:
        self.settings = get_settings()
        self.state = SessionState.UNINITIALIZED
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._default_page: Page | None = None
        self._lock = asyncio.Lock()
        self.launch_count = 0

    def is_valid(self) -> bool:
        """True only if both the browser and its default page are live."""
        try:
            return (
                self._browser is not None
                and self._browser.is_connected()
                and self._default_page is not None
                and not self._default_page.is_closed()
            )
        except Exception:
            return False

    async def ensure_ready(self) -> Browser:
        """Return a usable browser, launching (or relaunching) it if needed."""
        if self.state == SessionState.READY and self.is_valid():
            return self._browser  # type: ignore[return-value]

        async with self._lock:
            # Another caller may have finished launching while we waited.
            if self.state == SessionState.READY and self.is_valid():
                return self._browser  # type: ignore[return-value]

            if self.state == SessionState.READY:
                logger.warning("Browser session lost; relaunching")
                self.state = SessionState.INVALID

            self.state = SessionState.INITIALIZING
            await self._cleanup()
            try:
                await self._launch()
            except Exception as e:
                self.state = SessionState.INVALID
                await self._cleanup()
                raise SessionInitError(f"Failed to launch browser: {e}") from e

            self.state = SessionState.READY
            return self._browser  # type: ignore[return-value]

    async def _launch(self) -> None:
        settings = self.settings
        launch_kwargs: dict[str, Any] = {
            "headless": settings.browser_headless,
            "args": LAUNCH_ARGS,
        }
        if settings.browser_executable_path:
            launch_kwargs["executable_path"] = str(settings.browser_executable_path)

        logger.info(
            "Launching browser (headless=%s, executable=%s)",
            settings.browser_headless,
            settings.browser_executable_path or "bundled",
        )
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        self._default_page = await self._browser.new_page(user_agent=USER_AGENT)
        self.launch_count += 1

    async def new_isolated_context(self, block_resources: bool = False) -> IsolatedContext:
        """
        Create a fresh context and page for one unit of work.

        Args:
            block_resources: Abort images/stylesheets/fonts (JSON-only work).
        """
        browser = await self.ensure_ready()
        try:
            context = await browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1280, "height": 2000},
            )
        except Exception as e:
            # Relaunches only if the browser died between the validity check and now.
            logger.warning("Failed to open browser context, retrying: %s", e)
            self.invalidate()
            browser = await self.ensure_ready()
            context = await browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1280, "height": 2000},
            )

        context.set_default_timeout(self.settings.navigation_timeout_ms)
        context.set_default_navigation_timeout(self.settings.navigation_timeout_ms)
        await context.add_init_script(READER_PREFERENCES_SCRIPT)
        if block_resources:
            await context.route("**/*", _block_heavy_resources)

        page = await context.new_page()
        return IsolatedContext(context, page)

    def invalidate(self) -> None:
        """Record a detected crash. A session whose browser is still live stays READY."""
        if self.state == SessionState.READY and not self.is_valid():
            logger.warning("Browser session lost")
            self.state = SessionState.INVALID

    async def _cleanup(self) -> None:
        if self._default_page is not None:
            try:
                if not self._default_page.is_closed():
                    await self._default_page.close()
            except Exception as e:
                logger.warning("Error closing default page: %s", e)
            self._default_page = None

        if self._browser is not None:
            try:
                if self._browser.is_connected():
                    await self._browser.close()
            except Exception as e:
                logger.warning("Error closing browser: %s", e)
            self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning("Error stopping playwright: %s", e)
            self._playwright = None

    async def teardown(self) -> None:
        """Release every browser resource."""
        async with self._lock:
            await self._cleanup()
            self.state = SessionState.UNINITIALIZED
        logger.info("Browser session torn down")
