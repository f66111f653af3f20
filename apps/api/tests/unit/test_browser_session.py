"""Unit tests for BrowserSessionManager."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from services.browser_session import (
    READER_PREFERENCES_SCRIPT,
    BrowserSessionManager,
    IsolatedContext,
    SessionState,
    _block_heavy_resources,
)
from services.errors import SessionInitError


def make_context() -> MagicMock:
    context = MagicMock()
    context.set_default_timeout = MagicMock()
    context.set_default_navigation_timeout = MagicMock()
    context.add_init_script = AsyncMock()
    context.route = AsyncMock()
    context.close = AsyncMock()
    page = MagicMock()
    page.is_closed = MagicMock(return_value=False)
    page.close = AsyncMock()
    context.new_page = AsyncMock(return_value=page)
    return context


def make_driver(launch_delay: float = 0) -> tuple[MagicMock, MagicMock]:
    """Build a fake `async_playwright()` factory and the browser it launches."""
    default_page = MagicMock()
    default_page.is_closed = MagicMock(return_value=False)
    default_page.close = AsyncMock()

    browser = MagicMock()
    browser.is_connected = MagicMock(return_value=True)
    browser.new_page = AsyncMock(return_value=default_page)
    browser.new_context = AsyncMock(side_effect=lambda **kwargs: make_context())
    browser.close = AsyncMock()

    async def launch(**kwargs: Any) -> MagicMock:
        await asyncio.sleep(launch_delay)
        return browser

    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(side_effect=launch)
    playwright.stop = AsyncMock()

    starter = MagicMock()
    starter.start = AsyncMock(return_value=playwright)
    factory = MagicMock(return_value=starter)
    return factory, browser


class TestEnsureReady:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_launch(self) -> None:
        """Test ten concurrent ensure_ready() calls launch the browser once."""
        factory, browser = make_driver(launch_delay=0.01)
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            results = await asyncio.gather(*(manager.ensure_ready() for _ in range(10)))

        assert all(result is browser for result in results)
        assert manager.launch_count == 1
        assert manager.state == SessionState.READY
        factory.assert_called_once()

    @pytest.mark.asyncio
    async def test_launch_failure_raises_session_init_error(self) -> None:
        factory, _ = make_driver()
        factory.return_value.start.return_value.chromium.launch = AsyncMock(
            side_effect=RuntimeError("no chromium")
        )
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            with pytest.raises(SessionInitError, match="no chromium"):
                await manager.ensure_ready()

        assert manager.state == SessionState.INVALID
        assert not manager.is_valid()

    @pytest.mark.asyncio
    async def test_relaunches_after_disconnect(self) -> None:
        """Test a crashed browser is replaced on the next call."""
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
            browser.is_connected.return_value = False
            await manager.ensure_ready()

        assert manager.launch_count == 2
        assert manager.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_invalidate_keeps_live_browser(self) -> None:
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
            manager.invalidate()
            assert manager.state == SessionState.READY
            assert await manager.ensure_ready() is browser

        assert manager.launch_count == 1
        browser.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate_after_crash_relaunches(self) -> None:
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
            browser.is_connected.return_value = False
            manager.invalidate()
            assert manager.state == SessionState.INVALID
            await manager.ensure_ready()

        assert manager.launch_count == 2

    @pytest.mark.asyncio
    async def test_context_failure_keeps_live_browser(self) -> None:
        """Test a failed new_context on a connected browser retries without relaunching."""
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
            browser.new_context = AsyncMock(side_effect=[RuntimeError("context refused"), make_context()])
            ctx = await manager.new_isolated_context()

        assert ctx.context is not None
        assert manager.launch_count == 1
        assert manager.state == SessionState.READY
        browser.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_failure_on_dead_browser_relaunches(self) -> None:
        factory, browser = make_driver()
        manager = BrowserSessionManager()
        calls = 0

        async def new_context(**kwargs: Any) -> MagicMock:
            nonlocal calls
            calls += 1
            if calls == 1:
                browser.is_connected.return_value = False
                raise RuntimeError("Browser has been closed")
            return make_context()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
            browser.new_context = AsyncMock(side_effect=new_context)
            await manager.new_isolated_context()

        assert manager.launch_count == 2
        assert calls == 2


class TestIsolatedContext:
    @pytest.mark.asyncio
    async def test_new_context_installs_preferences(self) -> None:
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            ctx = await manager.new_isolated_context()

        context = ctx.context
        context.add_init_script.assert_awaited_once_with(READER_PREFERENCES_SCRIPT)
        context.set_default_timeout.assert_called_once_with(manager.settings.navigation_timeout_ms)
        context.route.assert_not_called()

    @pytest.mark.asyncio
    async def test_block_resources_registers_route(self) -> None:
        factory, _ = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            ctx = await manager.new_isolated_context(block_resources=True)

        ctx.context.route.assert_awaited_once_with("**/*", _block_heavy_resources)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        context = make_context()
        page = await context.new_page()
        ctx = IsolatedContext(context, page)

        async with ctx:
            pass
        await ctx.close()

        assert ctx.closed
        page.close.assert_awaited_once()
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_survives_errors(self) -> None:
        context = make_context()
        context.close = AsyncMock(side_effect=RuntimeError("already gone"))
        page = await context.new_page()

        await IsolatedContext(context, page).close()


class TestBlockHeavyResources:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("resource_type", "aborted"),
        [("image", True), ("font", True), ("xhr", False), ("document", False)],
    )
    async def test_routes(self, resource_type: str, aborted: bool) -> None:
        route = MagicMock()
        route.request.resource_type = resource_type
        route.abort = AsyncMock()
        route.continue_ = AsyncMock()

        await _block_heavy_resources(route)

        assert route.abort.await_count == (1 if aborted else 0)
        assert route.continue_.await_count == (0 if aborted else 1)


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_releases_everything(self) -> None:
        factory, browser = make_driver()
        manager = BrowserSessionManager()

        with patch("services.browser_session.async_playwright", factory):
            await manager.ensure_ready()
        await manager.teardown()

        browser.close.assert_awaited_once()
        factory.return_value.start.return_value.stop.assert_awaited_once()
        assert manager.state == SessionState.UNINITIALIZED
        assert not manager.is_valid()
