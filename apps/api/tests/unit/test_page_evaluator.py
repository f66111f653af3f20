"""Unit tests for context-loss classification and safe_evaluate."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from services.page_evaluator import PageEvaluator, is_context_loss


class TestIsContextLoss:
    @pytest.mark.parametrize(
        "message",
        [
            "Execution context was destroyed, most likely because of a navigation",
            "Protocol error (Runtime.callFunctionOn): Target closed.",
            "Cannot find context with specified id",
            "Target page, context or browser has been closed",
            "Frame was detached",
        ],
    )
    def test_context_loss_messages(self, message: str) -> None:
        assert is_context_loss(PlaywrightError(message))

    def test_target_closed_error_by_type_name(self) -> None:
        class TargetClosedError(PlaywrightError):
            pass

        assert is_context_loss(TargetClosedError("page.evaluate failed"))
        assert is_context_loss(PlaywrightError("TargetClosedError: page.evaluate failed"))

    def test_script_errors_are_not_context_loss(self) -> None:
        assert not is_context_loss(PlaywrightError("ReferenceError: foo is not defined"))
        assert not is_context_loss(ValueError("bad"))


class TestSafeEvaluate:
    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        page = MagicMock()
        page.evaluate = AsyncMock(return_value={"total": 3})

        result = await PageEvaluator(retries=3, retry_delay=0).safe_evaluate(page, "() => 1")

        assert result == {"total": 3}
        page.evaluate.assert_awaited_once_with("() => 1")

    @pytest.mark.asyncio
    async def test_args_passed_as_single_array(self) -> None:
        page = MagicMock()
        page.evaluate = AsyncMock(return_value={"ok": True})

        await PageEvaluator(retries=1, retry_delay=0).safe_evaluate(page, "([a, b]) => a", 4, "x")

        page.evaluate.assert_awaited_once_with("([a, b]) => a", [4, "x"])

    @pytest.mark.asyncio
    async def test_retries_context_loss_in_place(self) -> None:
        """Test a transient context loss is retried and the later result returned."""
        page = MagicMock()
        page.evaluate = AsyncMock(
            side_effect=[PlaywrightError("Execution context was destroyed"), {"loaded": 2}]
        )

        result = await PageEvaluator(retries=3, retry_delay=0).safe_evaluate(page, "() => 1")

        assert result == {"loaded": 2}
        assert page.evaluate.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_context_loss_returns_none(self) -> None:
        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=PlaywrightError("Target closed"))

        result = await PageEvaluator(retries=3, retry_delay=0).safe_evaluate(page, "() => 1")

        assert result is None
        assert page.evaluate.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self) -> None:
        page = MagicMock()
        error = PlaywrightError("TypeError: cannot read properties of undefined")
        page.evaluate = AsyncMock(side_effect=error)

        with pytest.raises(PlaywrightError) as exc_info:
            await PageEvaluator(retries=3, retry_delay=0).safe_evaluate(page, "() => 1")

        assert exc_info.value is error
        page.evaluate.assert_awaited_once()
