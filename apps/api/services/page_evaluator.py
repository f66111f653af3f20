"""In-page script evaluation with context-loss recovery."""

import asyncio
import logging
from typing import Any

from playwright.async_api import Page

from core.config import get_settings

logger = logging.getLogger(__name__)


CONTEXT_LOSS_MARKERS = (
    "targetclosederror",
    "execution context was destroyed",
    "cannot find context",
    "protocol error",
    "target closed",
    "target page, context or browser has been closed",
    "frame was detached",
    "detached frame",
    "browser has been closed",
    "connection closed",
)


def is_context_loss(exc: BaseException) -> bool:
    """True if `exc` means the page's execution surface went away mid-call."""
    if type(exc).__name__ == "TargetClosedError":
        return True
    message = str(exc).lower()
    return any(marker in message for marker in CONTEXT_LOSS_MARKERS)


class PageEvaluator:
    """
    Wraps every `page.evaluate` call.

    Context-loss errors are retried in place; once retries run out the call
    returns None instead of raising. Anything else propagates unchanged.
    """

    def __init__(self, retries: int | None = None, retry_delay: float | None = None) -> None:
        settings = get_settings()
        self.retries = retries if retries is not None else settings.evaluate_retries
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.evaluate_retry_delay_seconds
        )

    async def safe_evaluate(self, page: Page, script: str, *args: Any) -> Any | None:
        """
        Evaluate `script` in `page`.

        Args:
            page: Target page.
            script: JS function expression.
            *args: Passed to the function as a single array argument when given.

        Returns:
            The script's result, or None if the context was lost on every attempt.
        """
        attempts_left = self.retries
        while attempts_left > 0:
            try:
                if args:
                    return await page.evaluate(script, list(args))
                return await page.evaluate(script)
            except Exception as e:
                if not is_context_loss(e):
                    raise
                attempts_left -= 1
                if attempts_left == 0:
                    logger.error("safe_evaluate failed after %d attempts: %s", self.retries, e)
                    return None
                logger.warning("Context error, retrying... (%d attempts left)", attempts_left)
                await asyncio.sleep(self.retry_delay)
        return None
