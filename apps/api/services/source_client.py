"""JSON API of the source site, requested from inside the browser."""

import logging
from typing import Any

from core.config import get_settings
from services.browser_session import BrowserSessionManager
from services.errors import SourceUnavailableError
from services.page_evaluator import PageEvaluator, is_context_loss

logger = logging.getLogger(__name__)

# The API only answers requests carrying the site's own origin, so fetch runs in-page.
FETCH_JSON_SCRIPT = """
async ([url]) => {
    try {
        const res = await fetch(url, { method: 'GET', headers: { accept: 'application/json' } });
        if (!res.ok) return { ok: false, status: res.status };
        return { ok: true, body: await res.json() };
    } catch (err) {
        return { ok: false, error: err.message };
    }
}
"""


class SourceClient:
    """Reads manga and chapter metadata from the source site's API."""

    def __init__(
        self,
        sessions: BrowserSessionManager,
        evaluator: PageEvaluator | None = None,
    ) -> None:
        self.settings = get_settings()
        self.sessions = sessions
        self.evaluator = evaluator or PageEvaluator()

    @property
    def base_url(self) -> str:
        return self.settings.source_base_url.rstrip("/")

    def chapter_url(self, manga_id: int, chapter_id: int) -> str:
        """Reader URL of a chapter."""
        return f"{self.base_url}/mangas/{manga_id}/chapters/{chapter_id}"

    async def fetch_json(self, url: str) -> Any | None:
        """
        GET `url` from a fresh, resource-blocked context on the site's origin.

        Returns:
            Parsed JSON body, or None if the API answered with an error.
        """
        try:
            return await self._fetch_once(url)
        except Exception as e:
            if not (isinstance(e, SourceUnavailableError) or is_context_loss(e)):
                raise
            # A fresh context; the session relaunches the browser only if it is gone.
            logger.warning("Retrying %s after context loss: %s", url, e)
            return await self._fetch_once(url)

    async def _fetch_once(self, url: str) -> Any | None:
        async with await self.sessions.new_isolated_context(block_resources=True) as ctx:
            await ctx.page.goto(self.base_url, wait_until="domcontentloaded")
            result = await self.evaluator.safe_evaluate(ctx.page, FETCH_JSON_SCRIPT, url)

        if result is None:
            raise SourceUnavailableError(f"Context lost requesting {url}")
        if not result.get("ok"):
            logger.warning(
                "Source API error for %s: %s", url, result.get("status") or result.get("error")
            )
            return None
        return result.get("body")

    async def get_chapter(self, chapter_id: int) -> dict[str, Any] | None:
        """Chapter metadata: id, number, name, pages..."""
        body = await self.fetch_json(f"{self.base_url}/api/v2/chapters/{chapter_id}")
        return _unwrap(body)

    async def get_manga_chapters(self, manga_id: int) -> list[dict[str, Any]] | None:
        body = await self.fetch_json(f"{self.base_url}/api/v2/mangas/{manga_id}/chapters")
        data = _unwrap(body)
        return data if isinstance(data, list) else None


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body
