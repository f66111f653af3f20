"""Exception hierarchy for chapter extraction and download."""


class ScraperError(Exception):
    """Base exception for scraping operations."""
    pass


class SessionInitError(ScraperError):
    """Browser session could not be launched. Retried on the next ensure_ready()."""
    pass


class NavigationTimeout(ScraperError):
    """Chapter page did not finish loading."""
    pass


class ExtractionContextLost(ScraperError):
    """The page's execution context was destroyed and could not be recovered."""
    pass


class ExtractionCancelled(ScraperError):
    """An extraction was aborted through its cancel token."""
    pass


class SourceUnavailableError(ScraperError):
    """The source API returned no data for a request."""
    pass


class ItemError(ScraperError):
    """A single page failed. Never propagates past the worker pool.

    Attributes:
        index: 0-based page index.
    """

    def __init__(self, index: int, message: str) -> None:
        self.index = index
        super().__init__(message)


class ItemFetchFailed(ItemError):
    """Image source missing or fetch did not succeed."""
    pass


class ItemRenderTimeout(ItemError):
    """Page never produced a raster within its attempts or wall-clock budget."""
    pass


class ItemEncodeFailed(ItemError):
    """Raster could not be encoded to the target codec."""
    pass


class PersistenceWriteError(ScraperError):
    """A chapter record or image file could not be written."""
    pass
