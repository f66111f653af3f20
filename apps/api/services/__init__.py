"""Services module."""

from .backlog_scheduler import BacklogRunSummary, BacklogScheduler
from .browser_session import BrowserSessionManager, IsolatedContext, SessionState
from .cancellation import CancelToken
from .chapter_extractor import ChapterExtractor, ImageResult
from .chapter_storage import ChapterStorage
from .chapter_tracker import ChapterTracker
from .download_service import ChapterDownloadService
from .errors import (
    ExtractionCancelled,
    ExtractionContextLost,
    ItemEncodeFailed,
    ItemError,
    ItemFetchFailed,
    ItemRenderTimeout,
    NavigationTimeout,
    PersistenceWriteError,
    ScraperError,
    SessionInitError,
    SourceUnavailableError,
)
from .locks import KeyedLock, SingleRunLock
from .page_evaluator import PageEvaluator, is_context_loss
from .page_scripts import ImageBinding
from .progress_broadcaster import ProcessBroadcaster, ProgressReporter
from .source_client import SourceClient
from .worker_pool import BoundedWorkerPool

__all__ = [
    # Browser
    "BrowserSessionManager",
    "IsolatedContext",
    "SessionState",
    "PageEvaluator",
    "is_context_loss",
    "ImageBinding",
    # Extraction
    "ChapterExtractor",
    "ImageResult",
    "BoundedWorkerPool",
    "CancelToken",
    # Persistence
    "ChapterStorage",
    "ChapterTracker",
    # Orchestration
    "ChapterDownloadService",
    "SourceClient",
    "BacklogScheduler",
    "BacklogRunSummary",
    "KeyedLock",
    "SingleRunLock",
    # Progress
    "ProcessBroadcaster",
    "ProgressReporter",
    # Errors
    "ScraperError",
    "SessionInitError",
    "NavigationTimeout",
    "ExtractionContextLost",
    "ExtractionCancelled",
    "SourceUnavailableError",
    "ItemError",
    "ItemFetchFailed",
    "ItemRenderTimeout",
    "ItemEncodeFailed",
    "PersistenceWriteError",
]
