"""FastAPI application entrypoint for the Manga Chapter Downloader API."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import chapters, health, processes
from core.config import get_settings
from db.session import create_db_and_tables, dispose_engine
from services.backlog_scheduler import BacklogScheduler

# Configure logging to show INFO level and above
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

# Also configure uvicorn's logger to avoid duplicates
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager for startup/shutdown events."""
    logger.info("Starting Manga Chapter Downloader API...")
    config = get_settings()
    config.ensure_directories()
    await create_db_and_tables()

    scheduler: BacklogScheduler | None = None
    if config.backlog_enabled:
        scheduler = BacklogScheduler(chapters.get_download_service())
        scheduler.start()
    app.state.backlog_scheduler = scheduler

    logger.info("API startup complete")
    yield

    logger.info("Initiating graceful shutdown...")
    if scheduler is not None:
        await scheduler.stop()

    for process_id in chapters.get_download_service().active_downloads():
        chapters.get_download_service().cancel(process_id)

    logger.info("Closing browser session...")
    await chapters.session_manager.teardown()
    await dispose_engine()

    logger.info("Graceful shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_settings()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Downloads manga chapters through a headless browser and reports progress over WebSocket",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(chapters.router, prefix="/chapters", tags=["Chapters"])
    app.include_router(processes.router, tags=["Processes"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        workers=config.workers if not config.debug else 1,
    )
