"""Application configuration using Pydantic Settings."""

from functools import lru_cache
import json
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Manga Chapter Downloader API"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chapters.db",
        description="SQLAlchemy async connection URL",
    )
    database_echo: bool = False

    # Source site
    source_base_url: str = Field(
        default="https://cuutruyen.net",
        description="Base URL of the site chapters are downloaded from",
    )

    # Storage
    images_dir: Path = Field(default=Path("images"), description="Root directory for saved chapter images")
    image_codec: Literal["png", "jpeg", "webp"] = Field(default="png", description="Codec pages are encoded to")

    # Browser
    browser_executable_path: Path | None = Field(
        default=None,
        description="Headless browser binary; Playwright's bundled Chromium is used when unset",
    )
    browser_headless: bool = True
    navigation_timeout_ms: int = Field(default=60000, ge=1000, description="Navigation/default page timeout")

    # Extraction
    extract_concurrency: int = Field(default=5, ge=1, le=20, description="Concurrent page extractions per chapter")
    write_concurrency: int = Field(default=10, ge=1, le=50, description="Concurrent image file writes")
    item_max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per page before it is marked failed")
    item_retry_delay_seconds: float = Field(default=2.0, ge=0, description="Linear backoff base between page attempts")
    item_timeout_seconds: float = Field(default=45.0, gt=0, description="Wall-clock ceiling for one page attempt")
    item_fetch_retries: int = Field(default=3, ge=1, description="In-page network retries for one image fetch")
    render_poll_attempts: int = Field(default=50, ge=1, description="Raster polls before a render timeout")
    render_poll_interval_ms: int = Field(default=200, ge=10)
    evaluate_retries: int = Field(default=3, ge=1, le=5, description="In-place retries on context loss")
    evaluate_retry_delay_seconds: float = Field(default=1.0, ge=0)
    load_poll_interval_seconds: float = Field(default=2.0, ge=0)
    load_poll_max_retries: int = Field(default=10, ge=1)
    max_context_recoveries: int = Field(default=2, ge=0, description="Page reloads after context loss per chapter")

    # Backlog
    backlog_enabled: bool = True
    backlog_interval_seconds: float = Field(default=120.0, gt=0, description="Seconds between backlog sweeps")
    backlog_limit: int = Field(default=5, ge=1, description="Incomplete chapters picked up per sweep")

    # CORS
    # NOTE: Keep this as a string so pydantic-settings doesn't attempt JSON parsing
    # before our validators run (which breaks on comma-separated values).
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description='Allowed CORS origins (comma-separated or JSON array, e.g. \'["https://a","https://b"]\')',
    )

    @computed_field
    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if raw == "":
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(it).strip() for it in parsed if str(it).strip()]
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @computed_field
    @property
    def image_extension(self) -> str:
        """File extension for the configured codec."""
        return "jpg" if self.image_codec == "jpeg" else self.image_codec

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.images_dir.mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite") and ":memory:" not in self.database_url:
            db_path = Path(self.database_url.split("///", 1)[-1])
            db_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
