"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.routes.chapters import session_manager
from core.config import Settings, get_settings
from db.session import get_session

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy", "degraded"]
    database: Literal["connected", "disconnected"]
    filesystem: Literal["accessible", "inaccessible"]
    browser: str
    version: str
    environment: str


class LivenessResponse(BaseModel):
    """Kubernetes liveness probe response."""

    status: Literal["ok"]


class ReadinessResponse(BaseModel):
    """Kubernetes readiness probe response."""

    status: Literal["ready", "not_ready"]
    details: dict[str, bool]


async def _database_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def _filesystem_ok(settings: Settings) -> bool:
    try:
        return settings.images_dir.exists() or settings.images_dir.parent.exists()
    except OSError:
        return False


@router.get("/health", response_model=HealthStatus)
async def health_check(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> HealthStatus:
    """Full health check endpoint."""
    db_ok = await _database_ok(session)
    fs_ok = _filesystem_ok(settings)

    # The browser launches lazily, so an uninitialized session is still healthy.
    overall: Literal["healthy", "unhealthy", "degraded"]
    if db_ok and fs_ok:
        overall = "healthy"
    elif db_ok:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthStatus(
        status=overall,
        database="connected" if db_ok else "disconnected",
        filesystem="accessible" if fs_ok else "inaccessible",
        browser=session_manager.state.value,
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Kubernetes liveness probe - checks if app is running."""
    return LivenessResponse(status="ok")


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_probe(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ReadinessResponse:
    """Kubernetes readiness probe - checks if app can serve requests."""
    checks = {
        "database": await _database_ok(session),
        "filesystem": _filesystem_ok(settings),
    }

    return ReadinessResponse(
        status="ready" if all(checks.values()) else "not_ready",
        details=checks,
    )
