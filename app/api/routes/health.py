from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.database import check_database_health, get_database
from app.services.research.runtime import ResearchRuntime, get_research_runtime

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check(
    db: AsyncSession | None = Depends(get_database),
    runtime: ResearchRuntime = Depends(get_research_runtime),
):
    """Readiness check covering the database and the research webhook configuration."""
    db_status = await check_database_health()

    if not db_status:
        raise HTTPException(status_code=503, detail="Database is not available")

    webhooks = {name: bool(url) for name, url in settings.default_webhooks.items()}
    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if settings.database_url else "not configured",
        "store": runtime.backend,
        "webhooks": webhooks,
        "batch_running": runtime.board.is_running,
    }
