"""Health check and system info routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from songbroker.config import get_settings
from songbroker.db.session import get_db
from songbroker.schemas.schemas import HealthResponse
from songbroker.services.factory import get_counter_store

router = APIRouter(tags=["System"])
logger = logging.getLogger(__name__)

settings = get_settings()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    counter_store=Depends(get_counter_store),
):
    """
    Health check endpoint.

    Returns the status of:
    - API server
    - Database connection
    - Redis connection (rate-limit counters and sweep lock)
    """
    redis_status = "ok"
    try:
        await counter_store.ping()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        redis_status = "error"

    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    overall_status = "healthy"
    if "error" in (redis_status, db_status):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        database=db_status,
        redis=redis_status,
    )


@router.get(
    "/v1/info",
    summary="Service information",
    description="Get general information about the service.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "environment": settings.app_env,
        "generation_modes": ["text_to_song", "lyrics_to_song", "instrumental"],
        "tasks_per_generation": settings.generation_task_count,
        "provider_calls_per_minute": settings.provider_calls_per_minute,
        "max_status_checks": settings.status_check_max_attempts,
        "documentation": "/docs",
        "redoc": "/redoc",
    }
