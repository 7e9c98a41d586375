"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import (
    require_openai_api_key,
    require_s3_settings,
    require_scrapingbee_api_key,
    settings,
    storage_backend,
)

router = APIRouter()


def _missing_settings() -> list:
    missing = []
    for check in (require_scrapingbee_api_key, require_openai_api_key):
        try:
            check()
        except ValueError as exc:
            missing.append(str(exc).split()[0])
    try:
        if storage_backend() == "s3":
            require_s3_settings()
    except ValueError as exc:
        missing.append(str(exc))
    return missing


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "storage_backend": "unknown",
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Check Redis connection
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        health_status["storage_backend"] = storage_backend()
    except ValueError as e:
        health_status["storage_backend"] = f"invalid: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = _missing_settings()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
