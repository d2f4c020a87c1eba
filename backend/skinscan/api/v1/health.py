"""
Health check endpoints.
Verifies Redis and object-storage connectivity.
"""

from fastapi import APIRouter, Depends

from skinscan.core.config import get_settings
from skinscan.core.logging import get_logger
from skinscan.core.redis import ping_redis
from skinscan.services.storage_service import StorageService, get_storage

router = APIRouter(tags=["Health"])
logger = get_logger("health")


@router.get("/health")
async def health_check(storage: StorageService = Depends(get_storage)):
    """
    Basic health check.
    The embedded client calls this on startup and only warns when it fails.
    """
    settings = get_settings()
    health = {
        "status": "healthy",
        "service": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "redis": "unknown",
        "storage": "unknown",
    }

    try:
        health["redis"] = await ping_redis()
    except Exception as e:
        health["redis"] = f"error: {str(e)}"
        health["status"] = "degraded"
        logger.error("Redis health check failed: %s", str(e))

    try:
        await storage.ping()
        health["storage"] = "connected"
    except Exception as e:
        health["storage"] = f"error: {str(e)}"
        health["status"] = "degraded"
        logger.error("Storage health check failed: %s", str(e))

    return health


@router.get("/ping")
async def ping():
    """Simple ping endpoint for load balancers."""
    return {"ping": "pong"}
