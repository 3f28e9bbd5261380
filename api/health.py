"""Health check and monitoring endpoints."""

from fastapi import APIRouter, Depends, HTTPException
import structlog

from schemas.health import HealthSnapshot
from services.cache_service import CacheService, cache_service
from services.health_service import HealthCache, health_cache

logger = structlog.get_logger()
router = APIRouter()


def get_health_cache() -> HealthCache:
    return health_cache


def get_cache_service() -> CacheService:
    return cache_service


@router.get("/health", response_model=HealthSnapshot)
async def health_check(cache: HealthCache = Depends(get_health_cache)):
    """Quick health and version check for every backing service, shared by all viewers."""
    return await cache.get_health()


@router.get("/cache/stats")
async def get_cache_stats(cache: CacheService = Depends(get_cache_service)):
    """Get cache performance statistics."""
    try:
        return await cache.get_stats()
    except Exception as e:
        logger.error("Failed to get cache stats", error=str(e))
        raise HTTPException(status_code=500, detail=f"Cache stats retrieval failed: {str(e)}")
