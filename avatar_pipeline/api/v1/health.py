"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from avatar_pipeline.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and queue configuration."""
    return {
        "status": "healthy",
        "queue_backend": settings.queue_backend,
        "queue_name": settings.queue_name,
        "avatar_store_backend": settings.avatar_store_backend,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
