"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from app.config import settings

router = APIRouter()

# Set by main.py during lifespan
_components = {}


def set_components(**components):
    _components.update(components)


@router.get("/health")
async def health_check():
    """Service health, configured backends, and queue stats."""
    queue = _components.get("queue")
    media_store = _components.get("media_store")
    return {
        "status": "healthy",
        "job_store_backend": settings.job_store_backend,
        "engine_configured": _components.get("engine") is not None,
        "engine_model": settings.gemini_model,
        "media_storage_configured": bool(media_store and media_store.configured),
        "queue_running": bool(queue and queue.running),
        "queue": queue.stats() if queue else None,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
