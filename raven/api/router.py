"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Request

from .admin import admin_router
from .chat import chat_router
from .session import session_router
from .settings import settings_router
from .threads import threads_router

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health(request: Request):
    worker = getattr(request.app.state, "worker", None)
    return {
        "status": "ok",
        "service": "raven",
        "background": worker.stats() if worker else None,
    }


# ── V1 routes (auth per route) ───────────────────────────────────────

router.include_router(chat_router, prefix="/v1")
router.include_router(threads_router, prefix="/v1")
router.include_router(settings_router, prefix="/v1")
router.include_router(session_router, prefix="/v1")
router.include_router(admin_router, prefix="/v1")
