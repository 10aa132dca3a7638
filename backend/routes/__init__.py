"""FastAPI API endpoints under /api.

Endpoint groups: health and settings, story sessions. Each chat's session
resources (messages, role, activate, status, evaluate, context) are nested
under /api/sessions/{chat_id}/.
"""

from fastapi import APIRouter

from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(sessions_router)
