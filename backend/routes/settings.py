"""Health check and engine settings endpoints."""

from fastapi import APIRouter, Request

from storyline.config import get_config, update_config

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get engine settings (arbiter connection, cadence, session policy)."""
    return get_config(request.app.state.sessions.data_dir)


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update engine settings (partial merge) and push them to running sessions."""
    registry = request.app.state.sessions
    config = update_config(registry.data_dir, body)
    registry.apply_settings()
    return config
