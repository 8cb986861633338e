"""Health check router."""

from fastapi import APIRouter

from app.config import VERSION, settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Return health status and which integrations are configured."""
    return {
        "status": "ok",
        "model_configured": bool(settings.ANTHROPIC_API_KEY),
        "edge_configured": bool(settings.CF_ACCOUNT_ID and settings.CF_API_TOKEN),
    }


@router.get("/health/version")
async def health_version() -> dict:
    """Return application version."""
    return {"version": VERSION}
