"""Health check endpoints."""

from fastapi import APIRouter, Request

from swaprelay import __version__
from swaprelay.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "swaprelay"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and relayer state."""
    settings = get_settings()
    data = {
        "status": "healthy",
        "service": "swaprelay",
        "version": __version__,
        "config": settings.get_safe_dict(),
    }

    relayer = getattr(request.app.state, "relayer", None)
    if relayer is not None:
        data["relayer"] = {
            "running": relayer.orchestrator.running,
            "handled": dict(relayer.orchestrator.handled),
            "monitor": relayer.monitor.stats(),
        }
    return data
