"""Health and resilience status endpoints."""

from fastapi import APIRouter, HTTPException, Request

from swapshield import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "swapshield"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration info."""
    settings = request.app.state.settings
    return {
        "status": "healthy",
        "service": "swapshield",
        "version": __version__,
        "config": settings.get_safe_dict(),
    }


@router.get("/health/resilience")
async def resilience_status(request: Request):
    """Current RPC endpoint, rate-limit buckets and cooldown state."""
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Swap orchestrator not running")

    status = orchestrator.get_status()
    rpc_healthy = any(endpoint["healthy"] for endpoint in status["rpc"]["endpoints"])
    return {
        "status": "healthy" if rpc_healthy else "degraded",
        **status,
    }
