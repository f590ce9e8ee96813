"""Health check endpoints."""

from fastapi import APIRouter, Request

from labcare import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "labcare",
        "version": __version__,
    }


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}


@router.get("/health/workflow")
async def workflow_stats(request: Request) -> dict:
    """Recent transition and allocation statistics."""
    from labcare.observability import get_observability_logger

    obs = get_observability_logger()
    return {
        "transitions": obs.get_stats("transitions"),
        "allocations": obs.get_stats("allocations"),
        "open_sessions": len(request.app.state.sessions),
    }
