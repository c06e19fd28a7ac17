"""
Health check endpoints.
"""
from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "healthy"}


@router.get("/health/detailed")
async def detailed_health_check(request: Request) -> dict:
    """Detailed health check including dependencies."""
    components = request.app.state.components
    checks = {
        "api": "healthy",
        "backend": "unknown",
        "change_feed": "unknown",
    }

    # Check hosted backend (in-memory stores are always up)
    if components.backend is None:
        checks["backend"] = "healthy"
    elif await components.backend.health_check():
        checks["backend"] = "healthy"
    else:
        checks["backend"] = "unhealthy"

    # Check change feed
    feed = components.feed
    if feed is None or not hasattr(feed, "health_check"):
        checks["change_feed"] = "healthy"
    elif await feed.health_check():
        checks["change_feed"] = "healthy"
    else:
        checks["change_feed"] = "unhealthy"

    overall = "healthy" if all(
        v == "healthy" for v in checks.values()
    ) else "degraded"

    return {
        "status": overall,
        "checks": checks,
        "boards": sorted(d.isoformat() for d in request.app.state.registry.boards),
    }
