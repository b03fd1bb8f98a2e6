"""
Health check route.

Bypasses authentication. Reports process liveness plus the Discord
connection state; a degraded platform does not fail the check.
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    platform = None
    runtime = getattr(request.app.state, "monetization_runtime", None)
    if runtime is not None and runtime.platform is not None:
        platform = runtime.platform.health_check()

    return {
        "status": "ok",
        "database_configured": getattr(request.app.state, "database_configured", None),
        "platform": platform or {"state": "disconnected", "configured": False},
    }
