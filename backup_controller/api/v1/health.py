"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes.
"""
from datetime import datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from backup_controller.config.settings import settings

router = APIRouter()


def _component_state(request: Request, name: str) -> str:
    component = getattr(request.app.state, name, None)
    if component is None:
        return "not_started"
    return "running" if component.running else "stopped"


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/live")
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Ready once the work queue runtime is consuming items.
    """
    operator_state = _component_state(request, "operator")
    refresher_state = _component_state(request, "refresher")

    if operator_state != "running":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "operator": operator_state,
                "refresher": refresher_state,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    return {
        "status": "ready",
        "operator": operator_state,
        "refresher": refresher_state,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Indicates whether the controller components have been created.
    """
    started = getattr(request.app.state, "operator", None) is not None
    return {
        "status": "started" if started else "starting",
        "namespace": settings.namespace,
        "timestamp": datetime.utcnow().isoformat(),
    }
