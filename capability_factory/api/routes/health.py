from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from capability_factory.middleware.correlation import get_correlation_id

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness plus background worker state.

    Returns 503 during graceful shutdown so the load balancer stops routing traffic.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "capability-factory", "correlation_id": get_correlation_id()},
        )

    background = getattr(request.app.state, "background", None)
    return {
        "status": "healthy",
        "service": "capability-factory",
        "background": {
            "running": background.running if background else False,
            "pending": background.pending if background else 0,
            "failures": len(background.failures) if background else 0,
        },
        "correlation_id": get_correlation_id(),
    }
