import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from remote_optimizer.db.base import get_session_factory

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while the app is shutting down."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "remote-optimizer"},
        )
    return {"status": "healthy", "service": "remote-optimizer"}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness probe: database reachable and the optimizer service wired."""
    checks = {
        "database": False,
        "remote_optimizer": getattr(request.app.state, "remote_optimizer", None) is not None,
    }

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
