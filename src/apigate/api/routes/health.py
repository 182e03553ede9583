"""Health check endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from apigate import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Return service health status."""
    return {"status": "healthy", "service": "apigate", "version": __version__}


@router.get("/health/live")
async def liveness():
    """Liveness probe: always returns 200 if process is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness(request: Request):
    """Readiness probe: checks DB and Redis connectivity plus background queues."""
    checks: dict[str, str] = {}
    overall_ok = True

    try:
        session_factory = request.app.state.db_session_factory
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"
        overall_ok = False

    # Redis is absent in local mode (in-memory counters)
    redis = getattr(request.app.state, "redis", None)
    if redis is not None:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"
            overall_ok = False
    else:
        checks["redis"] = "disabled"

    content: dict = {
        "status": "ready" if overall_ok else "not_ready",
        "checks": checks,
    }
    recorder = getattr(request.app.state, "usage_recorder", None)
    if recorder is not None:
        content["usage_pending"] = recorder.pending
        content["usage_dropped"] = recorder.dropped
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        content["webhooks_pending"] = dispatcher.pending

    return JSONResponse(status_code=200 if overall_ok else 503, content=content)
