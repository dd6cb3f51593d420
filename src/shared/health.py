from time import perf_counter
from typing import Any, Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.shared.database import get_session
from src.shared.logging import get_logger
from src.shared.redis import get_redis

logger = get_logger(__name__)

router = APIRouter(prefix="/_health", tags=["Health"])


def _session_factory(request: Request):
    # Same database the API is wired to.
    services = getattr(request.app.state, "services", None)
    return getattr(services, "session_factory", None) or get_session()


def _unavailable(body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)


@router.get("/live")
async def health_live():
    return {"ok": True}


@router.get("/db")
async def health_db(request: Request):
    t0 = perf_counter()
    try:
        async with _session_factory(request)() as s:
            await s.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_db_failed", error_type=type(exc).__name__)
        return _unavailable({"ok": False, "checks": {"db": "SELECT 1 failed"}, "error": type(exc).__name__})
    return {"ok": True, "checks": {"db_select_1_ms": int((perf_counter() - t0) * 1000)}}


@router.get("/redis")
async def health_redis():
    r = await get_redis()
    if r is None:
        # Redis only backs the dead-letter list; running without it is a supported mode.
        return {"service": "redis", "status": "disabled"}
    try:
        pong = await r.ping()
    except Exception as exc:
        logger.warning("health_redis_failed", error_type=type(exc).__name__)
        return _unavailable({"service": "redis", "status": "unavailable"})
    return {"service": "redis", "status": "ok" if pong else "degraded"}


@router.get("/queue")
async def health_queue(request: Request):
    """Depth of the durable messaging queue; ``degraded`` once any job has terminally failed."""
    from src.messaging.infrastructure.job_queue import JobQueue

    try:
        async with _session_factory(request)() as s:
            counts = await JobQueue(s).counts()
    except Exception as exc:
        logger.warning("health_queue_failed", error_type=type(exc).__name__)
        return _unavailable({"service": "queue", "status": "unavailable"})
    return {
        "service": "queue",
        "status": "degraded" if counts.get("failed") else "ok",
        "jobs": counts,
    }
