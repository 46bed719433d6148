"""
Health API Routes
"""
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_current_user, get_scheduler
from app.database import database_health
from app.services.scheduler_runtime import SchedulerRuntime

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Database connectivity and scheduler readiness"""
    runtime = getattr(request.app.state, "scheduler", None)
    db = database_health(request.app.state.engine)
    scheduler_ready = bool(runtime and runtime.ready)
    ok = bool(db.get("ok"))
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok and scheduler_ready else "degraded",
            "database": db,
            "scheduler": {"ready": scheduler_ready},
        },
    )


@router.get("/scheduler/stats")
async def scheduler_stats(
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: dict = Depends(get_current_user),
) -> dict:
    return scheduler.get_stats()
