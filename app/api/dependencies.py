"""Shared API dependencies."""
from fastapi import Request

from app.core.exceptions import AppError
from app.core.security import get_current_user
from app.services.scheduler_runtime import SchedulerRuntime


def get_scheduler(request: Request) -> SchedulerRuntime:
    runtime = getattr(request.app.state, "scheduler", None)
    if runtime is None:
        raise AppError("Scheduler runtime is not available")
    return runtime


__all__ = ["get_current_user", "get_scheduler"]
