"""
Agent schedule API routes
"""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, status

from app.api.dependencies import get_current_user, get_scheduler
from app.core.exceptions import NotFoundError
from app.schemas.execution import ExecutionOut
from app.schemas.schedule import ScheduleCreate, ScheduleOut, ScheduleUpdate
from app.services.scheduler_runtime import SchedulerRuntime

router = APIRouter()


@router.get("/{agent_id}/schedules", response_model=List[ScheduleOut])
async def list_schedules(
    agent_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    return scheduler.schedules.list_by_agent(agent_id)


@router.post("/{agent_id}/schedules", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    agent_id: str,
    payload: ScheduleCreate,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    return await scheduler.create_schedule(
        agent_id,
        payload.schedule.as_record(),
        payload.prompt,
        author=user["id"],
        enabled=payload.enabled,
        max_runs=payload.max_runs,
    )


@router.get("/{agent_id}/schedules/{schedule_id}", response_model=ScheduleOut)
async def get_schedule(
    agent_id: str,
    schedule_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    return scheduler.get_schedule_for_agent(agent_id, schedule_id)


@router.patch("/{agent_id}/schedules/{schedule_id}", response_model=ScheduleOut)
async def update_schedule(
    agent_id: str,
    schedule_id: str,
    payload: ScheduleUpdate,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    scheduler.get_schedule_for_agent(agent_id, schedule_id)
    provided = payload.model_fields_set
    updates: Dict[str, Any] = {}
    if payload.schedule is not None:
        updates["schedule"] = payload.schedule.as_record()
    if payload.prompt is not None:
        updates["prompt"] = payload.prompt
    if payload.enabled is not None:
        updates["enabled"] = payload.enabled
    if "max_runs" in provided:
        updates["max_runs"] = payload.max_runs

    row = await scheduler.update_schedule(schedule_id, updates)
    if row is None:
        raise NotFoundError("Schedule not found")
    return row


@router.delete("/{agent_id}/schedules/{schedule_id}")
async def delete_schedule(
    agent_id: str,
    schedule_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
) -> dict:
    scheduler.get_schedule_for_agent(agent_id, schedule_id)
    if not await scheduler.delete_schedule(schedule_id):
        raise NotFoundError("Schedule not found")
    return {"success": True}


@router.get("/{agent_id}/schedules/{schedule_id}/executions", response_model=List[ExecutionOut])
async def schedule_executions(
    agent_id: str,
    schedule_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    skip: int = Query(default=0, ge=0),
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    scheduler.get_schedule_for_agent(agent_id, schedule_id)
    rows = scheduler.get_execution_history(schedule_id, limit=limit, skip=skip)
    counts = scheduler.traces.counts_for_executions(r.id for r in rows)
    return [
        ExecutionOut.model_validate(r).model_copy(update={"step_count": counts.get(r.id, 0)})
        for r in rows
    ]
