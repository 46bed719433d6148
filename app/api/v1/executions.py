from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends, Query, status

from app.api.dependencies import get_current_user, get_scheduler
from app.core.exceptions import NotFoundError
from app.schemas.execution import ExecutionDeleteResult, ExecutionOut, ExecutionPage
from app.services.scheduler_runtime import SchedulerRuntime
from app.services.trace_tree import build_trace_view

router = APIRouter()

StatusFilter = Literal["pending", "running", "completed", "failed"]


@router.get("/{agent_id}/executions", response_model=ExecutionPage)
async def list_executions(
    agent_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_filter: StatusFilter | None = Query(default=None, alias="status"),
    schedule_id: str | None = Query(default=None, alias="scheduleId"),
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    rows, total = scheduler.executions.list_for_agent(
        agent_id, limit=limit, offset=offset, status=status_filter, schedule_id=schedule_id
    )
    counts = scheduler.traces.counts_for_executions(r.id for r in rows)
    return ExecutionPage(
        executions=[serialize_execution(r, counts.get(r.id, 0)) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.delete("/{agent_id}/executions", response_model=ExecutionDeleteResult)
async def delete_executions(
    agent_id: str,
    status_filter: StatusFilter | None = Query(default=None, alias="status"),
    schedule_id: str | None = Query(default=None, alias="scheduleId"),
    older_than: datetime | None = Query(default=None, alias="olderThan"),
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    deleted_executions, deleted_traces = scheduler.executions.delete_executions(
        agent_id, status=status_filter, schedule_id=schedule_id, older_than=older_than
    )
    return ExecutionDeleteResult(deleted_executions=deleted_executions, deleted_traces=deleted_traces)


@router.get("/{agent_id}/executions/{execution_id}", response_model=ExecutionOut)
async def execution_detail(
    agent_id: str,
    execution_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    row = scheduler.executions.get(execution_id, agent_id=agent_id)
    if row is None:
        raise NotFoundError("Execution not found")
    return serialize_execution(row, scheduler.traces.count_for_execution(row.id))


@router.delete("/{agent_id}/executions/{execution_id}")
async def delete_execution(
    agent_id: str,
    execution_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
) -> dict:
    deleted_traces = scheduler.executions.delete_execution(execution_id, agent_id=agent_id)
    if deleted_traces is None:
        raise NotFoundError("Execution not found")
    return {"deleted": True, "deletedTraces": deleted_traces}


@router.get("/{agent_id}/executions/{execution_id}/trace")
async def execution_trace(
    agent_id: str,
    execution_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
) -> dict:
    row = scheduler.executions.get(execution_id, agent_id=agent_id)
    if row is None:
        raise NotFoundError("Execution not found")
    return build_trace_view(row, scheduler.traces.list_for_execution(execution_id))


@router.post(
    "/{agent_id}/executions/{execution_id}/retry",
    response_model=ExecutionOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_execution(
    agent_id: str,
    execution_id: str,
    scheduler: SchedulerRuntime = Depends(get_scheduler),
    user: Dict[str, Any] = Depends(get_current_user),
):
    row = await scheduler.retry_execution(execution_id, agent_id=agent_id)
    return serialize_execution(row, 0)


def serialize_execution(row, step_count: int) -> ExecutionOut:
    return ExecutionOut.model_validate(row).model_copy(update={"step_count": step_count})
