from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import field_validator

from app.core.clock import as_utc
from app.schemas.schedule import CamelModel


class ExecutionOut(CamelModel):
    id: str
    schedule_id: str
    agent_id: str
    user_id: str
    triggered_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    status: str
    input: str | None = None
    output: str | None = None
    conversation_id: str | None = None
    error: str | None = None
    attempt: int = 1
    retry_of: str | None = None
    step_count: int = 0

    @field_validator("triggered_at", "completed_at")
    @classmethod
    def utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class ExecutionPage(CamelModel):
    executions: List[ExecutionOut]
    total: int
    limit: int
    offset: int


class ExecutionDeleteResult(CamelModel):
    deleted_executions: int
    deleted_traces: int
