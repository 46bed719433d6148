from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.core.clock import as_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ScheduleSpec(CamelModel):
    mode: Literal["interval", "cron"]
    value: int | None = Field(default=None, gt=0)
    unit: Literal["seconds", "minutes", "hours", "days", "weeks"] | None = None
    expression: str | None = None
    timezone: str | None = None

    @model_validator(mode="after")
    def check_mode_fields(self) -> "ScheduleSpec":
        if self.mode == "interval" and (self.value is None or self.unit is None):
            raise ValueError("Interval schedules require value and unit")
        if self.mode == "cron" and not (self.expression or "").strip():
            raise ValueError("Cron schedules require an expression")
        return self

    def as_record(self) -> dict:
        return self.model_dump(exclude_none=True)


class ScheduleCreate(CamelModel):
    schedule: ScheduleSpec
    prompt: str = Field(min_length=1)
    enabled: bool = True
    max_runs: int | None = Field(default=None, gt=0)


class ScheduleUpdate(CamelModel):
    schedule: ScheduleSpec | None = None
    prompt: str | None = Field(default=None, min_length=1)
    enabled: bool | None = None
    max_runs: int | None = Field(default=None, gt=0)


class ScheduleOut(CamelModel):
    id: str
    agent_id: str
    trigger_id: str
    enabled: bool
    schedule: dict
    prompt: str
    max_runs: int | None = None
    author: str
    last_run: datetime | None = None
    next_run: datetime | None = None
    run_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("last_run", "next_run", "created_at", "updated_at")
    @classmethod
    def utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)
