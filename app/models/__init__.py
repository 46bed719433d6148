"""
SQLAlchemy models for agent schedules, trigger executions and execution traces.
"""
from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func

from app.models.status import EXECUTION_TERMINAL_STATES, ExecutionStatus, StepType, TraceStatus

Base = declarative_base()

JSONType = JSON().with_variant(JSONB, "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class AgentSchedule(Base):
    __tablename__ = "agent_schedules"
    __table_args__ = (
        Index("ix_agent_schedules_agent_enabled", "agent_id", "enabled"),
        Index("ix_agent_schedules_author_enabled", "author", "enabled"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    agent_id = Column(Text, nullable=False, index=True)
    trigger_id = Column(Text, nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    schedule = Column(JSONType, nullable=False)
    prompt = Column(Text, nullable=False)
    max_runs = Column(Integer)
    author = Column(Text, nullable=False)
    last_run = Column(DateTime(timezone=True))
    next_run = Column(DateTime(timezone=True))
    run_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    fail_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TriggerExecution(Base):
    __tablename__ = "trigger_executions"
    __table_args__ = (
        Index("ix_trigger_executions_schedule_triggered", "schedule_id", "triggered_at"),
        Index("ix_trigger_executions_agent_triggered", "agent_id", "triggered_at"),
        Index("ix_trigger_executions_status_triggered", "status", "triggered_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    schedule_id = Column(String(36), nullable=False)
    agent_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    status = Column(Text, nullable=False, default=ExecutionStatus.PENDING.value)
    input = Column(Text)
    output = Column(Text)
    conversation_id = Column(Text)
    error = Column(Text)
    attempt = Column(Integer, nullable=False, default=1)
    retry_of = Column(String(36))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_terminal(self) -> bool:
        return ExecutionStatus(self.status) in EXECUTION_TERMINAL_STATES


class ExecutionTrace(Base):
    __tablename__ = "execution_traces"
    __table_args__ = (
        UniqueConstraint("execution_id", "sequence", name="uq_execution_traces_sequence"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    execution_id = Column(String(36), nullable=False, index=True)
    parent_id = Column(String(36), index=True)
    sequence = Column(Integer, nullable=False)
    step_type = Column(Text, nullable=False)
    step_name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=TraceStatus.RUNNING.value)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    input = Column(JSONType)
    output = Column(JSONType)
    token_usage = Column(JSONType)
    error = Column(Text)
    meta = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


__all__ = [
    "AgentSchedule",
    "Base",
    "ExecutionStatus",
    "ExecutionTrace",
    "StepType",
    "TraceStatus",
    "TriggerExecution",
]
