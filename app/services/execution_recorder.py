"""
Execution records for trigger fires.

Status moves pending -> running -> {completed, failed} only. Every
transition is a guarded UPDATE on the current status, so a terminal record
is never written again; retries get a brand-new record.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from app.core.clock import as_utc, elapsed_ms, now_utc
from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.database import session_scope
from app.models import AgentSchedule, ExecutionStatus, ExecutionTrace, TriggerExecution
from app.models.status import EXECUTION_TRANSITIONS

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    def __init__(self, session_factory: sessionmaker, output_limit: int = 10000):
        self._session_factory = session_factory
        self.output_limit = output_limit

    def open(
        self,
        schedule: AgentSchedule,
        *,
        attempt: int = 1,
        retry_of: str | None = None,
    ) -> TriggerExecution:
        """Create a pending execution for one fire of `schedule`."""
        with session_scope(self._session_factory) as db:
            row = TriggerExecution(
                schedule_id=schedule.id,
                agent_id=schedule.agent_id,
                user_id=schedule.author,
                triggered_at=now_utc(),
                status=ExecutionStatus.PENDING.value,
                input=schedule.prompt,
                attempt=attempt,
                retry_of=retry_of,
            )
            db.add(row)
            db.flush()
            return row

    def mark_running(self, execution_id: str) -> TriggerExecution:
        return self._transition(execution_id, ExecutionStatus.RUNNING, {})

    def complete(
        self,
        execution_id: str,
        *,
        output: str | None = None,
        conversation_id: str | None = None,
    ) -> TriggerExecution:
        values: Dict[str, Any] = {"conversation_id": conversation_id}
        if output is not None:
            values["output"] = str(output)[: self.output_limit]
        return self._transition(execution_id, ExecutionStatus.COMPLETED, values)

    def fail(
        self,
        execution_id: str,
        error: str,
        *,
        output: str | None = None,
    ) -> TriggerExecution:
        values: Dict[str, Any] = {"error": error}
        if output is not None:
            values["output"] = str(output)[: self.output_limit]
        return self._transition(execution_id, ExecutionStatus.FAILED, values)

    def _transition(
        self,
        execution_id: str,
        target: ExecutionStatus,
        values: Dict[str, Any],
    ) -> TriggerExecution:
        allowed_from = [status.value for status in EXECUTION_TRANSITIONS[target]]
        with session_scope(self._session_factory) as db:
            row = db.get(TriggerExecution, execution_id)
            if row is None:
                raise NotFoundError(f"Execution {execution_id} not found")

            update: Dict[Any, Any] = {TriggerExecution.status: target.value}
            for key, value in values.items():
                update[getattr(TriggerExecution, key)] = value
            if target.is_terminal:
                completed_at = now_utc()
                update[TriggerExecution.completed_at] = completed_at
                update[TriggerExecution.duration_ms] = max(
                    0, elapsed_ms(row.triggered_at, completed_at)
                )

            updated = (
                db.query(TriggerExecution)
                .filter(
                    TriggerExecution.id == execution_id,
                    TriggerExecution.status.in_(allowed_from),
                )
                .update(update, synchronize_session=False)
            )
            if not updated:
                raise InvalidTransitionError(
                    f"Execution {execution_id} cannot move from {row.status} to {target.value}",
                    details={"from": row.status, "to": target.value},
                )
            db.refresh(row)
            logger.debug("Execution %s -> %s", execution_id, target.value)
            return row

    def create_retry(self, execution_id: str, agent_id: str | None = None) -> Tuple[TriggerExecution, AgentSchedule]:
        """New pending record for the same schedule with attempt + 1."""
        original = self.get(execution_id, agent_id=agent_id)
        if original is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        if original.status != ExecutionStatus.FAILED.value:
            raise InvalidTransitionError(
                f"Only failed executions can be retried (status is {original.status})"
            )
        with session_scope(self._session_factory) as db:
            schedule = db.get(AgentSchedule, original.schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {original.schedule_id} no longer exists")
        retry = self.open(schedule, attempt=original.attempt + 1, retry_of=original.id)
        return retry, schedule

    def get(self, execution_id: str, agent_id: str | None = None) -> TriggerExecution | None:
        with session_scope(self._session_factory) as db:
            query = db.query(TriggerExecution).filter(TriggerExecution.id == execution_id)
            if agent_id is not None:
                query = query.filter(TriggerExecution.agent_id == agent_id)
            return query.first()

    def list_for_schedule(
        self, schedule_id: str, limit: int = 50, skip: int = 0
    ) -> List[TriggerExecution]:
        with session_scope(self._session_factory) as db:
            return (
                db.query(TriggerExecution)
                .filter(TriggerExecution.schedule_id == schedule_id)
                .order_by(TriggerExecution.triggered_at.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    def list_for_agent(
        self,
        agent_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
        schedule_id: str | None = None,
    ) -> Tuple[List[TriggerExecution], int]:
        with session_scope(self._session_factory) as db:
            query = self._filtered(db.query(TriggerExecution), agent_id, status, schedule_id, None)
            total = query.with_entities(func.count(TriggerExecution.id)).scalar() or 0
            rows = (
                query.order_by(TriggerExecution.triggered_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return rows, total

    def delete_execution(self, execution_id: str, agent_id: str | None = None) -> int | None:
        """
        Delete one execution after its traces. Returns the number of traces
        removed, or None if the execution does not exist for this agent.
        """
        with session_scope(self._session_factory) as db:
            query = db.query(TriggerExecution).filter(TriggerExecution.id == execution_id)
            if agent_id is not None:
                query = query.filter(TriggerExecution.agent_id == agent_id)
            if query.first() is None:
                return None
            deleted_traces = (
                db.query(ExecutionTrace)
                .filter(ExecutionTrace.execution_id == execution_id)
                .delete(synchronize_session=False)
            )
            db.query(TriggerExecution).filter(TriggerExecution.id == execution_id).delete(
                synchronize_session=False
            )
            return deleted_traces

    def delete_executions(
        self,
        agent_id: str | None = None,
        *,
        status: str | None = None,
        schedule_id: str | None = None,
        older_than: datetime | None = None,
    ) -> Tuple[int, int]:
        """Bulk cascade delete. Returns (deleted_executions, deleted_traces)."""
        with session_scope(self._session_factory) as db:
            matching = self._filtered(
                db.query(TriggerExecution.id), agent_id, status, schedule_id, older_than
            )
            execution_ids = [row.id for row in matching.all()]
            if not execution_ids:
                return 0, 0
            deleted_traces = (
                db.query(ExecutionTrace)
                .filter(ExecutionTrace.execution_id.in_(execution_ids))
                .delete(synchronize_session=False)
            )
            deleted_executions = (
                db.query(TriggerExecution)
                .filter(TriggerExecution.id.in_(execution_ids))
                .delete(synchronize_session=False)
            )
            logger.info(
                "Deleted %s executions and %s traces (agent=%s status=%s schedule=%s older_than=%s)",
                deleted_executions,
                deleted_traces,
                agent_id,
                status,
                schedule_id,
                older_than,
            )
            return deleted_executions, deleted_traces

    @staticmethod
    def _filtered(query, agent_id, status, schedule_id, older_than):
        if agent_id is not None:
            query = query.filter(TriggerExecution.agent_id == agent_id)
        if status:
            query = query.filter(TriggerExecution.status == status)
        if schedule_id:
            query = query.filter(TriggerExecution.schedule_id == schedule_id)
        if older_than is not None:
            query = query.filter(TriggerExecution.triggered_at < as_utc(older_than))
        return query
