"""
Flat append/update log of execution steps, plus a per-execution session
helper that tracks nesting for the execution collaborator.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from app.core.clock import elapsed_ms, now_utc
from app.core.exceptions import NotFoundError, ValidationError
from app.database import session_scope
from app.models import ExecutionTrace, StepType, TraceStatus

logger = logging.getLogger(__name__)

ERROR_LIMIT = 2000


def truncate_data(data: Any, max_length: int = 5000) -> Any:
    """Bound a payload before it is stored."""
    if data is None:
        return None
    if isinstance(data, str):
        if len(data) > max_length:
            return data[:max_length] + "...[truncated]"
        return data
    if isinstance(data, (dict, list, tuple)):
        serialized = json.dumps(data, default=str)
        if len(serialized) > max_length:
            return {"_truncated": True, "preview": serialized[:max_length]}
        return json.loads(serialized)
    return data


class TraceRecorder:
    def __init__(self, session_factory: sessionmaker, payload_limit: int = 5000):
        self._session_factory = session_factory
        self.payload_limit = payload_limit

    def start_step(
        self,
        execution_id: str,
        step_type: StepType | str,
        step_name: str,
        *,
        parent_id: str | None = None,
        input: Any = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ExecutionTrace:
        step_type = StepType(step_type)
        with session_scope(self._session_factory) as db:
            if parent_id is not None:
                parent = db.get(ExecutionTrace, parent_id)
                if parent is None or parent.execution_id != execution_id:
                    raise ValidationError(
                        f"Parent trace {parent_id} does not belong to execution {execution_id}"
                    )
            last = (
                db.query(func.max(ExecutionTrace.sequence))
                .filter(ExecutionTrace.execution_id == execution_id)
                .scalar()
            )
            row = ExecutionTrace(
                execution_id=execution_id,
                parent_id=parent_id,
                sequence=(last or 0) + 1,
                step_type=step_type.value,
                step_name=step_name,
                status=TraceStatus.RUNNING.value,
                started_at=now_utc(),
                input=truncate_data(input, self.payload_limit),
                meta=truncate_data(metadata, self.payload_limit),
            )
            db.add(row)
            db.flush()
            return row

    def complete_step(
        self,
        trace_id: str,
        *,
        status: TraceStatus | str = TraceStatus.COMPLETED,
        output: Any = None,
        token_usage: Dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ExecutionTrace:
        status = TraceStatus(status)
        if not status.is_terminal:
            raise ValidationError("A step can only be completed as completed or failed")
        with session_scope(self._session_factory) as db:
            row = db.get(ExecutionTrace, trace_id)
            if row is None:
                raise NotFoundError(f"Trace {trace_id} not found")
            if TraceStatus(row.status).is_terminal:
                logger.warning("Trace %s already %s; ignoring completion", trace_id, row.status)
                return row
            completed_at = now_utc()
            row.status = status.value
            row.completed_at = completed_at
            row.duration_ms = max(0, elapsed_ms(row.started_at, completed_at))
            if output is not None:
                row.output = truncate_data(output, self.payload_limit)
            if token_usage:
                row.token_usage = token_usage
            if error:
                row.error = truncate_data(str(error), ERROR_LIMIT)
            db.flush()
            return row

    def list_for_execution(self, execution_id: str) -> List[ExecutionTrace]:
        with session_scope(self._session_factory) as db:
            return (
                db.query(ExecutionTrace)
                .filter(ExecutionTrace.execution_id == execution_id)
                .order_by(ExecutionTrace.sequence.asc())
                .all()
            )

    def count_for_execution(self, execution_id: str) -> int:
        return self.counts_for_executions([execution_id]).get(execution_id, 0)

    def counts_for_executions(self, execution_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(execution_ids)
        if not ids:
            return {}
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(ExecutionTrace.execution_id, func.count(ExecutionTrace.id))
                .filter(ExecutionTrace.execution_id.in_(ids))
                .group_by(ExecutionTrace.execution_id)
                .all()
            )
            return {execution_id: count for execution_id, count in rows}

    def session(self, execution_id: str) -> "TraceSession":
        return TraceSession(self, execution_id)


class TraceSession:
    """
    Step bookkeeping for one execution. Open steps form a stack; a new step's
    parent is the innermost step still open.
    """

    def __init__(self, recorder: TraceRecorder, execution_id: str):
        self.recorder = recorder
        self.execution_id = execution_id
        self._stack: List[str] = []
        self._keys: Dict[str, str] = {}
        self.step_count = 0

    @property
    def current_parent_id(self) -> str | None:
        return self._stack[-1] if self._stack else None

    def begin(
        self,
        step_type: StepType | str,
        step_name: str,
        *,
        input: Any = None,
        metadata: Dict[str, Any] | None = None,
        key: str | None = None,
    ) -> str:
        trace = self.recorder.start_step(
            self.execution_id,
            step_type,
            step_name,
            parent_id=self.current_parent_id,
            input=input,
            metadata=metadata,
        )
        self.step_count += 1
        self._stack.append(trace.id)
        if key is not None:
            self._keys[key] = trace.id
        return trace.id

    def end(
        self,
        step: str,
        *,
        status: TraceStatus | str = TraceStatus.COMPLETED,
        output: Any = None,
        token_usage: Dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Close a step by trace id or by the key it was opened with."""
        trace_id = self._keys.pop(step, step)
        self.recorder.complete_step(
            trace_id, status=status, output=output, token_usage=token_usage, error=error
        )
        if trace_id in self._stack:
            self._stack.remove(trace_id)

    def record(
        self,
        step_type: StepType | str,
        step_name: str,
        *,
        input: Any = None,
        output: Any = None,
        metadata: Dict[str, Any] | None = None,
    ) -> str:
        """An instantaneous step, e.g. an agent switch or the final message."""
        trace_id = self.begin(step_type, step_name, input=input, metadata=metadata)
        self.end(trace_id, output=output)
        return trace_id

    @contextmanager
    def step(
        self,
        step_type: StepType | str,
        step_name: str,
        *,
        input: Any = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Iterator["StepHandle"]:
        handle = StepHandle(self.begin(step_type, step_name, input=input, metadata=metadata))
        try:
            yield handle
        except Exception as exc:
            self.end(handle.trace_id, status=TraceStatus.FAILED, error=str(exc) or type(exc).__name__)
            raise
        self.end(handle.trace_id, output=handle.output, token_usage=handle.token_usage)

    def mark_remaining_failed(self, error: str) -> int:
        """Fail every step still open; used when the whole execution fails."""
        remaining = list(reversed(self._stack))
        for trace_id in remaining:
            try:
                self.recorder.complete_step(trace_id, status=TraceStatus.FAILED, error=error)
            except NotFoundError:
                logger.warning("Open trace %s vanished before it could be failed", trace_id)
        self._stack.clear()
        self._keys.clear()
        return len(remaining)


class StepHandle:
    """Mutable result holder for TraceSession.step()."""

    def __init__(self, trace_id: str):
        self.trace_id = trace_id
        self.output: Any = None
        self.token_usage: Dict[str, Any] | None = None
