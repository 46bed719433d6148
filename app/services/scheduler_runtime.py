"""
Scheduling orchestrator.

Keeps durable schedule records and live timers consistent: a schedule with
enabled=True has exactly one registered trigger, a disabled one has none.
The runtime is an explicit value owned by the host process; tests can run
several side by side.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from app.config import Settings, settings as default_settings
from app.core.exceptions import (
    AppError,
    ExecutionError,
    NotFoundError,
    PersistenceError,
    RegistrationError,
)
from app.models import AgentSchedule, TriggerExecution
from app.services.cron import normalize_schedule
from app.services.execution_recorder import ExecutionRecorder
from app.services.schedule_store import ScheduleStore
from app.services.trace_recorder import TraceRecorder, TraceSession
from app.services.trigger_registry import ScheduleTrigger, TriggerRegistry

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """What an execution callback gets when a schedule fires."""

    agent_id: str
    prompt: str
    schedule_id: str
    execution_id: str
    user_id: str
    attempt: int
    trace: TraceSession


@dataclass
class ExecutionResult:
    success: bool
    output: Optional[str] = None
    conversation_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ExecutionResult":
        if isinstance(value, ExecutionResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                success=bool(value.get("success", False)),
                output=value.get("output"),
                conversation_id=value.get("conversation_id", value.get("conversationId")),
                error=value.get("error"),
            )
        raise ExecutionError(f"Execution callback returned unsupported result: {type(value).__name__}")


ExecuteCallback = Callable[[ExecutionContext], Awaitable[Any]]


class SchedulerRuntime:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        registry_factory: Callable[[], TriggerRegistry] = TriggerRegistry,
        execute_callback: ExecuteCallback | None = None,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.schedules = ScheduleStore(session_factory)
        self.executions = ExecutionRecorder(session_factory, output_limit=self.config.execution_output_limit)
        self.traces = TraceRecorder(session_factory, payload_limit=self.config.trace_payload_limit)
        self._registry_factory = registry_factory
        self.registry = registry_factory()
        self.ready = False
        self._default_callback = execute_callback
        self._callbacks: Dict[str, ExecuteCallback] = {}
        self._fire_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._mutation_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._background: set[asyncio.Task] = set()

    # -- schedule lifecycle -------------------------------------------------

    async def create_schedule(
        self,
        agent_id: str,
        schedule: Dict[str, Any],
        prompt: str,
        *,
        author: str,
        enabled: bool = True,
        max_runs: int | None = None,
        execute_callback: ExecuteCallback | None = None,
    ) -> AgentSchedule:
        cron_expression = normalize_schedule(schedule)
        trigger_id = f"schedule_{agent_id}_{uuid.uuid4().hex}"

        row = self.schedules.create(
            agent_id=agent_id,
            trigger_id=trigger_id,
            schedule=dict(schedule),
            prompt=prompt,
            enabled=enabled,
            author=author,
            max_runs=max_runs,
        )
        logger.info("Schedule %s created (trigger=%s, agent=%s, enabled=%s)", row.id, trigger_id, agent_id, enabled)

        if execute_callback is not None:
            self._callbacks[trigger_id] = execute_callback
        if not enabled:
            return row

        async with self._mutation_locks[trigger_id]:
            try:
                trigger = self._register(row, cron_expression)
            except RegistrationError:
                self._callbacks.pop(trigger_id, None)
                self._rollback_create(row)
                raise
            try:
                row = self.schedules.update(row.id, {"next_run": trigger.get_next_run()}) or row
            except PersistenceError:
                await self.registry.unregister(trigger_id)
                self._callbacks.pop(trigger_id, None)
                self._rollback_create(row)
                raise
        return row

    def _rollback_create(self, row: AgentSchedule) -> None:
        try:
            self.schedules.delete(row.id)
        except PersistenceError:
            logger.exception("Could not roll back schedule %s after failed registration", row.id)

    async def update_schedule(
        self,
        schedule_id: str,
        updates: Dict[str, Any],
        execute_callback: ExecuteCallback | None = None,
    ) -> AgentSchedule | None:
        current = self.schedules.get(schedule_id)
        if current is None:
            return None

        fields = {k: v for k, v in updates.items() if k in ("schedule", "prompt", "enabled", "max_runs")}
        new_spec = fields.get("schedule")
        cron_expression = normalize_schedule(new_spec if new_spec is not None else current.schedule)
        if new_spec is not None:
            fields["schedule"] = dict(new_spec)

        was_enabled = bool(current.enabled)
        will_enable = bool(fields.get("enabled", was_enabled))
        schedule_changed = new_spec is not None and dict(new_spec) != dict(current.schedule)
        if execute_callback is not None:
            self._callbacks[current.trigger_id] = execute_callback

        trigger_id = current.trigger_id
        async with self._mutation_locks[trigger_id]:
            stop_old = was_enabled and (not will_enable or schedule_changed)
            start_new = will_enable and (not was_enabled or schedule_changed)
            if stop_old:
                await self.registry.unregister(trigger_id)
            if not will_enable:
                fields["next_run"] = None

            try:
                row = self.schedules.update(schedule_id, fields)
            except PersistenceError:
                if stop_old:
                    self._restore_trigger(current)
                raise
            if row is None:
                return None

            if start_new:
                try:
                    trigger = self._register(row, cron_expression)
                except RegistrationError:
                    self._restore_record(current)
                    if was_enabled:
                        self._restore_trigger(current)
                    raise
                row = self.schedules.update(schedule_id, {"next_run": trigger.get_next_run()}) or row

        logger.info(
            "Schedule %s updated (enabled %s -> %s, schedule_changed=%s)",
            schedule_id,
            was_enabled,
            will_enable,
            schedule_changed,
        )
        return row

    def _restore_record(self, previous: AgentSchedule) -> None:
        try:
            self.schedules.update(
                previous.id,
                {
                    "schedule": previous.schedule,
                    "prompt": previous.prompt,
                    "enabled": previous.enabled,
                    "max_runs": previous.max_runs,
                    "next_run": previous.next_run,
                },
            )
        except PersistenceError:
            logger.exception("Could not restore schedule %s after failed update", previous.id)

    def _restore_trigger(self, previous: AgentSchedule) -> None:
        try:
            self._register(previous, normalize_schedule(previous.schedule))
        except AppError:
            logger.exception("Could not restore trigger %s; disabling schedule", previous.trigger_id)
            self.schedules.update(previous.id, {"enabled": False, "next_run": None})

    async def enable_schedule(self, schedule_id: str, execute_callback: ExecuteCallback | None = None) -> AgentSchedule | None:
        return await self.update_schedule(schedule_id, {"enabled": True}, execute_callback)

    async def disable_schedule(self, schedule_id: str) -> AgentSchedule | None:
        return await self.update_schedule(schedule_id, {"enabled": False})

    async def delete_schedule(self, schedule_id: str) -> bool:
        row = self.schedules.get(schedule_id)
        if row is None:
            return False
        async with self._mutation_locks[row.trigger_id]:
            await self.registry.unregister(row.trigger_id)
            self.schedules.delete(schedule_id)
        self._forget(row.trigger_id)
        logger.info("Schedule %s deleted", schedule_id)
        return True

    async def delete_schedules_by_agent(self, agent_id: str) -> int:
        enabled = self.schedules.list_enabled(agent_id=agent_id)
        for row in enabled:
            await self.registry.unregister(row.trigger_id)
            self._forget(row.trigger_id)
        deleted = self.schedules.delete_by_agent(agent_id)
        logger.info("Deleted %s schedules for agent %s", deleted, agent_id)
        return deleted

    def _forget(self, trigger_id: str) -> None:
        self._callbacks.pop(trigger_id, None)
        self._mutation_locks.pop(trigger_id, None)
        fire_lock = self._fire_locks.get(trigger_id)
        if fire_lock is not None and not fire_lock.locked():
            del self._fire_locks[trigger_id]

    def _register(self, row: AgentSchedule, cron_expression: str) -> ScheduleTrigger:
        timezone = (row.schedule or {}).get("timezone") or self.config.default_schedule_timezone
        return self.registry.register(row.trigger_id, cron_expression, self._on_fire, timezone=timezone)

    # -- startup / shutdown -------------------------------------------------

    async def initialize_schedules(self, execute_callback: ExecuteCallback | None = None) -> int:
        """Register every enabled schedule into a fresh registry."""
        if execute_callback is not None:
            self._default_callback = execute_callback
        await self.registry.clear()
        self.registry = self._registry_factory()

        schedules = self.schedules.list_enabled()
        registered = 0
        for row in schedules:
            try:
                trigger = self._register(row, normalize_schedule(row.schedule))
                self.schedules.set_next_run(row.id, trigger.get_next_run())
                registered += 1
            except Exception as exc:
                logger.exception(
                    "Failed to initialize schedule %s (trigger=%s): %s",
                    row.id,
                    row.trigger_id,
                    exc,
                )
                await self.registry.unregister(row.trigger_id)

        self.ready = True
        logger.info("Schedules initialized: %s/%s registered", registered, len(schedules))
        return registered

    async def shutdown(self) -> None:
        """Stop every timer; no fire starts after this returns."""
        self.ready = False
        await self.registry.clear()
        logger.info("Scheduler runtime shut down")

    def get_stats(self) -> Dict[str, Any]:
        triggers = self.registry.get_all()
        return {
            "totalTriggers": self.registry.size(),
            "activeTriggers": sum(1 for t in triggers if t.is_running()),
            "inFlight": sum(t.inflight for t in triggers) + len(self._background),
            "ready": self.ready,
        }

    # -- executions ---------------------------------------------------------

    def get_execution_history(
        self, schedule_id: str, limit: int | None = None, skip: int = 0
    ) -> List[TriggerExecution]:
        if limit is None:
            limit = self.config.execution_history_limit
        return self.executions.list_for_schedule(schedule_id, limit=limit, skip=skip)

    async def retry_execution(self, execution_id: str, agent_id: str | None = None) -> TriggerExecution:
        retry, schedule = self.executions.create_retry(execution_id, agent_id=agent_id)
        task = asyncio.get_running_loop().create_task(self._run_serialized(schedule, retry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return retry

    async def _on_fire(self, trigger: ScheduleTrigger) -> None:
        try:
            schedule = self.schedules.get_by_trigger_id(trigger.trigger_id)
            if schedule is None or not schedule.enabled:
                logger.warning("Trigger %s fired without an enabled schedule; skipping", trigger.trigger_id)
                return
            execution = self.executions.open(schedule)
            await self._run_serialized(schedule, execution)
        except Exception as exc:
            logger.exception("Fire handling failed for trigger %s: %s", trigger.trigger_id, exc)

    async def _run_serialized(self, schedule: AgentSchedule, execution: TriggerExecution) -> None:
        async with self._fire_locks[schedule.trigger_id]:
            try:
                await self._run_execution(schedule, execution)
            except Exception as exc:
                logger.exception("Execution %s could not be recorded: %s", execution.id, exc)

    async def _run_execution(self, schedule: AgentSchedule, execution: TriggerExecution) -> None:
        self.executions.mark_running(execution.id)
        session = self.traces.session(execution.id)
        callback = self._callbacks.get(schedule.trigger_id, self._default_callback)
        context = ExecutionContext(
            agent_id=schedule.agent_id,
            prompt=schedule.prompt,
            schedule_id=schedule.id,
            execution_id=execution.id,
            user_id=schedule.author,
            attempt=execution.attempt,
            trace=session,
        )

        result: ExecutionResult | None = None
        error: str | None = None
        try:
            if callback is None:
                raise ExecutionError("No execution handler configured")
            result = ExecutionResult.coerce(await callback(context))
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("Execution %s for schedule %s raised: %s", execution.id, schedule.id, error)

        success = result is not None and result.success
        if success:
            self.executions.complete(execution.id, output=result.output, conversation_id=result.conversation_id)
        else:
            if error is None:
                error = result.error or result.output or "Execution reported failure"
            session.mark_remaining_failed(error)
            self.executions.fail(execution.id, error, output=result.output if result else None)

        trigger = self.registry.get(schedule.trigger_id)
        updated = self.schedules.record_run(
            schedule.id,
            success=success,
            next_run=trigger.get_next_run() if trigger else None,
            error=error,
        )
        logger.info(
            "Execution %s %s (schedule=%s, steps=%s)",
            execution.id,
            "completed" if success else "failed",
            schedule.id,
            session.step_count,
        )

        if updated is not None and updated.max_runs and updated.run_count >= updated.max_runs and updated.enabled:
            logger.info("Schedule %s reached max runs (%s); disabling", schedule.id, updated.max_runs)
            await self.disable_schedule(schedule.id)

    def get_schedule_for_agent(self, agent_id: str, schedule_id: str) -> AgentSchedule:
        row = self.schedules.get(schedule_id)
        if row is None or row.agent_id != agent_id:
            raise NotFoundError("Schedule not found")
        return row
