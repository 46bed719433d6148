"""
Live in-memory timers for enabled schedules.

Each ScheduleTrigger owns one asyncio task that sleeps until the next cron
occurrence and dispatches its fire callback in a separate task, so a slow
run never delays the timer itself. The registry does not retry or dedupe
fires; serialization is the caller's responsibility.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Set

from app.core.clock import now_utc
from app.core.exceptions import RegistrationError, ValidationError
from app.services.cron import next_fire_time, resolve_timezone, validate_cron_expression

logger = logging.getLogger(__name__)

FireCallback = Callable[["ScheduleTrigger"], Awaitable[Any]]


class ScheduleTrigger:
    """A single cron-driven timer."""

    def __init__(
        self,
        trigger_id: str,
        cron_expression: str,
        on_fire: FireCallback,
        timezone: str | None = None,
    ):
        self.trigger_id = trigger_id
        self.cron_expression = cron_expression
        self.timezone = timezone or "UTC"
        self._on_fire = on_fire
        self._task: asyncio.Task | None = None
        self._inflight: Set[asyncio.Task] = set()
        self._next_run: datetime | None = None
        self.fire_count = 0

    def start(self) -> None:
        if self.is_running():
            return
        self._next_run = next_fire_time(self.cron_expression, self.timezone)
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name=f"trigger:{self.trigger_id}"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._next_run = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_next_run(self) -> datetime | None:
        return self._next_run if self.is_running() else None

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def _run_loop(self) -> None:
        while True:
            if self._next_run is None:
                self._next_run = next_fire_time(self.cron_expression, self.timezone)
            delay = (self._next_run - now_utc()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            fired_for = self._next_run
            self._next_run = next_fire_time(self.cron_expression, self.timezone, after=fired_for)
            self._dispatch()

    def _dispatch(self) -> None:
        self.fire_count += 1
        task = asyncio.get_running_loop().create_task(
            self._invoke(), name=f"fire:{self.trigger_id}:{self.fire_count}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _invoke(self) -> None:
        try:
            await self._on_fire(self)
        except Exception as exc:
            logger.exception("Fire handler for trigger %s raised: %s", self.trigger_id, exc)


class TriggerRegistry:
    """Map of trigger id to live ScheduleTrigger."""

    def __init__(self) -> None:
        self._triggers: Dict[str, ScheduleTrigger] = {}

    def register(
        self,
        trigger_id: str,
        cron_expression: str,
        on_fire: FireCallback,
        timezone: str | None = None,
    ) -> ScheduleTrigger:
        """Create and start a timer. Must be called from a running event loop."""
        if trigger_id in self._triggers:
            raise RegistrationError(f"Trigger with ID {trigger_id} already registered")
        try:
            validate_cron_expression(cron_expression)
            resolve_timezone(timezone)
        except ValidationError as exc:
            raise RegistrationError(exc.message) from exc

        trigger = ScheduleTrigger(trigger_id, cron_expression, on_fire, timezone=timezone)
        try:
            trigger.start()
        except RuntimeError as exc:
            raise RegistrationError(f"Cannot start trigger {trigger_id}: {exc}") from exc
        self._triggers[trigger_id] = trigger
        logger.info(
            "Registered trigger %s (%s, tz=%s) next_run=%s",
            trigger_id,
            cron_expression,
            trigger.timezone,
            trigger.get_next_run(),
        )
        return trigger

    async def unregister(self, trigger_id: str) -> bool:
        trigger = self._triggers.pop(trigger_id, None)
        if trigger is None:
            return False
        await trigger.stop()
        logger.info("Unregistered trigger %s", trigger_id)
        return True

    def get(self, trigger_id: str) -> ScheduleTrigger | None:
        return self._triggers.get(trigger_id)

    def has(self, trigger_id: str) -> bool:
        return trigger_id in self._triggers

    def get_all(self) -> List[ScheduleTrigger]:
        return list(self._triggers.values())

    def size(self) -> int:
        return len(self._triggers)

    def __len__(self) -> int:
        return len(self._triggers)

    async def clear(self) -> None:
        triggers = list(self._triggers.values())
        self._triggers.clear()
        for trigger in triggers:
            await trigger.stop()
        logger.info("Trigger registry cleared (%s timers stopped)", len(triggers))
