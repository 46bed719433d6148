"""Durable CRUD for agent schedule definitions and their run counters."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import sessionmaker

from app.core.clock import now_utc
from app.database import session_scope
from app.models import AgentSchedule

MUTABLE_FIELDS = frozenset(
    {"schedule", "prompt", "enabled", "max_runs", "next_run", "last_error"}
)


class ScheduleStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(
        self,
        *,
        agent_id: str,
        trigger_id: str,
        schedule: Dict[str, Any],
        prompt: str,
        enabled: bool,
        author: str,
        max_runs: int | None = None,
    ) -> AgentSchedule:
        with session_scope(self._session_factory) as db:
            row = AgentSchedule(
                agent_id=agent_id,
                trigger_id=trigger_id,
                schedule=schedule,
                prompt=prompt,
                enabled=enabled,
                author=author,
                max_runs=max_runs,
                run_count=0,
                success_count=0,
                fail_count=0,
            )
            db.add(row)
            db.flush()
            db.refresh(row)
            return row

    def get(self, schedule_id: str) -> AgentSchedule | None:
        with session_scope(self._session_factory) as db:
            return db.get(AgentSchedule, schedule_id)

    def get_by_trigger_id(self, trigger_id: str) -> AgentSchedule | None:
        with session_scope(self._session_factory) as db:
            return db.query(AgentSchedule).filter(AgentSchedule.trigger_id == trigger_id).first()

    def list_by_agent(self, agent_id: str) -> List[AgentSchedule]:
        with session_scope(self._session_factory) as db:
            return (
                db.query(AgentSchedule)
                .filter(AgentSchedule.agent_id == agent_id)
                .order_by(AgentSchedule.created_at.desc())
                .all()
            )

    def list_by_author(self, author: str) -> List[AgentSchedule]:
        with session_scope(self._session_factory) as db:
            return (
                db.query(AgentSchedule)
                .filter(AgentSchedule.author == author)
                .order_by(AgentSchedule.created_at.desc())
                .all()
            )

    def list_enabled(self, agent_id: str | None = None) -> List[AgentSchedule]:
        with session_scope(self._session_factory) as db:
            query = db.query(AgentSchedule).filter(AgentSchedule.enabled.is_(True))
            if agent_id is not None:
                query = query.filter(AgentSchedule.agent_id == agent_id)
            return query.all()

    def update(self, schedule_id: str, fields: Dict[str, Any]) -> AgentSchedule | None:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update schedule fields: {sorted(unknown)}")
        with session_scope(self._session_factory) as db:
            row = db.get(AgentSchedule, schedule_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = now_utc()
            db.flush()
            db.refresh(row)
            return row

    def set_next_run(self, schedule_id: str, next_run: datetime | None) -> None:
        with session_scope(self._session_factory) as db:
            db.query(AgentSchedule).filter(AgentSchedule.id == schedule_id).update(
                {AgentSchedule.next_run: next_run}, synchronize_session=False
            )

    def record_run(
        self,
        schedule_id: str,
        *,
        success: bool,
        next_run: datetime | None,
        error: str | None = None,
    ) -> AgentSchedule | None:
        """Atomically bump run counters and stamp lastRun/nextRun."""
        counter = AgentSchedule.success_count if success else AgentSchedule.fail_count
        with session_scope(self._session_factory) as db:
            updated = (
                db.query(AgentSchedule)
                .filter(AgentSchedule.id == schedule_id)
                .update(
                    {
                        AgentSchedule.run_count: AgentSchedule.run_count + 1,
                        counter: counter + 1,
                        AgentSchedule.last_run: now_utc(),
                        AgentSchedule.next_run: next_run,
                        AgentSchedule.last_error: None if success else error,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                return None
            return db.get(AgentSchedule, schedule_id)

    def delete(self, schedule_id: str) -> bool:
        with session_scope(self._session_factory) as db:
            deleted = (
                db.query(AgentSchedule)
                .filter(AgentSchedule.id == schedule_id)
                .delete(synchronize_session=False)
            )
            return bool(deleted)

    def delete_by_agent(self, agent_id: str) -> int:
        with session_scope(self._session_factory) as db:
            return (
                db.query(AgentSchedule)
                .filter(AgentSchedule.agent_id == agent_id)
                .delete(synchronize_session=False)
            )
