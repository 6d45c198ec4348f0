"""SQLModelStorageAdapter: StorageAdapter over a SQLModel/SQLAlchemy engine.

Each call opens a short-lived SQLModel Session and commits it. Inside
``transaction`` the calls share one Session (carried in a context variable)
and commit once at the end.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session as DBSession
from sqlmodel import select

from taskengine.models.session import (
    STEP_TERMINAL_STATUSES,
    ForkAgentTask,
    ParallelToolCall,
    Session,
    Step,
    Todo,
)
from taskengine.storage.base import ImmutableRecordError, RecordNotFoundError, StorageAdapter
from taskengine.storage.database import create_db_and_tables, make_engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

_active_db: contextvars.ContextVar[DBSession | None] = contextvars.ContextVar("taskengine_active_db", default=None)


class SQLModelStorageAdapter(StorageAdapter):
    """Relational persistence for sessions, steps, fork tasks and todos.

    Usage:
        storage = SQLModelStorageAdapter.from_url("sqlite:///:memory:")
        session = await storage.create_session(Session(goal="compute 15*8"))
        step = await storage.create_step(Step(session_id=session.id, action="CallTool"))
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str | None = None) -> "SQLModelStorageAdapter":
        engine = make_engine(url)
        create_db_and_tables(engine)
        return cls(engine)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _db(self) -> Iterator[DBSession]:
        current = _active_db.get()
        if current is not None:
            yield current
            current.flush()
            return
        with DBSession(self.engine, expire_on_commit=False) as db:
            yield db
            db.commit()

    def _insert(self, row: T) -> T:
        with self._db() as db:
            db.add(row)
            db.flush()
            db.refresh(row)
        return row

    def _update(self, model: type, record_id: Any, fields: dict[str, Any], check=None):
        with self._db() as db:
            row = db.get(model, record_id)
            if row is None:
                raise RecordNotFoundError(model.__name__, record_id)
            if check is not None:
                check(row, fields)
            for key, value in fields.items():
                if not hasattr(row, key):
                    raise AttributeError(f"{model.__name__} has no field {key!r}")
                setattr(row, key, value)
            if hasattr(row, "updated_at"):
                row.updated_at = datetime.now(timezone.utc)
            db.add(row)
            db.flush()
            db.refresh(row)
        return row

    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        if _active_db.get() is not None:
            return await fn()
        with DBSession(self.engine, expire_on_commit=False) as db:
            token = _active_db.set(db)
            try:
                result = await fn()
                db.commit()
                return result
            except Exception:
                db.rollback()
                raise
            finally:
                _active_db.reset(token)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        if not session.initial_goal:
            session.initial_goal = session.goal
        row = self._insert(session)
        logger.debug("Session created: %s (depth %d)", row.id[:8], row.depth)
        return row

    async def get_session(self, session_id: str, include_deleted: bool = False) -> Session | None:
        with self._db() as db:
            row = db.get(Session, session_id)
        if row is None or (row.is_deleted and not include_deleted):
            return None
        return row

    async def update_session(self, session_id: str, **fields: Any) -> Session:
        return self._update(Session, session_id, fields)

    async def list_sessions(self, parent_session_id: str | None = None, include_deleted: bool = False) -> list[Session]:
        stmt = select(Session)
        if parent_session_id is not None:
            stmt = stmt.where(Session.parent_session_id == parent_session_id)
        if not include_deleted:
            stmt = stmt.where(Session.is_deleted == False)  # noqa: E712
        with self._db() as db:
            return list(db.exec(stmt.order_by(Session.created_at)).all())

    async def delete_session(self, session_id: str) -> None:
        self._update(Session, session_id, {"is_deleted": True, "is_running": False})
        logger.info("Session soft-deleted: %s", session_id[:8])

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _max_step_number(self, db: DBSession, session_id: str) -> int:
        current = db.exec(
            select(func.max(Step.step_number)).where(Step.session_id == session_id)
        ).one()
        return current or 0

    async def next_step_number(self, session_id: str) -> int:
        with self._db() as db:
            return self._max_step_number(db, session_id) + 1

    async def create_step(self, step: Step) -> Step:
        with self._db() as db:
            if not step.step_number:
                step.step_number = self._max_step_number(db, step.session_id) + 1
            db.add(step)
            db.flush()
            db.refresh(step)
        logger.debug("Step %d created for session %s", step.step_number, step.session_id[:8])
        return step

    async def get_step(self, step_id: int) -> Step | None:
        with self._db() as db:
            return db.get(Step, step_id)

    async def update_step(self, step_id: int, **fields: Any) -> Step:
        return self._update(Step, step_id, fields, check=_check_step_mutable)

    async def list_steps(self, session_id: str, include_discarded: bool = True) -> list[Step]:
        stmt = select(Step).where(Step.session_id == session_id)
        if not include_discarded:
            stmt = stmt.where(Step.discarded == False)  # noqa: E712
        with self._db() as db:
            return list(db.exec(stmt.order_by(Step.step_number)).all())

    async def mark_steps_discarded(self, session_id: str, step_numbers: list[int]) -> list[int]:
        if not step_numbers:
            return []
        changed = []
        with self._db() as db:
            rows = db.exec(
                select(Step).where(
                    Step.session_id == session_id,
                    Step.step_number.in_(step_numbers),  # type: ignore[union-attr]
                    Step.discarded == False,  # noqa: E712
                )
            ).all()
            for row in rows:
                row.discarded = True
                row.updated_at = datetime.now(timezone.utc)
                db.add(row)
                changed.append(row.step_number)
        return sorted(changed)

    # ------------------------------------------------------------------
    # Parallel tool calls
    # ------------------------------------------------------------------

    async def create_parallel_call(self, call: ParallelToolCall) -> ParallelToolCall:
        return self._insert(call)

    async def update_parallel_call(self, call_id: int, **fields: Any) -> ParallelToolCall:
        return self._update(ParallelToolCall, call_id, fields, check=_check_retry_cap)

    async def list_parallel_calls(self, step_id: int) -> list[ParallelToolCall]:
        with self._db() as db:
            return list(db.exec(
                select(ParallelToolCall).where(ParallelToolCall.step_id == step_id).order_by(ParallelToolCall.id)
            ).all())

    # ------------------------------------------------------------------
    # Fork tasks
    # ------------------------------------------------------------------

    async def create_fork_task(self, task: ForkAgentTask) -> ForkAgentTask:
        return self._insert(task)

    async def get_fork_task(self, task_id: str) -> ForkAgentTask | None:
        with self._db() as db:
            return db.get(ForkAgentTask, task_id)

    async def update_fork_task(self, task_id: str, **fields: Any) -> ForkAgentTask:
        return self._update(ForkAgentTask, task_id, fields, check=_check_fork_monotonic)

    async def list_fork_tasks(self, parent_session_id: str) -> list[ForkAgentTask]:
        with self._db() as db:
            return list(db.exec(
                select(ForkAgentTask)
                .where(ForkAgentTask.parent_session_id == parent_session_id)
                .order_by(ForkAgentTask.created_at)
            ).all())

    async def find_fork_task_by_sub_session(self, sub_session_id: str) -> ForkAgentTask | None:
        with self._db() as db:
            return db.exec(
                select(ForkAgentTask).where(ForkAgentTask.sub_session_id == sub_session_id)
            ).first()

    # ------------------------------------------------------------------
    # Todos
    # ------------------------------------------------------------------

    async def create_todo(self, todo: Todo) -> Todo:
        return self._insert(todo)

    async def update_todo(self, todo_id: str, **fields: Any) -> Todo:
        return self._update(Todo, todo_id, fields)

    async def list_todos(self, session_id: str) -> list[Todo]:
        with self._db() as db:
            return list(db.exec(
                select(Todo).where(Todo.session_id == session_id).order_by(Todo.order_index)
            ).all())


# === Row guards ===


def _check_step_mutable(row: Step, fields: dict[str, Any]) -> None:
    if row.status in STEP_TERMINAL_STATUSES and set(fields) - {"discarded"}:
        raise ImmutableRecordError(
            f"Step {row.id} is {row.status}; only 'discarded' may change (got {sorted(fields)})"
        )


def _check_retry_cap(row: ParallelToolCall, fields: dict[str, Any]) -> None:
    retry_count = fields.get("retry_count", row.retry_count)
    max_retries = fields.get("max_retries", row.max_retries)
    if retry_count > max_retries:
        raise ImmutableRecordError(f"ParallelToolCall {row.id}: retry_count {retry_count} exceeds cap {max_retries}")


def _check_fork_monotonic(row: ForkAgentTask, fields: dict[str, Any]) -> None:
    if fields.get("status") == "pending" and row.status != "pending":
        raise ImmutableRecordError(f"ForkAgentTask {row.id} cannot return to pending from {row.status}")
