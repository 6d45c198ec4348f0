"""Durable storage contract consumed by the scheduler and fork manager."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from taskengine.models.session import ForkAgentTask, ParallelToolCall, Session, Step, Todo

T = TypeVar("T")


class RecordNotFoundError(LookupError):
    """No row with the given identifier."""

    def __init__(self, kind: str, record_id: Any) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id!r} not found")


class ImmutableRecordError(RuntimeError):
    """Attempted change to a row that is no longer mutable."""


class StorageAdapter(ABC):
    """CRUD for Session, Step, ParallelToolCall, ForkAgentTask and Todo.

    Each call is atomic on its own. ``transaction`` groups several calls so
    they commit or roll back together.

    Rules enforced by every implementation:
        - Step numbers are assigned as max + 1 per session and are unique.
        - A Step in a terminal status only accepts changes to ``discarded``.
        - A ForkAgentTask never returns to ``pending``.
        - Sessions are soft-deleted.
    """

    # === Sessions ===

    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str, include_deleted: bool = False) -> Session | None: ...

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> Session: ...

    @abstractmethod
    async def list_sessions(self, parent_session_id: str | None = None, include_deleted: bool = False) -> list[Session]: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Soft delete: the row and its steps stay."""

    # === Steps ===

    @abstractmethod
    async def next_step_number(self, session_id: str) -> int: ...

    @abstractmethod
    async def create_step(self, step: Step) -> Step:
        """Insert a step, numbering it when ``step_number`` is 0."""

    @abstractmethod
    async def get_step(self, step_id: int) -> Step | None: ...

    @abstractmethod
    async def update_step(self, step_id: int, **fields: Any) -> Step: ...

    @abstractmethod
    async def list_steps(self, session_id: str, include_discarded: bool = True) -> list[Step]:
        """Steps ordered by step number."""

    @abstractmethod
    async def mark_steps_discarded(self, session_id: str, step_numbers: list[int]) -> list[int]:
        """Flag steps as discarded; returns the numbers actually changed."""

    # === Parallel tool calls ===

    @abstractmethod
    async def create_parallel_call(self, call: ParallelToolCall) -> ParallelToolCall: ...

    @abstractmethod
    async def update_parallel_call(self, call_id: int, **fields: Any) -> ParallelToolCall: ...

    @abstractmethod
    async def list_parallel_calls(self, step_id: int) -> list[ParallelToolCall]: ...

    # === Fork tasks ===

    @abstractmethod
    async def create_fork_task(self, task: ForkAgentTask) -> ForkAgentTask: ...

    @abstractmethod
    async def get_fork_task(self, task_id: str) -> ForkAgentTask | None: ...

    @abstractmethod
    async def update_fork_task(self, task_id: str, **fields: Any) -> ForkAgentTask: ...

    @abstractmethod
    async def list_fork_tasks(self, parent_session_id: str) -> list[ForkAgentTask]: ...

    @abstractmethod
    async def find_fork_task_by_sub_session(self, sub_session_id: str) -> ForkAgentTask | None: ...

    # === Todos ===

    @abstractmethod
    async def create_todo(self, todo: Todo) -> Todo: ...

    @abstractmethod
    async def update_todo(self, todo_id: str, **fields: Any) -> Todo: ...

    @abstractmethod
    async def list_todos(self, session_id: str) -> list[Todo]:
        """Todos ordered by ``order_index``."""

    # === Transactions ===

    @abstractmethod
    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` so that every storage call it makes commits together."""
