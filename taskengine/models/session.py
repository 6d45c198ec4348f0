"""Session models.

Includes: Session (SQL), Step (SQL), ParallelToolCall (SQL),
          ForkAgentTask (SQL), Todo (SQL).

A Session owns its Steps, Todos and ForkAgentTasks. A ForkAgentTask only
references the child Session it spawned; the child lives on independently.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

# === Status vocabularies ===

SessionStatus = Literal["active", "paused", "completed", "failed", "stopped", "timeout"]

StepStatus = Literal["pending", "running", "completed", "failed"]

ParallelToolCallStatus = Literal["pending", "running", "completed", "failed", "timeout"]

ForkAgentTaskStatus = Literal["pending", "running", "completed", "failed", "timeout"]

TodoStatus = Literal["pending", "in_progress", "completed", "cancelled", "failed"]

FORK_TERMINAL_STATUSES = frozenset({"completed", "failed", "timeout"})
STEP_TERMINAL_STATUSES = frozenset({"completed", "failed"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === SQL Tables ===


class Session(SQLModel, table=True):
    """One execution context for a goal."""

    __tablename__ = "session"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    goal: str
    initial_goal: str = ""
    status: str = "active"  # SessionStatus
    autonomous: bool = True
    user_id: str | None = None

    # Forked sessions
    parent_session_id: str | None = SQLField(default=None, index=True)
    depth: int = 0
    inherited_context: str | None = None
    result_summary: str | None = None

    # History compression
    compressed_summary: str | None = None
    last_compressed_step_id: int = 0
    is_compressing: bool = False
    compressing_started_at: datetime | None = None

    # Execution control
    is_running: bool = False
    is_deleted: bool = False
    resume_state: dict | None = SQLField(default=None, sa_column=Column(JSON))

    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)

    @property
    def is_sub_agent(self) -> bool:
        return self.parent_session_id is not None


class Step(SQLModel, table=True):
    """One loop iteration within a session."""

    __tablename__ = "step"
    __table_args__ = (UniqueConstraint("session_id", "step_number", name="uq_step_session_number"),)

    id: int | None = SQLField(default=None, primary_key=True)
    session_id: str = SQLField(index=True)
    step_number: int = 0  # 0 = next free number, assigned on insert

    # Model interaction
    llm_prompt: str | None = None
    llm_response: str | None = None

    # Decision (action is None when the response could not be parsed)
    action: str | None = None
    reasoning: str | None = None
    selected_tool: str | None = None
    parameters: dict | None = SQLField(default=None, sa_column=Column(JSON))

    # Outcome
    step_result: Any = SQLField(default=None, sa_column=Column(JSON))
    error_message: str | None = None
    status: str = "pending"  # StepStatus
    discarded: bool = False

    # Parallel execution
    is_parallel: bool = False
    wait_strategy: str | None = None
    parallel_status: str | None = None  # "waiting" | "partial" | "completed"

    tokens_used: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_duration_ms: int | None = None
    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in STEP_TERMINAL_STATUSES


class ParallelToolCall(SQLModel, table=True):
    """One tool invocation inside a concurrently dispatched batch."""

    __tablename__ = "parallel_tool_call"

    id: int | None = SQLField(default=None, primary_key=True)
    step_id: int = SQLField(index=True)
    tool_id: str
    tool_name: str
    parameters: dict = SQLField(default_factory=dict, sa_column=Column(JSON))

    status: str = "pending"  # ParallelToolCallStatus
    result: Any = SQLField(default=None, sa_column=Column(JSON))
    error_message: str | None = None

    progress_percentage: int = 0
    status_message: str | None = None

    retry_count: int = 0
    max_retries: int = 3

    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_duration_ms: int | None = None
    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)


class ForkAgentTask(SQLModel, table=True):
    """One sub-agent spawn request."""

    __tablename__ = "fork_agent_task"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    parent_session_id: str = SQLField(index=True)
    parent_step_id: int | None = None

    sub_session_id: str | None = None  # Set once the child starts
    goal: str
    context_summary: str | None = None
    depth: int

    max_steps: int = 20
    timeout_seconds: float = 300.0

    status: str = "pending"  # ForkAgentTaskStatus
    result_summary: str | None = None
    error_message: str | None = None

    steps_executed: int = 0
    tokens_used: int = 0
    tools_called: int = 0

    retry_count: int = 0
    max_retries: int = 3

    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_duration_ms: int | None = None
    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in FORK_TERMINAL_STATUSES


class Todo(SQLModel, table=True):
    """A decomposition unit created from a Plan action."""

    __tablename__ = "todo"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    session_id: str = SQLField(index=True)
    title: str
    description: str | None = None
    order_index: int = 0

    status: str = "pending"  # TodoStatus
    dependencies: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    priority: int = 0

    estimated_steps: int | None = None
    actual_steps: int = 0
    estimated_tokens: int | None = None
    actual_tokens: int = 0

    result: dict | None = SQLField(default=None, sa_column=Column(JSON))
    error: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)
