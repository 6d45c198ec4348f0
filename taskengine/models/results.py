"""Result records returned by the engine (not persisted).

Includes: TaskResult, SubAgentResult, StepExecutionResult, StopState, LimitDecision.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

TaskStatus = Literal["completed", "failed", "stopped", "timeout", "waiting_for_user"]


class StepExecutionResult(BaseModel):
    """Outcome of executing one action inside a Step."""

    success: bool
    result: Any = None
    error: str | None = None
    should_continue: bool = True
    fork_task_id: str | None = None
    waiting_for_user: bool = False
    tools_called: int = 0


class TaskResult(BaseModel):
    """Terminal outcome of one StepScheduler run."""

    session_id: str
    status: TaskStatus
    result: Any = None
    summary: str | None = None
    error: str | None = None
    question: str | None = None  # Set when status == "waiting_for_user"
    options: list[str] | None = None
    steps_executed: int = 0
    tokens_used: int = 0
    tools_called: int = 0
    duration_ms: int = 0
    can_resume: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != "waiting_for_user"


class SubAgentResult(BaseModel):
    """Normalized result of a finished fork task."""

    task_id: str
    sub_session_id: str | None = None
    status: Literal["completed", "failed", "timeout"]
    summary: str | None = None
    steps_executed: int = 0
    tokens_used: int = 0
    tools_called: int = 0
    duration_ms: int | None = None


class StopState(BaseModel):
    """Snapshot exposed by StopController for resuming a stopped session."""

    session_id: str
    completed_steps: int = 0
    last_step_id: int | None = None
    partial_result: Any = None
    graceful: bool = True
    can_resume: bool = True


class LimitDecision(BaseModel):
    """Verdict of an access-governor check, with response metadata."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # unix seconds
    retry_after: int | None = None  # seconds, only when rejected
    current: int = 0

    def headers(self) -> dict[str, str]:
        """Ordered X-RateLimit-* response headers."""
        out = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(self.remaining, 0)),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if self.retry_after is not None:
            out["Retry-After"] = str(self.retry_after)
        return out
