"""Event envelope published by the engine.

Includes: EngineEvent (Pydantic).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

EventType = Literal[
    "session:created",
    "step:started",
    "step:completed",
    "step:failed",
    "steps:discarded",
    "tool:executing",
    "tool:completed",
    "subagent:started",
    "subagent:completed",
    "subagent:failed",
    "plan:ready",
    "user:question_asked",
    "task:completed",
    "task:failed",
    "task:stopped",
    "task:timeout",
]


class EngineEvent(BaseModel):
    """Schema for every engine notification.

    ``payload`` carries a JSON-safe snapshot of the entity the event is about
    (a Step, a ForkAgentTask, a tool result).
    """

    event_type: EventType
    session_id: str | None = None
    step_id: int | None = None
    task_id: str | None = None
    payload: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> dict:
        """Serialize for a transport (SSE, websocket, log line)."""
        return {
            "event": self.event_type,
            "data": self.model_dump(mode="json"),
        }
