"""Tool contract: metadata, schema and an async handler.

The engine calls ``handler`` and applies ``metadata.timeout``. It does not
validate ``schema``; that belongs to a sanitization layer upstream.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

RiskLevel = Literal["low", "medium", "high", "critical"]


class ToolError(Exception):
    """A tool raised, timed out, reported failure, or is not registered."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")


class ToolMetadata(BaseModel):
    name: str
    description: str = ""
    risk_level: RiskLevel = "low"
    timeout: float | None = None  # seconds; None = settings default
    requires_confirmation: bool = False
    category: str = "general"
    version: str = "1.0.0"
    estimated_time: float | None = None


class ToolResult(BaseModel):
    """What a handler returns."""

    success: bool
    result: Any = None
    error: str | None = None
    output: str | None = None
    execution_ms: int | None = None


ToolHandler = Callable[[dict], Awaitable[Any]]


class Tool(BaseModel):
    """A callable capability exposed to the model.

    ``handler`` may return a ToolResult, a ``{"success": ..., ...}`` dict, or
    any other value (treated as a successful result).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    metadata: ToolMetadata
    schema_: dict = Field(default_factory=dict, alias="schema")
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.metadata.name

    def describe(self) -> dict:
        """Prompt-facing description."""
        return {
            "name": self.metadata.name,
            "description": self.metadata.description,
            "risk_level": self.metadata.risk_level,
            "parameters": self.schema_,
        }
