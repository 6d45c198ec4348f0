"""Action models: the structured decision a model returns each iteration.

A closed tagged union over the ``action`` field:
    CallTool, CallToolsParallel, ForkAutoAgent, AskUser, Plan, Finish.

Wire payloads are camelCase (after normalization by the response parser);
attributes are snake_case.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ActionKind = Literal["CallTool", "CallToolsParallel", "ForkAutoAgent", "AskUser", "Plan", "Finish"]

ACTION_KINDS: tuple[str, ...] = ("CallTool", "CallToolsParallel", "ForkAutoAgent", "AskUser", "Plan", "Finish")

WaitStrategy = Literal["all", "any", "majority"]


class _ActionBase(BaseModel):
    """Fields shared by every action."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    reasoning: str = ""
    discardable_steps: list[int] = Field(default_factory=list)
    message_to_user: str | None = None


class ToolCallAction(_ActionBase):
    action: Literal["CallTool"] = "CallTool"
    selected_tool: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class ParallelToolInvocation(BaseModel):
    """One entry of a CallToolsParallel batch."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tool_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ParallelToolCallsAction(_ActionBase):
    action: Literal["CallToolsParallel"] = "CallToolsParallel"
    parallel_tools: list[ParallelToolInvocation] = Field(min_length=1)
    wait_strategy: WaitStrategy

    @field_validator("parallel_tools", mode="before")
    @classmethod
    def _default_tool_ids(cls, v: Any) -> Any:
        # Models often omit toolId; number the calls so rows stay distinguishable
        if isinstance(v, list):
            filled = []
            for i, item in enumerate(v):
                if isinstance(item, dict) and not item.get("toolId") and not item.get("tool_id"):
                    item = {**item, "toolId": f"call-{i + 1}"}
                filled.append(item)
            return filled
        return v


class ForkRequestAction(_ActionBase):
    action: Literal["ForkAutoAgent"] = "ForkAutoAgent"
    sub_goal: str = Field(min_length=1)
    context_summary: str = ""
    max_depth: int | None = Field(default=None, gt=0)
    max_steps: int | None = Field(default=None, gt=0)
    timeout: float | None = Field(default=None, gt=0)  # seconds
    await_result: bool = False


class AskUserAction(_ActionBase):
    action: Literal["AskUser"] = "AskUser"
    question: str = Field(min_length=1)
    options: list[str] | None = None


class PlanStep(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: ActionKind
    description: str
    estimated_time: float | None = None


class PlanBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    steps: list[PlanStep]
    total_estimated_time: float | None = None
    estimated_tokens: int | None = None


class PlanAction(_ActionBase):
    action: Literal["Plan"] = "Plan"
    plan: PlanBody


class FinishAction(_ActionBase):
    action: Literal["Finish"] = "Finish"
    final_result: Any
    summary: str | None = None


Action = Annotated[
    Union[
        ToolCallAction,
        ParallelToolCallsAction,
        ForkRequestAction,
        AskUserAction,
        PlanAction,
        FinishAction,
    ],
    Field(discriminator="action"),
]

ACTION_MODELS: dict[str, type[_ActionBase]] = {
    "CallTool": ToolCallAction,
    "CallToolsParallel": ParallelToolCallsAction,
    "ForkAutoAgent": ForkRequestAction,
    "AskUser": AskUserAction,
    "Plan": PlanAction,
    "Finish": FinishAction,
}
