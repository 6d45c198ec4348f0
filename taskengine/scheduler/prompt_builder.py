"""Prompt builder: renders goal, tools, knowledge and step history for the model.

The model answers with one JSON action between <final_output> tags using
snake_case field names; the response parser normalizes them afterwards.
"""

from __future__ import annotations

import json
from typing import Any

from taskengine.config import settings
from taskengine.models.session import Session, Step
from taskengine.scheduler.knowledge import KnowledgeSnippet

ROLE_PROMPT = (
    "You are an autonomous agent working toward a goal. Each turn you choose exactly one "
    "action, the engine executes it, and you see the result on the next turn. "
    "Finish as soon as the goal is achieved."
)

_ACTION_DOCS: dict[str, str] = {
    "CallTool": 'Call one tool. Fields: selected_tool, parameters.',
    "CallToolsParallel": (
        "Call several independent tools at once. Fields: parallel_tools "
        "[{tool_id, tool_name, parameters}], wait_strategy (all | any | majority)."
    ),
    "ForkAutoAgent": (
        "Delegate a self-contained sub-goal to a child agent. Fields: sub_goal, "
        "context_summary, optional max_steps, timeout, await_result."
    ),
    "AskUser": "Ask the user a question and wait for the answer. Fields: question, options.",
    "Plan": "Lay out the remaining work. Fields: plan {steps [{action, description}]}.",
    "Finish": "The goal is achieved. Fields: final_result, summary.",
}

_OUTPUT_FORMAT = """Respond with a single JSON object between <final_output> and </final_output> tags.
Use snake_case field names. Every action accepts reasoning, discardable_steps (step
numbers whose results you no longer need) and message_to_user.

Example:
<final_output>
{"action": "CallTool", "reasoning": "Need the product first", "selected_tool": "calculator", "parameters": {"operation": "multiply", "a": 15, "b": 8}}
</final_output>"""


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return (len(text) + 3) // 4


class PromptBuilder:
    """Builds the per-step prompt for one session.

    Usage:
        builder = PromptBuilder()
        prompt = builder.build(session, steps, tools=registry.describe_all(), autonomous=True)
    """

    def __init__(self, history_result_chars: int | None = None, role_prompt: str = ROLE_PROMPT) -> None:
        self.history_result_chars = (
            history_result_chars if history_result_chars is not None else settings.history_result_chars
        )
        self.role_prompt = role_prompt

    def build(
        self,
        session: Session,
        steps: list[Step],
        tools: list[dict] | None = None,
        knowledge: list[KnowledgeSnippet] | None = None,
        autonomous: bool = True,
    ) -> str:
        sections = [self.role_prompt, f"Goal: {session.goal}"]

        if session.inherited_context:
            sections.append(f"## Context from parent agent\n{session.inherited_context}")

        sections.append(self._actions_section(autonomous))
        sections.append(f"## Output format\n{_OUTPUT_FORMAT}")
        sections.append(self._tools_section(tools or []))

        if knowledge:
            lines = [f"- [{k.source or 'note'}] {k.content}" for k in knowledge]
            sections.append("## Relevant knowledge\n" + "\n".join(lines))

        if session.compressed_summary:
            sections.append(f"## Earlier progress (summarized)\n{session.compressed_summary}")

        visible = [s for s in steps if not s.discarded]
        if visible:
            sections.append("## History\n" + "\n".join(self._render_step(s) for s in visible))
        else:
            sections.append("## History\nNo steps yet.")

        sections.append("Choose the next action.")
        return "\n\n".join(sections)

    def _actions_section(self, autonomous: bool) -> str:
        lines = ["## Available actions"]
        for kind, doc in _ACTION_DOCS.items():
            # Nobody is there to answer in autonomous mode
            if kind == "AskUser" and autonomous:
                continue
            lines.append(f"- {kind}: {doc}")
        return "\n".join(lines)

    @staticmethod
    def _tools_section(tools: list[dict]) -> str:
        if not tools:
            return "## Tools\nNo tools are available."
        lines = ["## Tools"]
        for tool in tools:
            lines.append(f"- {tool['name']}: {tool.get('description', '')}")
            if tool.get("parameters"):
                lines.append(f"  parameters: {json.dumps(tool['parameters'])}")
        return "\n".join(lines)

    def _render_step(self, step: Step) -> str:
        head = f"Step {step.step_number} [{step.action or 'unparsed'}"
        if step.selected_tool:
            head += f" {step.selected_tool}"
        head += f"] {step.status}"
        if step.reasoning:
            head += f"\n  reasoning: {step.reasoning}"
        if step.parameters:
            head += f"\n  parameters: {json.dumps(step.parameters, default=str)}"
        if step.error_message:
            head += f"\n  error: {self._truncate(step.error_message)}"
        if step.step_result is not None:
            head += f"\n  result: {self._truncate(_render_value(step.step_result))}"
        return head

    def _truncate(self, text: str) -> str:
        limit = self.history_result_chars
        if limit <= 0 or len(text) <= limit:
            return text
        return text[:limit] + f"... [truncated {len(text) - limit} chars]"


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
