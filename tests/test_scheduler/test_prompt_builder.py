"""Tests for PromptBuilder section layout and history rendering."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from taskengine.models.session import Session, Step
from taskengine.scheduler.knowledge import KnowledgeSnippet, StaticKnowledgeBase
from taskengine.scheduler.prompt_builder import PromptBuilder, estimate_tokens

CALCULATOR = {
    "name": "calculator",
    "description": "Basic arithmetic",
    "parameters": {"type": "object", "properties": {"operation": {"type": "string"}}},
}


def _step(number: int, **fields) -> Step:
    defaults = {"session_id": "s1", "step_number": number, "status": "completed"}
    defaults.update(fields)
    return Step(**defaults)


def test_sections_appear_in_order():
    session = Session(goal="compute 15*8 then add 42", inherited_context="Use integers only")
    knowledge = [KnowledgeSnippet(content="Products before sums.", source="arith.md")]

    prompt = PromptBuilder().build(session, [], tools=[CALCULATOR], knowledge=knowledge)

    markers = [
        "Goal: compute 15*8 then add 42",
        "## Context from parent agent\nUse integers only",
        "## Available actions",
        "## Output format",
        "## Tools",
        "## Relevant knowledge",
        "## History\nNo steps yet.",
        "Choose the next action.",
    ]
    positions = [prompt.index(m) for m in markers]
    assert positions == sorted(positions)
    assert "- [arith.md] Products before sums." in prompt
    assert '- calculator: Basic arithmetic' in prompt
    assert '"operation"' in prompt


def test_optional_sections_are_omitted():
    prompt = PromptBuilder().build(Session(goal="g"), [])

    assert "## Context from parent agent" not in prompt
    assert "## Relevant knowledge" not in prompt
    assert "## Earlier progress" not in prompt
    assert "No tools are available." in prompt


def test_ask_user_only_offered_when_interactive():
    session = Session(goal="g")
    assert "- AskUser:" not in PromptBuilder().build(session, [], autonomous=True)
    assert "- AskUser:" in PromptBuilder().build(session, [], autonomous=False)
    assert "- Finish:" in PromptBuilder().build(session, [], autonomous=True)


def test_history_renders_steps_and_skips_discarded():
    steps = [
        _step(1, action="CallTool", selected_tool="calculator", discarded=True, step_result=1),
        _step(
            2,
            action="CallTool",
            selected_tool="calculator",
            reasoning="Multiply first",
            parameters={"operation": "multiply", "a": 15, "b": 8},
            step_result=120,
        ),
        _step(3, status="failed", error_message="MalformedResponseError: no JSON"),
    ]

    prompt = PromptBuilder().build(Session(goal="g"), steps)

    assert "Step 1 [" not in prompt
    assert "Step 2 [CallTool calculator] completed" in prompt
    assert "  reasoning: Multiply first" in prompt
    assert '  parameters: {"operation": "multiply", "a": 15, "b": 8}' in prompt
    assert "  result: 120" in prompt
    assert "Step 3 [unparsed] failed" in prompt
    assert "  error: MalformedResponseError: no JSON" in prompt


def test_long_results_are_truncated():
    steps = [_step(1, action="CallTool", step_result="x" * 50)]

    prompt = PromptBuilder(history_result_chars=10).build(Session(goal="g"), steps)

    assert "result: " + "x" * 10 + "... [truncated 40 chars]" in prompt


def test_compressed_summary_is_included():
    session = Session(goal="g", compressed_summary="Steps 1-40 gathered the rates.")
    prompt = PromptBuilder().build(session, [])
    assert "## Earlier progress (summarized)\nSteps 1-40 gathered the rates." in prompt


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


@pytest.mark.asyncio
async def test_static_knowledge_ranks_by_overlap():
    kb = StaticKnowledgeBase({
        "units.md": "All amounts are in EUR.",
        "rates.md": "EUR amounts convert to USD at the daily rate.",
    })
    kb.add("misc.md", "Unrelated note.")

    snippets = await kb.search("convert EUR amounts", top_k=5)

    assert [s.source for s in snippets] == ["rates.md", "units.md"]
    assert snippets[0].score == 1.0
    assert await kb.search("", top_k=5) == []
