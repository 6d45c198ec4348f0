"""End-to-end tests for StepScheduler with the mock model and the calculator tool."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from taskengine.governor.access import AccessGovernor, ConcurrencyLimitExceeded
from taskengine.llm.mock_caller import MockModelCaller
from taskengine.scheduler.knowledge import StaticKnowledgeBase
from taskengine.scheduler.loop import SchedulerBusyError, StepScheduler
from taskengine.scheduler.state_machine import IllegalTransitionError

GOAL = "compute 15*8 then add 42"

ADD_FOREVER = {
    "action": "CallTool",
    "selected_tool": "calculator",
    "parameters": {"operation": "add", "a": 1, "b": 1},
}


def _drain_events(queue) -> list[str]:
    return [queue.get_nowait().event_type for _ in range(queue.qsize())]


# === Happy path ===


@pytest.mark.asyncio
async def test_calculator_goal_end_to_end(storage, registry, calculator_model, hub):
    queue = hub.subscribe()
    scheduler = StepScheduler(storage, calculator_model, tools=registry, hub=hub)

    result = await scheduler.run(GOAL)

    assert result.status == "completed"
    assert result.result == {"answer": 162}
    assert result.summary == "15 * 8 + 42 = 162"
    assert result.steps_executed == 3
    assert result.tools_called == 2
    assert result.tokens_used == 3 * calculator_model.tokens_per_call

    steps = await storage.list_steps(result.session_id)
    assert [s.step_number for s in steps] == [1, 2, 3]
    assert [s.action for s in steps] == ["CallTool", "CallTool", "Finish"]
    assert [s.step_result for s in steps[:2]] == [120, 162]
    assert 162 in steps[2].step_result.values()
    assert all(s.status == "completed" and not s.discarded for s in steps)
    assert steps[0].selected_tool == "calculator"
    assert steps[0].parameters == {"operation": "multiply", "a": 15, "b": 8}

    session = await storage.get_session(result.session_id)
    assert session.status == "completed"
    assert not session.is_running

    events = _drain_events(queue)
    assert events[0] == "session:created"
    assert events.count("step:started") == 3
    assert events.count("tool:completed") == 2
    assert events[-1] == "task:completed"


@pytest.mark.asyncio
async def test_history_reaches_the_next_prompt(storage, registry, calculator_model):
    scheduler = StepScheduler(storage, calculator_model, tools=registry)
    await scheduler.run(GOAL)

    prompts = [c["prompt"] for c in calculator_model.call_log]
    assert f"Goal: {GOAL}" in prompts[0]
    assert "No steps yet." in prompts[0]
    assert "Step 1 [CallTool calculator] completed" in prompts[1]
    assert "result: 120" in prompts[1]
    assert "- calculator:" in prompts[0]


# === Parse failures ===


@pytest.mark.asyncio
async def test_parse_failure_within_budget_is_retried(storage, registry):
    model = MockModelCaller(["I think the answer is 162", {"action": "Finish", "final_result": 162}])
    scheduler = StepScheduler(storage, model, tools=registry, parse_retry_budget=1)

    result = await scheduler.run(GOAL)

    assert result.status == "completed"
    steps = await storage.list_steps(result.session_id)
    assert [s.status for s in steps] == ["failed", "completed"]
    assert steps[0].action is None
    assert "MalformedResponseError" in steps[0].error_message


@pytest.mark.asyncio
async def test_parse_failures_beyond_budget_fail_the_session(storage, registry):
    model = MockModelCaller(["not json", {"action": "Teleport"}])
    scheduler = StepScheduler(storage, model, tools=registry, parse_retry_budget=1)

    result = await scheduler.run(GOAL)

    assert result.status == "failed"
    assert "Could not parse" in result.error
    steps = await storage.list_steps(result.session_id)
    assert len(steps) == 2
    assert all(s.status == "failed" for s in steps)
    assert "UnknownActionError" in steps[1].error_message


# === Limits ===


@pytest.mark.asyncio
async def test_max_steps_is_a_hard_ceiling(storage, registry):
    model = MockModelCaller(default=ADD_FOREVER)
    scheduler = StepScheduler(storage, model, tools=registry, max_steps=3)

    result = await scheduler.run("count forever")

    assert result.status == "failed"
    assert "Maximum steps (3)" in result.error
    assert len(await storage.list_steps(result.session_id)) == 3
    assert result.result == 2  # last successful tool result


@pytest.mark.asyncio
async def test_session_timeout(storage, registry):
    model = MockModelCaller(default=ADD_FOREVER, delay=0.1)
    scheduler = StepScheduler(storage, model, tools=registry, timeout_seconds=0.05)

    result = await scheduler.run("count slowly")

    assert result.status == "timeout"
    assert result.steps_executed == 1
    assert (await storage.get_session(result.session_id)).status == "timeout"


@pytest.mark.asyncio
async def test_token_budget_exhaustion_fails_the_session(storage, registry, cache):
    governor = AccessGovernor(cache, max_tokens=200, max_concurrent=5)
    model = MockModelCaller(default=ADD_FOREVER, tokens_per_call=150)
    scheduler = StepScheduler(storage, model, tools=registry, governor=governor, identity="user:u1")

    result = await scheduler.run("spend tokens")

    assert result.status == "failed"
    assert "Token budget" in result.error
    steps = await storage.list_steps(result.session_id)
    assert [s.status for s in steps] == ["completed", "failed"]
    # Slot released after the run
    assert await cache.get("ratelimit:concurrent:user:u1") is None


@pytest.mark.asyncio
async def test_concurrency_limit_rejects_run(storage, registry, cache, calculator_actions):
    governor = AccessGovernor(cache, max_concurrent=1)
    await governor.acquire_slot("user:u1")
    scheduler = StepScheduler(
        storage, MockModelCaller(calculator_actions), tools=registry, governor=governor, identity="user:u1",
    )

    with pytest.raises(ConcurrencyLimitExceeded):
        await scheduler.run(GOAL)

    await governor.release_slot("user:u1")
    result = await scheduler.run(GOAL)
    assert result.status == "completed"


# === Stop and resume ===


@pytest.mark.asyncio
async def test_graceful_stop_finishes_current_step_then_resumes(storage, registry, calculator_actions):
    script = calculator_actions
    holder = {}

    def add_and_request_stop(prompt):
        holder["scheduler"].request_stop(graceful=True, save_state=True)
        return script[1]

    model = MockModelCaller([script[0], add_and_request_stop, script[2]])
    scheduler = StepScheduler(storage, model, tools=registry)
    holder["scheduler"] = scheduler

    stopped = await scheduler.run(GOAL)

    assert stopped.status == "stopped"
    assert stopped.can_resume
    assert stopped.result == 162
    steps = await storage.list_steps(stopped.session_id)
    assert [s.status for s in steps] == ["completed", "completed"]
    session = await storage.get_session(stopped.session_id)
    assert session.status == "stopped"
    assert session.resume_state["completed_steps"] == 2
    assert session.resume_state["last_step_id"] == steps[-1].id

    resumed = await scheduler.resume(stopped.session_id)

    assert resumed.status == "completed"
    assert resumed.result == {"answer": 162}
    steps = await storage.list_steps(stopped.session_id)
    assert [s.step_number for s in steps] == [1, 2, 3]


@pytest.mark.asyncio
async def test_immediate_stop_skips_the_pending_action(storage, registry, calculator_actions):
    script = calculator_actions
    holder = {}

    def add_and_stop_now(prompt):
        holder["scheduler"].request_stop(graceful=False)
        return script[1]

    model = MockModelCaller([script[0], add_and_stop_now, script[2]])
    scheduler = StepScheduler(storage, model, tools=registry)
    holder["scheduler"] = scheduler

    result = await scheduler.run(GOAL)

    assert result.status == "stopped"
    assert result.tools_called == 1
    steps = await storage.list_steps(result.session_id)
    assert steps[1].status == "failed"
    assert steps[1].error_message == "Stopped before the action was executed"


@pytest.mark.asyncio
async def test_completed_session_cannot_resume(storage, registry, calculator_model):
    scheduler = StepScheduler(storage, calculator_model, tools=registry)
    result = await scheduler.run(GOAL)
    with pytest.raises(IllegalTransitionError):
        await scheduler.resume(result.session_id)


# === AskUser ===


@pytest.mark.asyncio
async def test_ask_user_pauses_until_answered(storage, registry, hub):
    model = MockModelCaller([
        {"action": "AskUser", "question": "Which currency?", "options": ["EUR", "USD"]},
        {"action": "Finish", "final_result": "Reporting in EUR"},
    ])
    scheduler = StepScheduler(storage, model, tools=registry, hub=hub, autonomous=False)

    waiting = await scheduler.run("report totals")

    assert waiting.status == "waiting_for_user"
    assert waiting.question == "Which currency?"
    assert waiting.options == ["EUR", "USD"]
    assert (await storage.get_session(waiting.session_id)).status == "paused"
    assert "- AskUser:" in model.call_log[0]["prompt"]

    done = await scheduler.answer(waiting.session_id, "EUR")

    assert done.status == "completed"
    steps = await storage.list_steps(waiting.session_id)
    assert steps[0].status == "completed"
    assert steps[0].step_result["answer"] == "EUR"
    assert '"answer": "EUR"' in model.call_log[1]["prompt"]

    with pytest.raises(IllegalTransitionError):
        await scheduler.answer(waiting.session_id, "USD")


@pytest.mark.asyncio
async def test_autonomous_prompt_hides_ask_user(storage, registry, calculator_model):
    scheduler = StepScheduler(storage, calculator_model, tools=registry, autonomous=True)
    await scheduler.run(GOAL)
    assert "- AskUser:" not in calculator_model.call_log[0]["prompt"]


# === Discarded steps and knowledge ===


@pytest.mark.asyncio
async def test_discardable_steps_leave_the_history(storage, registry, hub, calculator_actions):
    queue = hub.subscribe()
    script = list(calculator_actions)
    script[1] = {**script[1], "discardable_steps": [1]}
    model = MockModelCaller(script)
    scheduler = StepScheduler(storage, model, tools=registry, hub=hub)

    result = await scheduler.run(GOAL)

    steps = await storage.list_steps(result.session_id)
    assert [s.discarded for s in steps] == [True, False, False]
    assert len(await storage.list_steps(result.session_id, include_discarded=False)) == 2
    assert "Step 1 [" not in model.call_log[2]["prompt"]
    assert "steps:discarded" in _drain_events(queue)


@pytest.mark.asyncio
async def test_knowledge_is_consulted_on_first_step_only(storage, registry, calculator_model):
    knowledge = StaticKnowledgeBase({"arith.md": "Always compute products before sums."})
    scheduler = StepScheduler(storage, calculator_model, tools=registry, knowledge=knowledge)

    await scheduler.run(GOAL)

    prompts = [c["prompt"] for c in calculator_model.call_log]
    assert "## Relevant knowledge" in prompts[0]
    assert "## Relevant knowledge" not in prompts[1]


@pytest.mark.asyncio
async def test_scheduler_drives_one_session_at_a_time(storage, registry):
    model = MockModelCaller(
        [{"action": "Finish", "final_result": "first"}, {"action": "Finish", "final_result": "second"}],
        delay=0.05,
    )
    scheduler = StepScheduler(storage, model, tools=registry)

    first = asyncio.create_task(scheduler.run("first goal"))
    await asyncio.sleep(0.01)
    assert scheduler.active_session_id is not None

    with pytest.raises(SchedulerBusyError) as exc:
        await scheduler.run("second goal")
    assert exc.value.active_session_id == scheduler.active_session_id

    # A stop meant for the running session is not cleared by the rejected run
    scheduler.request_stop(graceful=False)
    assert (await first).status == "stopped"
    assert scheduler.active_session_id is None

    result = await scheduler.run("second goal")
    assert result.status == "completed"
    assert result.result == "second"
