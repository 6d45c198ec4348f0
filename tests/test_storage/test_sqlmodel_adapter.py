"""Tests for SQLModelStorageAdapter."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from taskengine.models.session import ForkAgentTask, ParallelToolCall, Session, Step, Todo
from taskengine.storage.base import ImmutableRecordError, RecordNotFoundError


@pytest.mark.asyncio
async def test_create_and_get_session(storage):
    session = await storage.create_session(Session(goal="compute 15*8"))
    assert session.id
    assert session.initial_goal == "compute 15*8"
    assert session.status == "active"

    loaded = await storage.get_session(session.id)
    assert loaded.goal == "compute 15*8"
    assert loaded.depth == 0
    assert not loaded.is_sub_agent


@pytest.mark.asyncio
async def test_soft_delete_hides_session_but_keeps_steps(storage):
    session = await storage.create_session(Session(goal="g"))
    await storage.create_step(Step(session_id=session.id, action="CallTool"))

    await storage.delete_session(session.id)
    assert await storage.get_session(session.id) is None
    assert (await storage.get_session(session.id, include_deleted=True)).is_deleted
    assert len(await storage.list_steps(session.id)) == 1
    assert await storage.list_sessions() == []


@pytest.mark.asyncio
async def test_list_sessions_by_parent(storage):
    root = await storage.create_session(Session(goal="root"))
    await storage.create_session(Session(goal="child", parent_session_id=root.id, depth=1))
    await storage.create_session(Session(goal="other"))

    children = await storage.list_sessions(parent_session_id=root.id)
    assert [c.goal for c in children] == ["child"]
    assert children[0].is_sub_agent


@pytest.mark.asyncio
async def test_step_numbers_are_contiguous(storage):
    session = await storage.create_session(Session(goal="g"))
    assert await storage.next_step_number(session.id) == 1

    numbers = []
    for _ in range(3):
        step = await storage.create_step(Step(session_id=session.id, action="CallTool"))
        numbers.append(step.step_number)
    assert numbers == [1, 2, 3]
    assert await storage.next_step_number(session.id) == 4

    other = await storage.create_session(Session(goal="other"))
    assert (await storage.create_step(Step(session_id=other.id))).step_number == 1


@pytest.mark.asyncio
async def test_duplicate_step_number_rejected(storage):
    session = await storage.create_session(Session(goal="g"))
    await storage.create_step(Step(session_id=session.id, step_number=1))
    with pytest.raises(IntegrityError):
        await storage.create_step(Step(session_id=session.id, step_number=1))


@pytest.mark.asyncio
async def test_terminal_step_is_immutable_except_discarded(storage):
    session = await storage.create_session(Session(goal="g"))
    step = await storage.create_step(Step(session_id=session.id, action="CallTool"))
    step = await storage.update_step(step.id, status="completed", step_result={"result": 120})
    assert step.step_result == {"result": 120}

    with pytest.raises(ImmutableRecordError):
        await storage.update_step(step.id, step_result={"result": 0})

    step = await storage.update_step(step.id, discarded=True)
    assert step.discarded


@pytest.mark.asyncio
async def test_mark_steps_discarded(storage):
    session = await storage.create_session(Session(goal="g"))
    for _ in range(3):
        await storage.create_step(Step(session_id=session.id, status="completed"))

    changed = await storage.mark_steps_discarded(session.id, [1, 3, 9])
    assert changed == [1, 3]
    assert await storage.mark_steps_discarded(session.id, [1]) == []

    visible = await storage.list_steps(session.id, include_discarded=False)
    assert [s.step_number for s in visible] == [2]
    assert len(await storage.list_steps(session.id)) == 3


@pytest.mark.asyncio
async def test_update_missing_record_raises(storage):
    with pytest.raises(RecordNotFoundError):
        await storage.update_session("nope", status="failed")


@pytest.mark.asyncio
async def test_parallel_call_retry_cap(storage):
    call = await storage.create_parallel_call(
        ParallelToolCall(step_id=1, tool_id="a", tool_name="calculator", max_retries=1)
    )
    call = await storage.update_parallel_call(call.id, retry_count=1, status="running")
    assert call.retry_count == 1
    with pytest.raises(ImmutableRecordError):
        await storage.update_parallel_call(call.id, retry_count=2)
    assert [c.tool_id for c in await storage.list_parallel_calls(1)] == ["a"]


@pytest.mark.asyncio
async def test_fork_task_never_returns_to_pending(storage):
    task = await storage.create_fork_task(ForkAgentTask(parent_session_id="p", goal="sub", depth=1))
    assert task.status == "pending"
    await storage.update_fork_task(task.id, status="running", sub_session_id="child")

    with pytest.raises(ImmutableRecordError):
        await storage.update_fork_task(task.id, status="pending")

    found = await storage.find_fork_task_by_sub_session("child")
    assert found.id == task.id
    assert [t.id for t in await storage.list_fork_tasks("p")] == [task.id]


@pytest.mark.asyncio
async def test_todos_ordered(storage):
    await storage.create_todo(Todo(session_id="s", title="second", order_index=1))
    first = await storage.create_todo(Todo(session_id="s", title="first", order_index=0))
    await storage.update_todo(first.id, status="completed")

    todos = await storage.list_todos("s")
    assert [t.title for t in todos] == ["first", "second"]
    assert todos[0].status == "completed"


@pytest.mark.asyncio
async def test_transaction_commits_together(storage):
    async def work():
        session = await storage.create_session(Session(goal="tx"))
        await storage.create_step(Step(session_id=session.id))
        return session.id

    session_id = await storage.transaction(work)
    assert await storage.get_session(session_id) is not None
    assert len(await storage.list_steps(session_id)) == 1


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(storage):
    created = {}

    async def work():
        session = await storage.create_session(Session(goal="rolled back"))
        created["id"] = session.id
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        await storage.transaction(work)
    assert await storage.get_session(created["id"]) is None
