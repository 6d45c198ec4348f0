"""Tests for ToolRegistry, ToolExecutor and the calculator tool."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from taskengine.tools.base import Tool, ToolError, ToolMetadata
from taskengine.tools.builtin import calculator_tool
from taskengine.tools.executor import ToolExecutor
from taskengine.tools.registry import ToolRegistry


def _tool(name: str, handler, timeout: float | None = None) -> Tool:
    return Tool(metadata=ToolMetadata(name=name, timeout=timeout), handler=handler)


@pytest.fixture
def executor():
    async def slow(params):
        await asyncio.sleep(0.2)
        return "late"

    async def boom(params):
        raise RuntimeError("exploded")

    async def plain(params):
        return {"echo": params}

    async def reports_failure(params):
        return {"success": False, "error": "upstream 503"}

    registry = ToolRegistry([
        calculator_tool(),
        _tool("slow", slow, timeout=0.05),
        _tool("boom", boom),
        _tool("plain", plain),
        _tool("reports_failure", reports_failure),
    ])
    return ToolExecutor(registry)


@pytest.mark.asyncio
async def test_calculator_operations(executor):
    multiply = await executor.execute("calculator", {"operation": "multiply", "a": 15, "b": 8})
    assert multiply.success
    assert multiply.result == 120
    assert multiply.output == "15 multiply 8 = 120"

    add = await executor.execute("calculator", {"operation": "add", "a": 120, "b": 42})
    assert add.result == 162

    divide = await executor.execute("calculator", {"operation": "divide", "a": 1, "b": 0})
    assert not divide.success
    assert divide.error == "Cannot divide by zero"


@pytest.mark.asyncio
async def test_handler_exception_becomes_failed_result(executor):
    result = await executor.execute("boom")
    assert not result.success
    assert result.error == "exploded"

    bad = await executor.execute("calculator", {"operation": "modulo", "a": 1, "b": 2})
    assert "Unknown operation" in bad.error


@pytest.mark.asyncio
async def test_timeout(executor):
    result = await executor.execute("slow")
    assert not result.success
    assert "timed out" in result.error
    await executor.drain()


@pytest.mark.asyncio
async def test_result_normalization(executor):
    plain = await executor.execute("plain", {"x": 1})
    assert plain.success
    assert plain.result == {"echo": {"x": 1}}
    assert plain.execution_ms is not None

    failed = await executor.execute("reports_failure")
    assert not failed.success
    assert failed.error == "upstream 503"


@pytest.mark.asyncio
async def test_unknown_tool(executor):
    result = await executor.execute("teleport")
    assert not result.success
    assert "calculator" in result.error

    with pytest.raises(ToolError) as exc_info:
        await executor.execute_or_raise("teleport")
    assert exc_info.value.tool_name == "teleport"


def test_registry_describe():
    registry = ToolRegistry([calculator_tool()])
    assert "calculator" in registry
    assert len(registry) == 1
    described = registry.describe_all()[0]
    assert described["name"] == "calculator"
    assert described["parameters"]["required"] == ["operation", "a", "b"]

    with pytest.raises(ToolError):
        registry.require("missing")
    registry.unregister("calculator")
    assert registry.names() == []


@pytest.mark.asyncio
async def test_timeout_leaves_handler_running():
    state = {"cancelled": False, "finished": False}

    async def slow(params):
        try:
            await asyncio.sleep(0.2)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        state["finished"] = True
        return "late"

    executor = ToolExecutor(ToolRegistry([_tool("slow", slow, timeout=0.05)]))

    result = await executor.execute("slow")

    assert not result.success
    assert result.error == "Tool slow timed out after 0.05s"
    assert executor.overrun_count == 1
    assert not state["cancelled"]

    await executor.drain()
    assert state == {"cancelled": False, "finished": True}
    assert executor.overrun_count == 0


@pytest.mark.asyncio
async def test_late_failure_of_timed_out_handler_is_logged(caplog):
    async def slow_boom(params):
        await asyncio.sleep(0.1)
        raise RuntimeError("gave up late")

    executor = ToolExecutor(ToolRegistry([_tool("slow_boom", slow_boom, timeout=0.02)]))

    result = await executor.execute("slow_boom")
    assert "timed out" in result.error

    with caplog.at_level("ERROR", logger="taskengine.tools.executor"):
        await executor.drain()
        await asyncio.sleep(0)
    assert "gave up late" in caplog.text
