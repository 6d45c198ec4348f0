"""Shared test fixtures for taskengine tests."""

import os
import sys

import pytest

# Ensure the package root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("TASKENGINE_DATABASE_URL", "sqlite://")
os.environ.setdefault("TASKENGINE_ANTHROPIC_API_KEY", "test")

from taskengine.cache.memory import InMemoryCacheAdapter
from taskengine.events.hub import EventHub
from taskengine.llm.mock_caller import MockModelCaller
from taskengine.storage.database import create_db_and_tables, make_engine
from taskengine.storage.sqlmodel_adapter import SQLModelStorageAdapter
from taskengine.tools.builtin import calculator_tool
from taskengine.tools.registry import ToolRegistry


@pytest.fixture
def calculator_actions() -> list[dict]:
    """Model answers for "compute 15*8 then add 42"."""
    return [
        {
            "action": "CallTool",
            "reasoning": "First multiply 15 by 8",
            "selected_tool": "calculator",
            "parameters": {"operation": "multiply", "a": 15, "b": 8},
        },
        {
            "action": "CallTool",
            "reasoning": "Now add 42 to the product",
            "selected_tool": "calculator",
            "parameters": {"operation": "add", "a": 120, "b": 42},
        },
        {
            "action": "Finish",
            "reasoning": "Both operations done",
            "final_result": {"answer": 162},
            "summary": "15 * 8 + 42 = 162",
        },
    ]


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables."""
    db_engine = make_engine("sqlite://")
    create_db_and_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def storage(engine):
    """SQLModelStorageAdapter over the in-memory engine."""
    return SQLModelStorageAdapter(engine)


@pytest.fixture
def cache():
    return InMemoryCacheAdapter()


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def registry():
    """Registry holding the calculator tool."""
    return ToolRegistry([calculator_tool()])


@pytest.fixture
def calculator_model(calculator_actions):
    """MockModelCaller scripted for the calculator goal."""
    return MockModelCaller(list(calculator_actions))
