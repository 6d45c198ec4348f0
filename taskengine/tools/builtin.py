"""Small built-in tools, usable as examples and in tests."""

from __future__ import annotations

from taskengine.tools.base import Tool, ToolMetadata, ToolResult

_OPERATIONS = ("add", "subtract", "multiply", "divide")


async def _calculate(params: dict) -> ToolResult:
    operation = params.get("operation")
    a = params.get("a")
    b = params.get("b")
    if not isinstance(a, (int, float)) or not isinstance(b, (int, float)):
        raise ValueError("Parameters 'a' and 'b' must be numbers")

    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    elif operation == "divide":
        if b == 0:
            return ToolResult(success=False, error="Cannot divide by zero")
        result = a / b
    else:
        raise ValueError(f"Unknown operation: {operation}")

    return ToolResult(success=True, result=result, output=f"{a} {operation} {b} = {result}")


def calculator_tool() -> Tool:
    """Two-number arithmetic: add, subtract, multiply, divide."""
    return Tool(
        metadata=ToolMetadata(
            name="calculator",
            description="Perform basic arithmetic on two numbers",
            category="data",
            timeout=30,
            estimated_time=1,
        ),
        schema={
            "type": "object",
            "properties": {
                "operation": {"type": "string", "enum": list(_OPERATIONS)},
                "a": {"type": "number", "description": "First number"},
                "b": {"type": "number", "description": "Second number"},
            },
            "required": ["operation", "a", "b"],
        },
        handler=_calculate,
    )
