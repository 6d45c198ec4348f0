"""Tool registry: the set of tools a session may call."""

from __future__ import annotations

import logging

from taskengine.tools.base import Tool, ToolError

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name -> Tool lookup.

    Usage:
        registry = ToolRegistry([calculator_tool()])
        tool = registry.get("calculator")
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError(name, f"Tool not found. Available tools: {', '.join(self.names()) or 'none'}")
        return tool

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe_all(self) -> list[dict]:
        return [self._tools[n].describe() for n in self.names()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
