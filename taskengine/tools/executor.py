"""Tool executor: runs one handler under its timeout and normalizes the result."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from taskengine.config import settings
from taskengine.tools.base import ToolError, ToolResult
from taskengine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Invokes registered tools.

    ``execute`` never raises for tool-level problems; it returns a failed
    ToolResult. ``execute_or_raise`` turns that failure into a ToolError.
    """

    def __init__(self, registry: ToolRegistry, default_timeout: float | None = None) -> None:
        self.registry = registry
        self.default_timeout = default_timeout if default_timeout is not None else settings.tool_default_timeout_seconds
        # Handlers that outlived their timeout and are still running
        self._overrun: set[asyncio.Task] = set()

    async def execute(self, tool_name: str, parameters: dict | None = None) -> ToolResult:
        tool = self.registry.get(tool_name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool not found: {tool_name}. Available tools: {', '.join(self.registry.names()) or 'none'}",
            )

        timeout = tool.metadata.timeout or self.default_timeout
        start = time.monotonic()
        call = asyncio.create_task(tool.handler(dict(parameters or {})), name=f"tool-{tool_name}")
        done, _ = await asyncio.wait({call}, timeout=timeout)
        if not done:
            # The handler keeps running; only the caller stops waiting
            self._overrun.add(call)
            call.add_done_callback(self._overrun_done)
            logger.warning("Tool %s timed out after %.1fs", tool_name, timeout)
            return ToolResult(
                success=False,
                error=f"Tool {tool_name} timed out after {timeout:g}s",
                execution_ms=int((time.monotonic() - start) * 1000),
            )

        try:
            raw = call.result()
        except Exception as e:
            logger.warning("Tool %s raised %s: %s", tool_name, type(e).__name__, e)
            return ToolResult(
                success=False,
                error=str(e) or type(e).__name__,
                execution_ms=int((time.monotonic() - start) * 1000),
            )

        result = _normalize(raw)
        result.execution_ms = int((time.monotonic() - start) * 1000)
        return result

    def _overrun_done(self, task: asyncio.Task) -> None:
        self._overrun.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timed-out tool call failed later: %s", task.exception(), exc_info=task.exception())

    @property
    def overrun_count(self) -> int:
        return len(self._overrun)

    async def drain(self) -> None:
        """Wait for handlers still running after their timeout."""
        if self._overrun:
            await asyncio.gather(*list(self._overrun), return_exceptions=True)

    async def execute_or_raise(self, tool_name: str, parameters: dict | None = None) -> ToolResult:
        result = await self.execute(tool_name, parameters)
        if not result.success:
            raise ToolError(tool_name, result.error or "failed")
        return result


def _normalize(raw: Any) -> ToolResult:
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict) and "success" in raw:
        return ToolResult(
            success=bool(raw["success"]),
            result=raw.get("result"),
            error=raw.get("error"),
            output=raw.get("output"),
        )
    return ToolResult(success=True, result=raw)
