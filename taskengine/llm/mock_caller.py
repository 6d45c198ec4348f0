"""Mock ModelCaller for running the engine without API calls."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Union

from taskengine.llm.base import ModelCaller, ModelResponse

ScriptItem = Union[str, dict, Callable[[str], Union[str, dict]], Exception]


def final_output(action: dict) -> str:
    """Render an action dict the way a well-behaved model would answer."""
    return f"<final_output>\n{json.dumps(action)}\n</final_output>"


class MockModelCaller(ModelCaller):
    """Replays scripted responses in order.

    Script items may be raw text, an action dict (wrapped in <final_output>),
    a callable receiving the prompt, or an exception instance to raise.
    ``routes`` holds separate scripts selected by a substring of the prompt,
    so interleaved parent and child sessions can share one caller.

    Usage:
        mock = MockModelCaller([
            {"action": "CallTool", "selected_tool": "calculator",
             "parameters": {"operation": "multiply", "a": 15, "b": 8}},
            {"action": "Finish", "final_result": 120},
        ])
        response = await mock.call("...")
    """

    DEFAULT_ACTION = {"action": "Finish", "reasoning": "Script exhausted", "final_result": None}

    def __init__(
        self,
        responses: list[ScriptItem] | None = None,
        routes: dict[str, list[ScriptItem]] | None = None,
        tokens_per_call: int = 150,
        delay: float = 0.0,
        default: ScriptItem | None = None,
    ) -> None:
        self._script: deque = deque(responses or [])
        self._routes: dict[str, deque] = {k: deque(v) for k, v in (routes or {}).items()}
        self.tokens_per_call = tokens_per_call
        self.delay = delay
        self.default = default if default is not None else self.DEFAULT_ACTION
        self.call_log: list[dict] = []

    @property
    def remaining(self) -> int:
        return len(self._script) + sum(len(q) for q in self._routes.values())

    def _next_item(self, prompt: str) -> ScriptItem:
        for marker, queue in self._routes.items():
            if marker in prompt and queue:
                return queue.popleft()
        if self._script:
            return self._script.popleft()
        return self.default

    async def call(self, prompt: str, **options: Any) -> ModelResponse:
        self.call_log.append({"method": "call", "prompt": prompt, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)

        item = self._next_item(prompt)
        if callable(item) and not isinstance(item, Exception):
            item = item(prompt)
        if isinstance(item, Exception):
            raise item
        text = final_output(item) if isinstance(item, dict) else str(item)

        return ModelResponse(
            text=text,
            tokens_used=self.tokens_per_call,
            model="mock-model",
            finish_reason="end_turn",
            input_tokens=self.tokens_per_call // 3 * 2,
            output_tokens=self.tokens_per_call - self.tokens_per_call // 3 * 2,
        )

    async def call_with_messages(self, messages: list[dict], **options: Any) -> ModelResponse:
        prompt = "\n\n".join(
            m["content"] if isinstance(m.get("content"), str) else json.dumps(m.get("content"))
            for m in messages
        )
        return await self.call(prompt, **options)
