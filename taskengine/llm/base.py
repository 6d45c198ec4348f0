"""Model-calling contract. The engine treats every provider identically."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

ChunkCallback = Callable[[str], None]
CompleteCallback = Callable[["ModelResponse"], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class ModelResponse:
    """Text and usage metadata from one model call."""

    text: str
    tokens_used: int = 0
    model: str = ""
    finish_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class ModelCaller(ABC):
    """Provider-neutral model access.

    ``options`` accepted by every implementation: model, max_tokens,
    temperature, system.
    """

    @abstractmethod
    async def call(self, prompt: str, **options: Any) -> ModelResponse:
        """Single-prompt completion."""

    @abstractmethod
    async def call_with_messages(self, messages: list[dict], **options: Any) -> ModelResponse:
        """Completion over a role/content message list."""

    async def call_with_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        **options: Any,
    ) -> ModelResponse:
        """Streaming variant. Default: one chunk holding the full text."""
        try:
            response = await self.call(prompt, **options)
        except Exception as e:
            if on_error:
                on_error(e)
            raise
        if on_chunk:
            on_chunk(response.text)
        if on_complete:
            on_complete(response)
        return response
