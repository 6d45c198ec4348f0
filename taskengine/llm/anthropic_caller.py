"""Anthropic reference ModelCaller.

Uses AsyncAnthropic with exponential-backoff retry on transient errors
(rate limit, connection, 5xx) and a circuit breaker that fails fast after
repeated consecutive failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import anthropic

from taskengine.config import settings
from taskengine.llm.base import (
    ChunkCallback,
    CompleteCallback,
    ErrorCallback,
    ModelCaller,
    ModelResponse,
)

logger = logging.getLogger(__name__)

_RETRYABLE = (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError)


class CircuitBreaker:
    """Fail fast while the provider keeps failing.

    closed: calls pass. open: calls are refused until ``reset_timeout`` has
    passed since the last failure. half_open: exactly one probe call is let
    through; its outcome closes or reopens the breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 60.0) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        if self._state == self.OPEN:
            if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                self._state = self.HALF_OPEN
        return self._state

    def record_success(self) -> None:
        self._failure_count = 0
        self._probe_in_flight = False
        self._state = self.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        self._probe_in_flight = False
        if self._failure_count >= self.failure_threshold or self._state == self.HALF_OPEN:
            self._state = self.OPEN
            logger.warning("Circuit breaker OPEN after %d consecutive failures", self._failure_count)

    def allow_request(self) -> bool:
        state = self.state
        if state == self.CLOSED:
            return True
        if state == self.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True  # One probe until it resolves
            return True
        return False


class CircuitBreakerOpenError(Exception):
    """The breaker is open; no request was sent."""


async def _retry_with_backoff(
    coro_factory,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    circuit_breaker: CircuitBreaker | None = None,
):
    """Await ``coro_factory()`` until it succeeds or retries run out.

    Only rate-limit, connection and 5xx errors are retried, with delays of
    ``base_delay * 2**attempt`` capped at ``max_delay``. Every outcome is
    reported to ``circuit_breaker`` when one is given.

    Raises:
        CircuitBreakerOpenError: The breaker refused the call.
    """
    if circuit_breaker and not circuit_breaker.allow_request():
        raise CircuitBreakerOpenError("Circuit breaker is open. Model calls temporarily disabled.")

    for attempt in range(max_retries + 1):
        try:
            result = await coro_factory()
            if circuit_breaker:
                circuit_breaker.record_success()
            return result
        except _RETRYABLE as e:
            if circuit_breaker:
                circuit_breaker.record_failure()
            if attempt >= max_retries:
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                "Model call attempt %d/%d failed (%s), retrying in %.1fs",
                attempt + 1, max_retries + 1, type(e).__name__, delay,
            )
            await asyncio.sleep(delay)
        except Exception:
            # Non-retryable (auth, bad request, ...)
            if circuit_breaker:
                circuit_breaker.record_failure()
            raise


class AnthropicModelCaller(ModelCaller):
    """ModelCaller over the Anthropic Messages API.

    Usage:
        caller = AnthropicModelCaller()
        response = await caller.call(prompt, max_tokens=1024)
        print(response.text, response.tokens_used)
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        client: anthropic.AsyncAnthropic | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)
        self.model = model or settings.default_model
        self.max_retries = max_retries if max_retries is not None else settings.model_max_retries
        self.circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, reset_timeout=60.0)

    def _build_kwargs(self, messages: list[dict], options: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": options.get("model") or self.model,
            "max_tokens": options.get("max_tokens") or settings.default_max_tokens,
            "messages": messages,
            "temperature": (
                options["temperature"] if options.get("temperature") is not None else settings.default_temperature
            ),
        }
        system = options.get("system")
        if system:
            kwargs["system"] = system
        return kwargs

    async def call(self, prompt: str, **options: Any) -> ModelResponse:
        return await self.call_with_messages([{"role": "user", "content": prompt}], **options)

    async def call_with_messages(self, messages: list[dict], **options: Any) -> ModelResponse:
        kwargs = self._build_kwargs(messages, options)
        response = await _retry_with_backoff(
            coro_factory=lambda: self.client.messages.create(**kwargs),
            max_retries=self.max_retries,
            circuit_breaker=self.circuit_breaker,
        )
        return self._to_model_response(response)

    async def call_with_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        **options: Any,
    ) -> ModelResponse:
        if not self.circuit_breaker.allow_request():
            err = CircuitBreakerOpenError("Circuit breaker is open.")
            if on_error:
                on_error(err)
            raise err

        kwargs = self._build_kwargs([{"role": "user", "content": prompt}], options)
        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if on_chunk:
                        on_chunk(text)
                final = await stream.get_final_message()
        except Exception as e:
            self.circuit_breaker.record_failure()
            if on_error:
                on_error(e)
            raise

        self.circuit_breaker.record_success()
        result = self._to_model_response(final)
        if on_complete:
            on_complete(result)
        return result

    @staticmethod
    def _to_model_response(response: Any) -> ModelResponse:
        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        return ModelResponse(
            text=text,
            tokens_used=input_tokens + output_tokens,
            model=response.model,
            finish_reason=response.stop_reason or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
