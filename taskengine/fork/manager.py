"""ForkManager: depth-limited sub-agent spawning, tracking and result compression.

A fork creates a ForkAgentTask row, hands it to an ExecutionBackend and returns
the task id immediately. The backend runs ``ForkManager.run_task``, which
drives the child session under the task's timeout, compresses the child's
result and settles the task row.

Completion is signalled in-process through a per-task asyncio.Event; waiters
fall back to polling storage when the task ran elsewhere (Celery).

A task's timeout runs from the moment it is scheduled: a deadline timer
settles it as ``timeout`` even while it still waits for a worker slot.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

from taskengine.config import settings
from taskengine.control.stop_controller import StopController
from taskengine.events.hub import EventHub
from taskengine.fork.backends import ExecutionBackend, default_backend
from taskengine.fork.execution import run_child_session
from taskengine.llm.base import ModelCaller
from taskengine.models.results import SubAgentResult
from taskengine.models.session import ForkAgentTask, Session
from taskengine.scheduler.knowledge import KnowledgeBase
from taskengine.storage.base import StorageAdapter
from taskengine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


# === Errors ===


class ForkDepthExceeded(Exception):
    """Fork requested at or beyond the maximum depth. Raised before any write."""

    def __init__(self, current_depth: int, max_depth: int) -> None:
        self.current_depth = current_depth
        self.max_depth = max_depth
        super().__init__(f"Maximum fork depth reached (current depth {current_depth}, max {max_depth})")


class ForkTimeout(Exception):
    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Fork task {task_id} timed out after {timeout_seconds:g}s")


class SubAgentFailed(Exception):
    def __init__(self, task_id: str, error: str) -> None:
        self.task_id = task_id
        self.error = error
        super().__init__(f"Sub-agent {task_id} failed: {error}")


class ForkTaskNotFound(LookupError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Fork task {task_id} not found")


_SUMMARY_INSTRUCTION = (
    "Summarize the following sub-agent result for the agent that delegated the task. "
    "Keep every number, name and conclusion the parent needs. "
    "Answer in at most {max_chars} characters, plain text only."
)

_CONTEXT_INSTRUCTION = (
    "Condense the following context for a helper agent that will work on one sub-goal. "
    "Keep facts and constraints, drop narration. "
    "Answer in at most {max_chars} characters, plain text only."
)


class ForkManager:
    """Creates, runs and awaits child sessions.

    Usage:
        manager = ForkManager(storage, model, tools=registry, hub=hub)
        task_id = await manager.fork(
            goal="Look up the exchange rate",
            context_summary="Amounts are in EUR",
            current_depth=session.depth,
            parent_session_id=session.id,
        )
        result = await manager.wait_for_sub_agent(task_id)
    """

    def __init__(
        self,
        storage: StorageAdapter,
        model: ModelCaller,
        tools: ToolRegistry | None = None,
        *,
        hub: EventHub | None = None,
        backend: ExecutionBackend | None = None,
        knowledge: KnowledgeBase | None = None,
        model_options: dict | None = None,
        max_depth: int | None = None,
        default_max_steps: int | None = None,
        default_timeout: float | None = None,
        max_retries: int | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        summary_max_chars: int | None = None,
    ) -> None:
        self.storage = storage
        self.model = model
        self.tools = tools if tools is not None else ToolRegistry()
        self.hub = hub
        self.backend = backend if backend is not None else default_backend(storage)
        self.knowledge = knowledge
        self.model_options = dict(model_options or {})
        self.max_depth = max_depth if max_depth is not None else settings.max_fork_depth
        self.default_max_steps = default_max_steps if default_max_steps is not None else settings.fork_max_steps
        self.default_timeout = default_timeout if default_timeout is not None else settings.fork_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.fork_max_retries
        self.poll_interval = poll_interval if poll_interval is not None else settings.fork_poll_interval_seconds
        self.max_wait = max_wait if max_wait is not None else settings.fork_max_wait_seconds
        self.summary_max_chars = (
            summary_max_chars if summary_max_chars is not None else settings.fork_summary_max_chars
        )
        self._done: dict[str, asyncio.Event] = {}
        self._deadlines: dict[str, asyncio.TimerHandle] = {}
        self._stragglers: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def fork(
        self,
        goal: str,
        context_summary: str | None = None,
        current_depth: int = 0,
        parent_session_id: str = "",
        parent_step_id: int | None = None,
        *,
        max_depth: int | None = None,
        max_steps: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """Spawn a child agent for ``goal`` and return the fork task id.

        ``max_depth`` may only tighten the configured limit.

        Raises:
            ForkDepthExceeded: ``current_depth`` is at the limit; nothing is written.
            SubAgentFailed: The backend refused the task.
        """
        limit = self.max_depth if max_depth is None else min(self.max_depth, max_depth)
        if current_depth >= limit:
            raise ForkDepthExceeded(current_depth, limit)
        if not goal or not goal.strip():
            raise ValueError("Fork goal must not be empty")

        task = await self.storage.create_fork_task(
            ForkAgentTask(
                parent_session_id=parent_session_id,
                parent_step_id=parent_step_id,
                goal=goal,
                context_summary=context_summary or None,
                depth=current_depth + 1,
                max_steps=max_steps or self.default_max_steps,
                timeout_seconds=timeout or self.default_timeout,
                max_retries=self.max_retries,
            )
        )
        self._done[task.id] = asyncio.Event()
        self._emit("subagent:started", task, {
            "goal": goal,
            "depth": task.depth,
            "parent_step_id": parent_step_id,
            "backend": self.backend.name,
        })
        logger.info(
            "Forked task %s from session %s (depth %d/%d, backend=%s)",
            task.id, parent_session_id, task.depth, limit, self.backend.name,
        )

        try:
            await self.backend.execute_sub_agent(task, lambda stop, task_id=task.id: self.run_task(task_id, stop))
        except Exception as e:
            logger.error("Backend %s rejected fork task %s: %s", self.backend.name, task.id, e, exc_info=True)
            await self._finish(task.id, "failed", error=f"Could not schedule sub-agent: {e}")
            raise SubAgentFailed(task.id, str(e)) from e

        self._arm_deadline(task)
        return task.id

    async def run_task(self, task_id: str, stop: StopController | None = None) -> SubAgentResult:
        """Execute a pending fork task to a terminal status.

        Called by the execution backend. The child coroutine is never
        cancelled: on timeout it is asked to stop at its next step boundary
        and the task row is settled as ``timeout`` right away.
        """
        task = await self.storage.get_fork_task(task_id)
        if task is None:
            raise ForkTaskNotFound(task_id)
        if task.is_terminal:
            return _to_result(task)

        stop = stop or StopController()
        started = time.monotonic()
        remaining = _remaining_seconds(task)
        if remaining <= 0:
            logger.warning("Fork task %s passed its %ss deadline before it started", task_id, task.timeout_seconds)
            return await self._finish(
                task_id, "timeout", error=f"Sub-agent timed out after {task.timeout_seconds:g}s",
            )
        task = await self.storage.update_fork_task(
            task_id, status="running", started_at=datetime.now(timezone.utc),
        )

        child = asyncio.create_task(run_child_session(self, task, stop), name=f"fork-child-{task_id}")
        done, _ = await asyncio.wait({child}, timeout=remaining)

        if not done:
            stop.request_stop(graceful=False, save_state=True)
            self._stragglers.add(child)
            child.add_done_callback(self._stragglers.discard)
            logger.warning("Fork task %s timed out after %ss", task_id, task.timeout_seconds)
            return await self._finish(
                task_id,
                "timeout",
                error=f"Sub-agent timed out after {task.timeout_seconds:g}s",
                started=started,
            )

        try:
            outcome = child.result()
        except Exception as e:
            logger.error("Fork task %s child run raised: %s", task_id, e, exc_info=True)
            return await self._finish(task_id, "failed", error=str(e) or type(e).__name__, started=started)

        if outcome.status == "completed":
            status = "completed"
        elif outcome.status == "timeout":
            status = "timeout"
        else:
            status = "failed"

        payload = outcome.result if outcome.result is not None else outcome.summary
        summary = await self.compress_result(payload) if payload is not None else None
        error = None
        if status != "completed":
            error = outcome.error or f"Sub-agent ended with status {outcome.status}"

        return await self._finish(
            task_id,
            status,
            summary=summary,
            error=error,
            steps_executed=outcome.steps_executed,
            tokens_used=outcome.tokens_used,
            tools_called=outcome.tools_called,
            started=started,
        )

    async def _finish(
        self,
        task_id: str,
        status: str,
        *,
        summary: str | None = None,
        error: str | None = None,
        steps_executed: int | None = None,
        tokens_used: int = 0,
        tools_called: int = 0,
        started: float | None = None,
    ) -> SubAgentResult:
        current = await self.storage.get_fork_task(task_id)
        if current is None:
            raise ForkTaskNotFound(task_id)
        if current.is_terminal:
            # Cancelled or timed out while the child was finishing
            self._signal(task_id)
            return _to_result(current)

        if steps_executed is None:
            steps_executed = 0
            if current.sub_session_id:
                steps_executed = len(await self.storage.list_steps(current.sub_session_id))

        fields: dict[str, Any] = {
            "status": status,
            "result_summary": summary,
            "error_message": error,
            "steps_executed": steps_executed,
            "tokens_used": tokens_used,
            "tools_called": tools_called,
            "completed_at": datetime.now(timezone.utc),
        }
        if started is not None:
            fields["execution_duration_ms"] = int((time.monotonic() - started) * 1000)
        task = await self.storage.update_fork_task(task_id, **fields)

        if task.sub_session_id and summary:
            await self.storage.update_session(task.sub_session_id, result_summary=summary)

        if status == "completed":
            self._emit("subagent:completed", task, {
                "sub_session_id": task.sub_session_id,
                "summary": summary,
                "steps_executed": task.steps_executed,
                "tokens_used": task.tokens_used,
            })
            logger.info("Fork task %s completed in %d steps", task_id, task.steps_executed)
        else:
            self._emit("subagent:failed", task, {
                "sub_session_id": task.sub_session_id,
                "status": status,
                "error": error,
            })
            logger.info("Fork task %s ended %s: %s", task_id, status, error)

        self._signal(task_id)
        return _to_result(task)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_for_sub_agent(self, task_id: str, timeout: float | None = None) -> SubAgentResult:
        """Block until the task settles.

        Raises:
            ForkTaskNotFound: Unknown task id.
            ForkTimeout: The task timed out, or ``timeout`` elapsed while waiting.
            SubAgentFailed: The task failed or was cancelled.
        """
        max_wait = timeout if timeout is not None else self.max_wait
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        while True:
            task = await self.storage.get_fork_task(task_id)
            if task is None:
                raise ForkTaskNotFound(task_id)
            if task.is_terminal:
                return _settle(task)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ForkTimeout(task_id, max_wait)

            interval = min(self.poll_interval, remaining)
            signal = self._done.get(task_id)
            if signal is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(signal.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def wait_for_multiple_sub_agents(
        self,
        task_ids: list[str],
        timeout: float | None = None,
    ) -> list[SubAgentResult]:
        """Wait for several tasks at once; failures come back as failed/timeout records."""
        outcomes = await asyncio.gather(
            *[self.wait_for_sub_agent(tid, timeout=timeout) for tid in task_ids],
            return_exceptions=True,
        )
        results: list[SubAgentResult] = []
        for task_id, outcome in zip(task_ids, outcomes):
            if isinstance(outcome, ForkTimeout):
                results.append(SubAgentResult(task_id=task_id, status="timeout", summary=str(outcome)))
            elif isinstance(outcome, SubAgentFailed):
                results.append(SubAgentResult(task_id=task_id, status="failed", summary=outcome.error))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def cancel(self, task_id: str, reason: str = "Cancelled") -> bool:
        """Stop a running task at its next step boundary and settle it as failed."""
        task = await self.storage.get_fork_task(task_id)
        if task is None:
            raise ForkTaskNotFound(task_id)
        if task.is_terminal:
            return False
        await self.backend.cancel(task_id, graceful=False)
        await self._finish(task_id, "failed", error=reason)
        return True

    async def stop_children(self, parent_session_id: str, graceful: bool = True) -> int:
        """Forward a stop request to every running child of a session."""
        stopped = 0
        for task in await self.storage.list_fork_tasks(parent_session_id):
            if task.is_terminal:
                continue
            if await self.backend.cancel(task.id, graceful=graceful):
                stopped += 1
        if stopped:
            logger.info("Forwarded stop to %d child task(s) of session %s", stopped, parent_session_id)
        return stopped

    async def get_sub_agents(self, parent_session_id: str) -> list[ForkAgentTask]:
        return await self.storage.list_fork_tasks(parent_session_id)

    async def get_parent_session(self, sub_session_id: str) -> Session | None:
        child = await self.storage.get_session(sub_session_id, include_deleted=True)
        if child is None or child.parent_session_id is None:
            return None
        return await self.storage.get_session(child.parent_session_id, include_deleted=True)

    async def shutdown(self) -> None:
        """Wait for scheduled tasks and for timed-out children still winding down."""
        await self.backend.shutdown()
        if self._stragglers:
            await asyncio.gather(*list(self._stragglers), return_exceptions=True)
        for handle in self._deadlines.values():
            handle.cancel()
        self._deadlines.clear()

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def compress_result(self, result: Any, max_chars: int | None = None) -> str:
        """Bounded summary of a child result: pass through when short, else summarize."""
        return await self._compress(_serialize(result), _SUMMARY_INSTRUCTION, max_chars)

    async def compress_context(self, context: str, max_chars: int | None = None) -> str:
        """Shrink the context a parent hands to a child before spawning it."""
        return await self._compress(context, _CONTEXT_INSTRUCTION, max_chars)

    async def _compress(self, text: str, instruction: str, max_chars: int | None) -> str:
        limit = max_chars if max_chars is not None else self.summary_max_chars
        if len(text) <= limit:
            return text
        prompt = f"{instruction.format(max_chars=limit)}\n\n{text}"
        try:
            response = await self.model.call(prompt, **self.model_options)
            summary = response.text.strip()
        except Exception as e:
            logger.warning("Summarization failed, truncating instead: %s", e)
            return _truncate(text, limit)
        if not summary:
            return _truncate(text, limit)
        return _truncate(summary, limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _signal(self, task_id: str) -> None:
        # Waiters holding the event wake up; later waiters read the settled row
        signal = self._done.pop(task_id, None)
        if signal is not None:
            signal.set()
        deadline = self._deadlines.pop(task_id, None)
        if deadline is not None:
            deadline.cancel()

    def _arm_deadline(self, task: ForkAgentTask) -> None:
        if task.id not in self._done:
            return
        loop = asyncio.get_running_loop()
        self._deadlines[task.id] = loop.call_later(
            max(_remaining_seconds(task), 0), self._on_deadline, task.id,
        )

    def _on_deadline(self, task_id: str) -> None:
        self._deadlines.pop(task_id, None)
        expiry = asyncio.create_task(self._expire(task_id), name=f"fork-deadline-{task_id}")
        self._stragglers.add(expiry)
        expiry.add_done_callback(self._stragglers.discard)

    async def _expire(self, task_id: str) -> None:
        task = await self.storage.get_fork_task(task_id)
        if task is None or task.is_terminal:
            return
        logger.warning("Fork task %s passed its %ss deadline while %s", task_id, task.timeout_seconds, task.status)
        await self.backend.cancel(task_id, graceful=False)
        await self._finish(task_id, "timeout", error=f"Sub-agent timed out after {task.timeout_seconds:g}s")

    def _emit(self, event_type: str, task: ForkAgentTask, payload: dict) -> None:
        if self.hub is None:
            return
        self.hub.emit(
            event_type,
            session_id=task.parent_session_id,
            step_id=task.parent_step_id,
            task_id=task.id,
            payload=payload,
        )


def _serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def _remaining_seconds(task: ForkAgentTask) -> float:
    """Seconds left of the task's timeout, counted from when it was scheduled."""
    created = task.created_at
    if created.tzinfo is None:
        # SQLite hands datetimes back without tzinfo
        created = created.replace(tzinfo=timezone.utc)
    elapsed = (datetime.now(timezone.utc) - created).total_seconds()
    return task.timeout_seconds - elapsed


def _to_result(task: ForkAgentTask) -> SubAgentResult:
    status = task.status if task.status in ("completed", "failed", "timeout") else "failed"
    return SubAgentResult(
        task_id=task.id,
        sub_session_id=task.sub_session_id,
        status=status,
        summary=task.result_summary if status == "completed" else (task.error_message or task.result_summary),
        steps_executed=task.steps_executed,
        tokens_used=task.tokens_used,
        tools_called=task.tools_called,
        duration_ms=task.execution_duration_ms,
    )


def _settle(task: ForkAgentTask) -> SubAgentResult:
    if task.status == "completed":
        return _to_result(task)
    if task.status == "timeout":
        raise ForkTimeout(task.id, task.timeout_seconds)
    raise SubAgentFailed(task.id, task.error_message or "Sub-agent failed")
