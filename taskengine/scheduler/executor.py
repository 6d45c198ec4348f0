"""StepExecutor: carries out one parsed action inside a persisted Step.

Dispatch per action kind:
    CallTool          -> ToolExecutor, tool result recorded on the step
    CallToolsParallel -> one ParallelToolCall row per invocation, settled per wait strategy
    ForkAutoAgent     -> ForkManager; awaited only when the action asks for it
    AskUser           -> pauses under interactive policy, informational otherwise
    Plan              -> one Todo per plan step
    Finish            -> terminal

Tool failures are recorded, not raised: they never end the session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from taskengine.config import settings
from taskengine.events.hub import EventHub
from taskengine.fork.manager import (
    ForkDepthExceeded,
    ForkManager,
    ForkTimeout,
    SubAgentFailed,
)
from taskengine.models.actions import (
    AskUserAction,
    FinishAction,
    ForkRequestAction,
    ParallelToolCallsAction,
    ParallelToolInvocation,
    PlanAction,
    ToolCallAction,
)
from taskengine.models.results import StepExecutionResult
from taskengine.models.session import ParallelToolCall, Session, Step, Todo
from taskengine.storage.base import StorageAdapter
from taskengine.tools.base import ToolResult
from taskengine.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)


def is_strategy_satisfied(strategy: str, successes: int, total: int) -> bool:
    """all: every call succeeded; any: at least one; majority: more than half."""
    if strategy == "all":
        return total > 0 and successes == total
    if strategy == "any":
        return successes >= 1
    if strategy == "majority":
        return successes * 2 > total
    raise ValueError(f"Unknown wait strategy: {strategy}")


class StepExecutor:
    """Executes actions for the step scheduler.

    Usage:
        executor = StepExecutor(storage, ToolExecutor(registry), hub=hub, fork_manager=forks)
        outcome = await executor.execute(session, step, action, autonomous=True)
    """

    def __init__(
        self,
        storage: StorageAdapter,
        tool_executor: ToolExecutor,
        hub: EventHub | None = None,
        fork_manager: ForkManager | None = None,
        parallel_retries: int | None = None,
        parallel_max_retries: int | None = None,
    ) -> None:
        self.storage = storage
        self.tool_executor = tool_executor
        self.hub = hub
        self.fork_manager = fork_manager
        self.parallel_max_retries = (
            parallel_max_retries if parallel_max_retries is not None else settings.parallel_tool_max_retries
        )
        retries = parallel_retries if parallel_retries is not None else settings.parallel_tool_retries
        self.parallel_retries = min(retries, self.parallel_max_retries)
        # Parallel calls still running after an "any"/"majority" step returned
        self._background: set[asyncio.Task] = set()

    async def execute(self, session: Session, step: Step, action: Any, autonomous: bool = True) -> StepExecutionResult:
        if isinstance(action, ToolCallAction):
            return await self._call_tool(session, step, action)
        if isinstance(action, ParallelToolCallsAction):
            return await self._call_tools_parallel(session, step, action)
        if isinstance(action, ForkRequestAction):
            return await self._fork(session, step, action)
        if isinstance(action, AskUserAction):
            return self._ask_user(action, autonomous)
        if isinstance(action, PlanAction):
            return await self._plan(session, step, action)
        if isinstance(action, FinishAction):
            return StepExecutionResult(success=True, result=action.final_result, should_continue=False)
        raise TypeError(f"Unsupported action type: {type(action).__name__}")

    # ------------------------------------------------------------------
    # CallTool
    # ------------------------------------------------------------------

    async def _call_tool(self, session: Session, step: Step, action: ToolCallAction) -> StepExecutionResult:
        self._emit("tool:executing", session.id, step.id, {
            "tool": action.selected_tool,
            "parameters": action.parameters,
        })
        result = await self.tool_executor.execute(action.selected_tool, action.parameters)
        self._emit("tool:completed", session.id, step.id, {
            "tool": action.selected_tool,
            "success": result.success,
            "error": result.error,
            "execution_ms": result.execution_ms,
        })
        if not result.success:
            logger.info("Tool %s failed in session %s: %s", action.selected_tool, session.id, result.error)
        return StepExecutionResult(
            success=result.success,
            result=result.result if result.success else None,
            error=result.error,
            tools_called=1,
        )

    # ------------------------------------------------------------------
    # CallToolsParallel
    # ------------------------------------------------------------------

    async def _call_tools_parallel(
        self,
        session: Session,
        step: Step,
        action: ParallelToolCallsAction,
    ) -> StepExecutionResult:
        strategy = action.wait_strategy
        rows = []
        for invocation in action.parallel_tools:
            rows.append(await self.storage.create_parallel_call(ParallelToolCall(
                step_id=step.id,
                tool_id=invocation.tool_id,
                tool_name=invocation.tool_name,
                parameters=invocation.parameters,
                max_retries=self.parallel_max_retries,
            )))

        tasks = {
            asyncio.create_task(self._run_parallel_call(session, step, row, inv), name=f"parallel-{row.id}"): i
            for i, (row, inv) in enumerate(zip(rows, action.parallel_tools))
        }
        total = len(tasks)
        settled: dict[int, ToolResult] = {}
        pending = set(tasks)

        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                settled[tasks[t]] = t.result()
            successes = sum(1 for r in settled.values() if r.success)
            if strategy == "any":
                break
            if strategy == "majority" and successes * 2 > total:
                break

        for t in pending:
            self._background.add(t)
            t.add_done_callback(self._background_done)

        successes = sum(1 for r in settled.values() if r.success)
        satisfied = is_strategy_satisfied(strategy, successes, total)
        results = []
        for i, inv in enumerate(action.parallel_tools):
            r = settled.get(i)
            entry: dict[str, Any] = {"tool_id": inv.tool_id, "tool_name": inv.tool_name}
            if r is None:
                entry["status"] = "running"
            else:
                entry.update(status="completed" if r.success else "failed", result=r.result, error=r.error)
            results.append(entry)

        parallel_status = "completed" if not pending else "partial"
        await self.storage.update_step(step.id, parallel_status=parallel_status)
        logger.info(
            "Parallel step %s (%s): %d/%d settled, %d succeeded",
            step.step_number, strategy, len(settled), total, successes,
        )

        return StepExecutionResult(
            success=satisfied,
            result={"wait_strategy": strategy, "results": results, "succeeded": successes, "total": total},
            error=None if satisfied else f"Wait strategy '{strategy}' not satisfied ({successes}/{total} succeeded)",
            tools_called=total,
        )

    async def _run_parallel_call(
        self,
        session: Session,
        step: Step,
        row: ParallelToolCall,
        invocation: ParallelToolInvocation,
    ) -> ToolResult:
        started = time.monotonic()
        await self.storage.update_parallel_call(
            row.id, status="running", started_at=datetime.now(timezone.utc), progress_percentage=0,
        )
        self._emit("tool:executing", session.id, step.id, {
            "tool": invocation.tool_name,
            "tool_id": invocation.tool_id,
            "parameters": invocation.parameters,
        })

        attempt = 0
        result = await self.tool_executor.execute(invocation.tool_name, invocation.parameters)
        while not result.success and attempt < self.parallel_retries:
            attempt += 1
            logger.info("Retrying parallel call %s (%d/%d): %s", invocation.tool_id, attempt, self.parallel_retries, result.error)
            await self.storage.update_parallel_call(row.id, retry_count=attempt, status_message=f"retry {attempt}")
            result = await self.tool_executor.execute(invocation.tool_name, invocation.parameters)

        timed_out = not result.success and "timed out" in (result.error or "")
        await self.storage.update_parallel_call(
            row.id,
            status="completed" if result.success else ("timeout" if timed_out else "failed"),
            result=result.result,
            error_message=result.error,
            progress_percentage=100,
            completed_at=datetime.now(timezone.utc),
            execution_duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._emit("tool:completed", session.id, step.id, {
            "tool": invocation.tool_name,
            "tool_id": invocation.tool_id,
            "success": result.success,
            "error": result.error,
        })
        return result

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background parallel call failed: %s", task.exception(), exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for parallel calls and timed-out tool handlers still running in the background."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.tool_executor.drain()

    # ------------------------------------------------------------------
    # ForkAutoAgent
    # ------------------------------------------------------------------

    async def _fork(self, session: Session, step: Step, action: ForkRequestAction) -> StepExecutionResult:
        if self.fork_manager is None:
            return StepExecutionResult(success=False, error="Sub-agents are not available in this session")

        try:
            task_id = await self.fork_manager.fork(
                goal=action.sub_goal,
                context_summary=action.context_summary,
                current_depth=session.depth,
                parent_session_id=session.id,
                parent_step_id=step.id,
                max_depth=action.max_depth,
                max_steps=action.max_steps,
                timeout=action.timeout,
            )
        except ForkDepthExceeded as e:
            logger.info("Fork rejected in session %s: %s", session.id, e)
            return StepExecutionResult(success=False, error=str(e))
        except SubAgentFailed as e:
            return StepExecutionResult(success=False, error=str(e), fork_task_id=e.task_id)

        if not action.await_result:
            return StepExecutionResult(
                success=True,
                result={"task_id": task_id, "status": "started", "sub_goal": action.sub_goal},
                fork_task_id=task_id,
            )

        try:
            sub = await self.fork_manager.wait_for_sub_agent(task_id)
        except (ForkTimeout, SubAgentFailed) as e:
            return StepExecutionResult(success=False, error=str(e), fork_task_id=task_id)
        return StepExecutionResult(success=True, result=sub.model_dump(mode="json"), fork_task_id=task_id)

    # ------------------------------------------------------------------
    # AskUser / Plan
    # ------------------------------------------------------------------

    @staticmethod
    def _ask_user(action: AskUserAction, autonomous: bool) -> StepExecutionResult:
        payload = {"question": action.question, "options": action.options}
        if autonomous:
            payload["answer"] = None
            payload["note"] = "Running autonomously; continue with your best judgement."
            return StepExecutionResult(success=True, result=payload)
        return StepExecutionResult(success=True, result=payload, should_continue=False, waiting_for_user=True)

    async def _plan(self, session: Session, step: Step, action: PlanAction) -> StepExecutionResult:
        async def _create() -> list[Todo]:
            existing = await self.storage.list_todos(session.id)
            offset = max((t.order_index for t in existing), default=-1) + 1
            created: list[Todo] = []
            for i, plan_step in enumerate(action.plan.steps):
                created.append(await self.storage.create_todo(Todo(
                    session_id=session.id,
                    title=plan_step.description,
                    description=f"{plan_step.action}: {plan_step.description}",
                    order_index=offset + i,
                    dependencies=[created[-1].id] if created else [],
                    estimated_steps=1,
                )))
            return created

        todos = await self.storage.transaction(_create)
        self._emit("plan:ready", session.id, step.id, {
            "todo_ids": [t.id for t in todos],
            "steps": len(todos),
            "total_estimated_time": action.plan.total_estimated_time,
            "estimated_tokens": action.plan.estimated_tokens,
        })
        return StepExecutionResult(
            success=True,
            result={"todos": [{"id": t.id, "title": t.title, "order_index": t.order_index} for t in todos]},
        )

    def _emit(self, event_type: str, session_id: str, step_id: int | None, payload: dict) -> None:
        if self.hub is not None:
            self.hub.emit(event_type, session_id=session_id, step_id=step_id, payload=payload)
