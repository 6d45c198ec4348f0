"""StepScheduler: the main autonomous loop for one session.

Each iteration: build the prompt, call the model, parse the action, persist
the Step, execute the action, finalize the Step, then decide whether to go
on. The boundary between two Steps is the only cancellation point.

Loop exits:
    Finish action                       -> completed
    AskUser under interactive policy    -> paused (run returns waiting_for_user)
    stop request at a step boundary     -> stopped (resumable when state was saved)
    session wall-clock limit            -> timeout
    step ceiling, parse budget, model
    or scheduler error                  -> failed
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any

from taskengine.config import settings
from taskengine.control.stop_controller import StopController
from taskengine.events.hub import EventHub
from taskengine.fork.manager import ForkManager
from taskengine.governor.access import AccessGovernor, TokenLimitExceeded, resolve_identity
from taskengine.llm.base import ModelCaller
from taskengine.models.actions import (
    AskUserAction,
    FinishAction,
    ParallelToolCallsAction,
    ToolCallAction,
)
from taskengine.models.results import TaskResult
from taskengine.models.session import Session, Step
from taskengine.parsing.response_parser import ParseError, ResponseParser
from taskengine.scheduler.executor import StepExecutor
from taskengine.scheduler.knowledge import KnowledgeBase, KnowledgeSnippet
from taskengine.scheduler.prompt_builder import PromptBuilder
from taskengine.scheduler.state_machine import (
    RESUMABLE_STATES,
    IllegalTransitionError,
    SessionStateMachine,
)
from taskengine.storage.base import RecordNotFoundError, StorageAdapter
from taskengine.tools.executor import ToolExecutor
from taskengine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_COMMON_FIELDS = {"action", "reasoning", "discardable_steps", "message_to_user"}


class SchedulerBusyError(RuntimeError):
    """A second run was started while the scheduler still drives a session."""

    def __init__(self, active_session_id: str) -> None:
        self.active_session_id = active_session_id
        super().__init__(f"Scheduler is already driving session {active_session_id}")


class StepScheduler:
    """Drives sessions to a terminal status, one at a time.

    The StopController belongs to the run in progress and is reset when it
    ends, so concurrent sessions need one scheduler each.

    Usage:
        scheduler = StepScheduler(storage, model, tools=ToolRegistry([calculator_tool()]), hub=hub)
        result = await scheduler.run("Compute (15 * 8) + 42")
        if result.status == "waiting_for_user":
            result = await scheduler.answer(result.session_id, "Use EUR")
    """

    def __init__(
        self,
        storage: StorageAdapter,
        model: ModelCaller,
        tools: ToolRegistry | None = None,
        *,
        hub: EventHub | None = None,
        parser: ResponseParser | None = None,
        stop: StopController | None = None,
        governor: AccessGovernor | None = None,
        identity: str | None = None,
        fork_manager: ForkManager | None = None,
        knowledge: KnowledgeBase | None = None,
        prompt_builder: PromptBuilder | None = None,
        max_steps: int | None = None,
        timeout_seconds: float | None = None,
        parse_retry_budget: int | None = None,
        autonomous: bool | None = None,
        fork_stop_policy: str | None = None,
        model_options: dict | None = None,
    ) -> None:
        self.storage = storage
        self.model = model
        self.tools = tools if tools is not None else ToolRegistry()
        self.hub = hub
        self.parser = parser or ResponseParser()
        self.stop = stop or StopController()
        self.governor = governor
        self.identity = identity
        self.fork_manager = fork_manager
        self.knowledge = knowledge
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.state_machine = SessionStateMachine()
        self.max_steps = max_steps if max_steps is not None else settings.max_steps
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.task_timeout_seconds
        self.parse_retry_budget = (
            parse_retry_budget if parse_retry_budget is not None else settings.parse_retry_budget
        )
        self.autonomous = autonomous if autonomous is not None else settings.autonomous
        self.fork_stop_policy = fork_stop_policy or settings.fork_stop_policy
        self.model_options = dict(model_options or {})
        self.executor = StepExecutor(storage, ToolExecutor(self.tools), hub=hub, fork_manager=fork_manager)
        self._active_session: str | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        goal: str,
        *,
        session_id: str | None = None,
        parent_session_id: str | None = None,
        depth: int = 0,
        context_summary: str | None = None,
        user_id: str | None = None,
    ) -> TaskResult:
        """Run a new session for ``goal``, or drive an existing fresh session by id."""
        self._ensure_idle()
        if session_id is not None:
            session = await self.storage.get_session(session_id)
            if session is None:
                raise RecordNotFoundError("Session", session_id)
        else:
            session = await self.storage.create_session(Session(
                goal=goal,
                autonomous=self.autonomous,
                user_id=user_id,
                parent_session_id=parent_session_id,
                depth=depth,
                inherited_context=context_summary,
            ))
            self._emit("session:created", session.id, payload={
                "goal": goal,
                "depth": depth,
                "parent_session_id": parent_session_id,
                "autonomous": session.autonomous,
            })
            logger.info("Session %s created (depth %d): %s", session.id, depth, goal[:80])
        return await self._drive(session)

    async def resume(self, session_id: str) -> TaskResult:
        """Continue a stopped or paused session; step numbering carries on."""
        self._ensure_idle()
        session = await self.storage.get_session(session_id)
        if session is None:
            raise RecordNotFoundError("Session", session_id)
        if session.status not in RESUMABLE_STATES:
            raise IllegalTransitionError(session.status, "active")
        self.state_machine.resume(session)
        session = await self.storage.update_session(session.id, status=session.status, resume_state=None)
        logger.info("Session %s resumed", session_id)
        return await self._drive(session)

    async def answer(self, session_id: str, reply: str) -> TaskResult:
        """Record the user's reply to the pending AskUser step and resume."""
        self._ensure_idle()
        session = await self.storage.get_session(session_id)
        if session is None:
            raise RecordNotFoundError("Session", session_id)
        if session.status != "paused":
            raise IllegalTransitionError(session.status, "active")

        steps = await self.storage.list_steps(session_id)
        waiting = next(
            (s for s in reversed(steps) if s.action == "AskUser" and s.status == "running"),
            None,
        )
        if waiting is None:
            raise ValueError(f"Session {session_id} has no pending question")

        await self.storage.update_step(
            waiting.id,
            status="completed",
            step_result={**(waiting.step_result or {}), "answer": reply},
            completed_at=datetime.now(timezone.utc),
        )
        return await self.resume(session_id)

    def request_stop(self, graceful: bool = True, save_state: bool = True) -> None:
        self.stop.request_stop(graceful=graceful, save_state=save_state)

    async def drain(self) -> None:
        """Wait for background work: parallel calls left running by any/majority and timed-out tool handlers."""
        await self.executor.drain()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    @property
    def active_session_id(self) -> str | None:
        return self._active_session

    def _ensure_idle(self) -> None:
        if self._active_session is not None:
            raise SchedulerBusyError(self._active_session)

    async def _drive(self, session: Session) -> TaskResult:
        self._ensure_idle()
        self._active_session = session.id
        try:
            return await self._drive_claimed(session)
        finally:
            self._active_session = None

    async def _drive_claimed(self, session: Session) -> TaskResult:
        identity = self.identity or resolve_identity(user_id=session.user_id)
        # Only root sessions count against the concurrency limit
        if self.governor is not None and session.depth == 0:
            slot = self.governor.concurrency_slot(identity)
        else:
            slot = nullcontext()

        async with slot:
            session = await self.storage.update_session(session.id, is_running=True)
            run = _RunState(started=time.monotonic())
            run.step_count = len(await self.storage.list_steps(session.id))
            try:
                return await self._loop(session, run, identity)
            except Exception as e:
                logger.error("Session %s aborted: %s", session.id, e, exc_info=True)
                return await self._end(session, run, "failed", error=f"{type(e).__name__}: {e}")
            finally:
                self.stop.reset()

    async def _loop(self, session: Session, run: _RunState, identity: str) -> TaskResult:
        while True:
            # --- Boundary checks ---
            if self.stop.should_stop():
                return await self._end(session, run, "stopped")
            if time.monotonic() - run.started > self.timeout_seconds:
                return await self._end(
                    session, run, "timeout", error=f"Session timed out after {self.timeout_seconds:g}s",
                )
            if run.step_count >= self.max_steps:
                return await self._end(
                    session, run, "failed", error=f"Maximum steps ({self.max_steps}) reached",
                )

            # --- Calling model ---
            history = await self.storage.list_steps(session.id)
            knowledge = await self._search_knowledge(session) if run.step_count == 0 else None
            prompt = self.prompt_builder.build(
                session,
                history,
                tools=self.tools.describe_all(),
                knowledge=knowledge,
                autonomous=session.autonomous,
            )
            step = await self.storage.create_step(Step(
                session_id=session.id,
                status="running",
                llm_prompt=prompt,
                started_at=datetime.now(timezone.utc),
            ))
            step_started = time.monotonic()
            self._emit("step:started", session.id, step.id, {"step_number": step.step_number})

            try:
                response = await self.model.call(prompt, **self.model_options)
            except Exception as e:
                logger.error("Model call failed in session %s: %s", session.id, e, exc_info=True)
                await self._fail_step(step, step_started, f"Model call failed: {e}")
                return await self._end(session, run, "failed", error=f"Model call failed: {e}")

            run.tokens_used += response.tokens_used
            if self.governor is not None:
                try:
                    await self.governor.charge_tokens(identity, response.tokens_used)
                except TokenLimitExceeded as e:
                    await self._fail_step(step, step_started, str(e), llm_response=response.text,
                                          tokens_used=response.tokens_used)
                    return await self._end(session, run, "failed", error=str(e))

            # --- Parsing ---
            try:
                action = self.parser.parse(response.text)
            except ParseError as e:
                run.parse_failures += 1
                logger.warning(
                    "Unparseable response in session %s step %d (%d/%d): %s",
                    session.id, step.step_number, run.parse_failures, self.parse_retry_budget + 1, e,
                )
                await self._fail_step(step, step_started, f"{type(e).__name__}: {e}",
                                      llm_response=response.text, tokens_used=response.tokens_used)
                run.step_count += 1
                self._mark_progress(session, run, step)
                if run.parse_failures > self.parse_retry_budget:
                    return await self._end(
                        session, run, "failed", error=f"Could not parse model response: {e}",
                    )
                continue

            # --- Acting ---
            step = await self.storage.update_step(step.id, **_decision_fields(action, response.text))
            await self._discard(session, step, action.discardable_steps)

            if self.stop.should_stop():
                await self._fail_step(step, step_started, "Stopped before the action was executed",
                                      tokens_used=response.tokens_used)
                run.step_count += 1
                return await self._end(session, run, "stopped")

            outcome = await self.executor.execute(session, step, action, autonomous=session.autonomous)
            run.tools_called += outcome.tools_called

            # --- Persisting ---
            finished_at = datetime.now(timezone.utc)
            duration_ms = int((time.monotonic() - step_started) * 1000)
            if outcome.waiting_for_user:
                # Completed by answer()
                step = await self.storage.update_step(
                    step.id, step_result=outcome.result, tokens_used=response.tokens_used,
                    execution_duration_ms=duration_ms,
                )
            else:
                step = await self.storage.update_step(
                    step.id,
                    status="completed" if outcome.success else "failed",
                    step_result=outcome.result,
                    error_message=outcome.error,
                    tokens_used=response.tokens_used,
                    completed_at=finished_at,
                    execution_duration_ms=duration_ms,
                )
            run.step_count += 1
            if outcome.success:
                run.last_result = outcome.result
            self._emit("step:completed" if outcome.success else "step:failed", session.id, step.id, {
                "step_number": step.step_number,
                "action": step.action,
                "success": outcome.success,
                "error": outcome.error,
                "fork_task_id": outcome.fork_task_id,
                "message_to_user": action.message_to_user,
            })
            self._mark_progress(session, run, step)

            if isinstance(action, FinishAction):
                return await self._end(
                    session, run, "completed", result=action.final_result, summary=action.summary,
                )
            if outcome.waiting_for_user and isinstance(action, AskUserAction):
                return await self._end(
                    session, run, "paused", question=action.question, options=action.options,
                )
            if not outcome.should_continue:
                return await self._end(session, run, "completed", result=outcome.result)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mark_progress(self, session: Session, run: _RunState, step: Step) -> None:
        self.stop.update_state(
            session.id,
            completed_steps=run.step_count,
            last_step_id=step.id,
            partial_result=run.last_result,
        )
        self.stop.confirm_stop()

    async def _search_knowledge(self, session: Session) -> list[KnowledgeSnippet] | None:
        if self.knowledge is None:
            return None
        try:
            return await self.knowledge.search(session.goal, top_k=settings.max_knowledge_results)
        except Exception as e:
            logger.warning("Knowledge search failed for session %s: %s", session.id, e)
            return None

    async def _discard(self, session: Session, step: Step, numbers: list[int]) -> None:
        targets = [n for n in numbers if n != step.step_number]
        if not targets:
            return
        changed = await self.storage.mark_steps_discarded(session.id, targets)
        if changed:
            logger.debug("Session %s discarded steps %s", session.id, changed)
            self._emit("steps:discarded", session.id, step.id, {"step_numbers": changed})

    async def _fail_step(self, step: Step, started: float, error: str, **fields: Any) -> None:
        await self.storage.update_step(
            step.id,
            status="failed",
            error_message=error,
            completed_at=datetime.now(timezone.utc),
            execution_duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
        self._emit("step:failed", step.session_id, step.id, {"step_number": step.step_number, "error": error})

    async def _end(
        self,
        session: Session,
        run: _RunState,
        status: str,
        *,
        result: Any = None,
        summary: str | None = None,
        error: str | None = None,
        question: str | None = None,
        options: list[str] | None = None,
    ) -> TaskResult:
        self.state_machine.transition(session, status)
        resume_state = None
        can_resume = status == "paused"
        if status == "stopped":
            stop_state = self.stop.get_stop_state()
            if self.stop.should_save_state():
                can_resume = True
                if stop_state is not None:
                    resume_state = stop_state.model_dump(mode="json")
            if self.fork_stop_policy == "propagate" and self.fork_manager is not None:
                await self.fork_manager.stop_children(session.id, graceful=self.stop.is_graceful())

        await self.storage.update_session(
            session.id,
            status=session.status,
            is_running=False,
            result_summary=summary,
            resume_state=resume_state,
        )

        if result is None and status != "completed":
            result = run.last_result
        duration_ms = int((time.monotonic() - run.started) * 1000)

        event = {
            "completed": "task:completed",
            "failed": "task:failed",
            "stopped": "task:stopped",
            "timeout": "task:timeout",
            "paused": "user:question_asked",
        }[status]
        self._emit(event, session.id, payload={
            "status": status,
            "error": error,
            "question": question,
            "steps_executed": run.step_count,
            "tokens_used": run.tokens_used,
        })
        log = logger.error if status == "failed" else logger.info
        log("Session %s ended %s after %d steps: %s", session.id, status, run.step_count, error or "ok")

        return TaskResult(
            session_id=session.id,
            status="waiting_for_user" if status == "paused" else status,
            result=result,
            summary=summary,
            error=error,
            question=question,
            options=options,
            steps_executed=run.step_count,
            tokens_used=run.tokens_used,
            tools_called=run.tools_called,
            duration_ms=duration_ms,
            can_resume=can_resume,
        )

    def _emit(self, event_type: str, session_id: str, step_id: int | None = None, payload: dict | None = None) -> None:
        if self.hub is not None:
            self.hub.emit(event_type, session_id=session_id, step_id=step_id, payload=payload)


class _RunState:
    """Counters for one call to run/resume."""

    def __init__(self, started: float) -> None:
        self.started = started
        self.step_count = 0
        self.tokens_used = 0
        self.tools_called = 0
        self.parse_failures = 0
        self.last_result: Any = None


def _decision_fields(action: Any, raw: str) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "llm_response": raw,
        "action": action.action,
        "reasoning": action.reasoning or None,
    }
    if isinstance(action, ToolCallAction):
        fields["selected_tool"] = action.selected_tool
        fields["parameters"] = action.parameters
    else:
        fields["parameters"] = action.model_dump(mode="json", exclude=_COMMON_FIELDS) or None
    if isinstance(action, ParallelToolCallsAction):
        fields["is_parallel"] = True
        fields["wait_strategy"] = action.wait_strategy
        fields["parallel_status"] = "waiting"
    return fields
