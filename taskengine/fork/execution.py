"""Runs one fork task's child session with a fresh step scheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskengine.control.stop_controller import StopController
from taskengine.models.results import TaskResult
from taskengine.models.session import ForkAgentTask, Session

if TYPE_CHECKING:
    from taskengine.fork.manager import ForkManager

logger = logging.getLogger(__name__)


async def run_child_session(manager: ForkManager, task: ForkAgentTask, stop: StopController) -> TaskResult:
    """Create the child session, link it to ``task`` and drive it to a terminal status.

    The child always runs autonomously, bounded by the task's step ceiling
    and timeout, and may fork again through the same manager.
    """
    # Deferred: the scheduler imports the fork manager
    from taskengine.scheduler.loop import StepScheduler

    parent = await manager.storage.get_session(task.parent_session_id)
    child = await manager.storage.create_session(
        Session(
            goal=task.goal,
            parent_session_id=task.parent_session_id,
            depth=task.depth,
            inherited_context=task.context_summary or None,
            autonomous=True,
            user_id=parent.user_id if parent else None,
        )
    )
    await manager.storage.update_fork_task(task.id, sub_session_id=child.id)
    logger.info("Fork task %s started child session %s at depth %d", task.id, child.id, child.depth)

    scheduler = StepScheduler(
        storage=manager.storage,
        model=manager.model,
        tools=manager.tools,
        hub=manager.hub,
        stop=stop,
        fork_manager=manager,
        knowledge=manager.knowledge,
        max_steps=task.max_steps,
        timeout_seconds=task.timeout_seconds,
        autonomous=True,
        model_options=manager.model_options,
    )
    try:
        return await scheduler.run(task.goal, session_id=child.id)
    finally:
        await scheduler.drain()
