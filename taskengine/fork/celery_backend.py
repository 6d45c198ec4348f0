"""Celery execution backend: fork tasks run in a worker process.

The worker rebuilds a ForkManager from ``settings.fork_runtime_factory`` and
calls ``run_task`` with the task id; progress is read back from storage.

Usage:
    TASKENGINE_CELERY_BROKER_URL=redis://localhost:6379/0
    TASKENGINE_FORK_RUNTIME_FACTORY=myapp.runtime:build_fork_manager
    celery -A taskengine.celery_app worker --loglevel=info -Q forks
"""

from __future__ import annotations

import asyncio
import logging

from taskengine.config import settings
from taskengine.fork.backends import ExecutionBackend, SubAgentJob
from taskengine.models.session import ForkAgentTask
from taskengine.storage.base import StorageAdapter

logger = logging.getLogger(__name__)


class CeleryExecutionBackend(ExecutionBackend):
    """Dispatches ``run_fork_task`` and polls storage for the outcome.

    Cancellation only revokes tasks that have not started; a running worker
    is bounded by the fork task's own timeout.
    """

    name = "celery"

    def __init__(self, storage: StorageAdapter, poll_interval: float | None = None) -> None:
        self.storage = storage
        self.poll_interval = poll_interval if poll_interval is not None else settings.fork_poll_interval_seconds
        self._results: dict[str, object] = {}

    async def execute_sub_agent(self, task: ForkAgentTask, job: SubAgentJob) -> None:
        from taskengine.tasks.fork_tasks import run_fork_task

        async_result = run_fork_task.delay(task.id)
        self._results[task.id] = async_result
        logger.info("Dispatched fork task %s to Celery (celery_id=%s)", task.id, async_result.id)

    async def wait_for_completion(self, task_id: str, timeout: float | None = None) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            task = await self.storage.get_fork_task(task_id)
            if task is None or task.is_terminal:
                self._results.pop(task_id, None)
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    async def cancel(self, task_id: str, graceful: bool = False) -> bool:
        async_result = self._results.pop(task_id, None)
        if async_result is None:
            return False
        async_result.revoke(terminate=False)
        logger.info("Revoked Celery fork task %s", task_id)
        return True

    def is_running(self, task_id: str) -> bool:
        async_result = self._results.get(task_id)
        return async_result is not None and not async_result.ready()
