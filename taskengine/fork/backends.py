"""Execution backends for sub-agent (fork) tasks.

A backend decides where a fork task runs. The in-process backend is a bounded
worker pool on the current event loop; the Celery backend ships the task id to
a worker process (see taskengine.fork.celery_backend).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from taskengine.config import settings
from taskengine.control.stop_controller import StopController
from taskengine.models.session import ForkAgentTask
from taskengine.storage.base import StorageAdapter

logger = logging.getLogger(__name__)

SubAgentJob = Callable[[StopController], Awaitable[Any]]


class ExecutionBackend(ABC):
    """Where and how fork tasks execute."""

    name: str = "abstract"

    @abstractmethod
    async def execute_sub_agent(self, task: ForkAgentTask, job: SubAgentJob) -> None:
        """Schedule ``task`` and return without waiting for it.

        ``job`` is the in-process coroutine factory; remote backends may ignore
        it and run the task by id instead.
        """

    @abstractmethod
    async def wait_for_completion(self, task_id: str, timeout: float | None = None) -> bool:
        """Wait until the task is no longer running. False if ``timeout`` elapsed first."""

    @abstractmethod
    async def cancel(self, task_id: str, graceful: bool = False) -> bool:
        """Ask a running task to stop at its next step boundary."""

    @abstractmethod
    def is_running(self, task_id: str) -> bool: ...

    async def shutdown(self) -> None:
        """Release backend resources. Default: nothing to release."""


class LocalExecutionBackend(ExecutionBackend):
    """Bounded asyncio worker pool.

    Each task gets its own StopController so it can be cancelled
    cooperatively; the coroutine itself is never cancelled.

    Usage:
        backend = LocalExecutionBackend(max_workers=4)
        await backend.execute_sub_agent(task, job)
        finished = await backend.wait_for_completion(task.id, timeout=30)
    """

    name = "local"

    def __init__(self, max_workers: int | None = None) -> None:
        self.max_workers = max_workers if max_workers is not None else settings.fork_worker_limit
        self._semaphore = asyncio.Semaphore(self.max_workers)
        self._tasks: dict[str, asyncio.Task] = {}
        self._stops: dict[str, StopController] = {}

    async def execute_sub_agent(self, task: ForkAgentTask, job: SubAgentJob) -> None:
        if task.id in self._tasks:
            raise ValueError(f"Fork task {task.id} is already scheduled")

        stop = StopController()
        self._stops[task.id] = stop

        async def _worker() -> Any:
            async with self._semaphore:
                return await job(stop)

        handle = asyncio.create_task(_worker(), name=f"fork-{task.id}")
        self._tasks[task.id] = handle
        handle.add_done_callback(lambda t, task_id=task.id: self._finished(task_id, t))
        logger.info("Scheduled fork task %s on local pool (%d active)", task.id, len(self._tasks))

    def _finished(self, task_id: str, handle: asyncio.Task) -> None:
        self._tasks.pop(task_id, None)
        self._stops.pop(task_id, None)
        if handle.cancelled():
            logger.warning("Fork task %s worker was cancelled", task_id)
            return
        exc = handle.exception()
        if exc is not None:
            logger.error("Fork task %s worker crashed: %s", task_id, exc, exc_info=exc)

    async def wait_for_completion(self, task_id: str, timeout: float | None = None) -> bool:
        handle = self._tasks.get(task_id)
        if handle is None:
            return True
        done, _ = await asyncio.wait({handle}, timeout=timeout)
        return bool(done)

    async def cancel(self, task_id: str, graceful: bool = False) -> bool:
        stop = self._stops.get(task_id)
        if stop is None:
            return False
        stop.request_stop(graceful=graceful, save_state=True)
        return True

    def is_running(self, task_id: str) -> bool:
        handle = self._tasks.get(task_id)
        return handle is not None and not handle.done()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Wait for every scheduled task to finish."""
        pending = list(self._tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def default_backend(storage: StorageAdapter) -> ExecutionBackend:
    """Celery when a broker is configured, otherwise the local pool."""
    from taskengine.celery_app import is_celery_enabled

    if is_celery_enabled():
        from taskengine.fork.celery_backend import CeleryExecutionBackend

        return CeleryExecutionBackend(storage)
    return LocalExecutionBackend()
